"""
Tests for bearer token handling.
"""

from datetime import UTC, datetime, timedelta

import jwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from vendorhub.platform.auth.core import (
    create_access_token,
    get_current_user,
    get_user_from_authorization,
    verify_token,
)
from vendorhub.platform.settings import settings


def test_round_trip_claims():
    token = create_access_token(
        "user-1",
        tenant_id="tenant-a",
        email="user@example.com",
        roles=["auditor"],
        permissions=["export:data"],
    )
    claims = verify_token(token)

    assert claims["sub"] == "user-1"
    assert claims["tenant_id"] == "tenant-a"
    assert claims["roles"] == ["auditor"]


def test_expired_token_rejected():
    token = create_access_token("user-1", expire_minutes=-1)
    with pytest.raises(HTTPException) as exc_info:
        verify_token(token)
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Token expired"


def test_garbage_token_rejected():
    with pytest.raises(HTTPException) as exc_info:
        verify_token("not.a.token")
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_get_current_user():
    token = create_access_token("user-1", tenant_id="tenant-a", roles=["admin"])
    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)

    user = await get_current_user(credentials)

    assert user.user_id == "user-1"
    assert user.tenant_id == "tenant-a"
    assert user.roles == ["admin"]


@pytest.mark.asyncio
async def test_get_current_user_requires_credentials():
    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(None)
    assert exc_info.value.status_code == 401


def test_user_from_authorization_header():
    token = create_access_token("user-1", tenant_id="tenant-a")
    assert get_user_from_authorization(f"Bearer {token}").user_id == "user-1"
    assert get_user_from_authorization("Bearer broken") is None
    assert get_user_from_authorization("Basic abc") is None
    assert get_user_from_authorization(None) is None


@pytest.mark.parametrize(
    "claims",
    [{"tenant_id": 42}, {"roles": "admin"}, {"permissions": [{"read": True}]}],
)
def test_malformed_claims_are_unauthorized(claims):
    now = datetime.now(UTC)
    payload = {"sub": "user-1", "type": "access", "iat": now, "exp": now + timedelta(minutes=5)}
    token = jwt.encode({**payload, **claims}, settings.jwt.secret_key, algorithm=settings.jwt.algorithm)

    assert get_user_from_authorization(f"Bearer {token}") is None


@pytest.mark.asyncio
async def test_get_current_user_rejects_malformed_claims():
    now = datetime.now(UTC)
    token = jwt.encode(
        {"sub": "user-1", "type": "access", "tenant_id": 42, "exp": now + timedelta(minutes=5)},
        settings.jwt.secret_key,
        algorithm=settings.jwt.algorithm,
    )
    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)

    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(credentials)
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail == "Invalid token claims"


@pytest.mark.asyncio
async def test_null_role_claims_mean_no_roles():
    token = create_access_token("user-1", tenant_id="tenant-a")
    claims = verify_token(token)
    claims["roles"] = None
    now = datetime.now(UTC)
    claims.update(iat=now, exp=now + timedelta(minutes=5))
    token = jwt.encode(claims, settings.jwt.secret_key, algorithm=settings.jwt.algorithm)

    user = await get_current_user(HTTPAuthorizationCredentials(scheme="Bearer", credentials=token))
    assert user.roles == []
