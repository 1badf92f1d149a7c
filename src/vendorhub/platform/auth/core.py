"""
Bearer-token verification for API callers.

Token issuance belongs to the authentication service; this module only decodes
access tokens (PyJWT) and turns their claims into a ``UserInfo``.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vendorhub.platform.settings import settings

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

ACCESS_TOKEN_TYPE = "access"


class UserInfo(BaseModel):
    """User information from auth.

    User IDs are stored as strings for JWT/HTTP compatibility.
    """

    model_config = ConfigDict(extra="forbid")

    user_id: str
    email: str | None = None
    username: str | None = None
    roles: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)
    tenant_id: str | None = None


def create_access_token(
    user_id: str,
    *,
    tenant_id: str | None = None,
    email: str | None = None,
    roles: list[str] | None = None,
    permissions: list[str] | None = None,
    expire_minutes: int | None = None,
) -> str:
    """Create an access token with the claims this service understands."""
    now = datetime.now(UTC)
    claims: dict[str, Any] = {
        "sub": user_id,
        "type": ACCESS_TOKEN_TYPE,
        "tenant_id": tenant_id,
        "email": email,
        "roles": roles or [],
        "permissions": permissions or [],
        "iat": now,
        "exp": now
        + timedelta(minutes=expire_minutes or settings.jwt.access_token_expire_minutes),
    }
    if settings.jwt.issuer:
        claims["iss"] = settings.jwt.issuer
    if settings.jwt.audience:
        claims["aud"] = settings.jwt.audience
    return jwt.encode(claims, settings.jwt.secret_key, algorithm=settings.jwt.algorithm)


def verify_token(token: str) -> dict[str, Any]:
    """Verify and decode an access token.

    Raises:
        HTTPException: 401 if the token is invalid, expired or not an access token
    """
    try:
        claims = jwt.decode(
            token,
            settings.jwt.secret_key,
            algorithms=[settings.jwt.algorithm],
            issuer=settings.jwt.issuer,
            audience=settings.jwt.audience,
            options={"verify_aud": settings.jwt.audience is not None},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.debug("auth.token.invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if claims.get("type") != ACCESS_TOKEN_TYPE:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return claims


def _claims_to_user_info(claims: dict) -> UserInfo:
    """Convert JWT claims to UserInfo.

    Raises:
        HTTPException: 401 if the claims do not describe a valid user
    """
    try:
        return UserInfo(
            user_id=claims.get("sub", ""),
            email=claims.get("email"),
            username=claims.get("username"),
            roles=claims.get("roles") or [],
            permissions=claims.get("permissions") or [],
            tenant_id=claims.get("tenant_id"),
        )
    except ValidationError as e:
        logger.debug("auth.token.invalid_claims", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token claims",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserInfo:
    """Get current authenticated user from the Bearer token."""
    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _claims_to_user_info(verify_token(credentials.credentials))


def get_user_from_authorization(header_value: str | None) -> UserInfo | None:
    """Best-effort decode of an ``Authorization`` header, for middleware use."""
    if not header_value or not header_value.startswith("Bearer "):
        return None
    try:
        return _claims_to_user_info(verify_token(header_value.split(" ", 1)[1]))
    except HTTPException:
        return None
