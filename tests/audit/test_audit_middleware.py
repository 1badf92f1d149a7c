"""
Tests for request-level audit logging and the direct recording helpers.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import jwt
import pytest
import pytest_asyncio
from fastapi import FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from starlette.requests import Request

from vendorhub.platform.audit.middleware import (
    REDACTED,
    AuditRequestMiddleware,
    action_for_method,
    compute_changes,
    record_change,
    record_login,
    record_logout,
    resource_for_path,
    resource_id_for_path,
    sanitize_payload,
)
from vendorhub.platform.audit.models import AuditAction, AuditEvent, AuditResource
from vendorhub.platform.audit.writer import AuditWriter
from vendorhub.platform.auth.core import UserInfo
from vendorhub.platform.settings import settings

pytestmark = pytest.mark.asyncio

VENDOR_ID = "0123456789abcdef01234567"


def signed_token(claims: dict) -> str:
    """Access token signed with the service key, carrying arbitrary claims."""
    now = datetime.now(UTC)
    payload = {"type": "access", "iat": now, "exp": now + timedelta(minutes=5), **claims}
    return jwt.encode(payload, settings.jwt.secret_key, algorithm=settings.jwt.algorithm)


class TestHelpers:
    @pytest.mark.parametrize(
        "method, action",
        [
            ("GET", AuditAction.READ),
            ("post", AuditAction.CREATE),
            ("PUT", AuditAction.UPDATE),
            ("PATCH", AuditAction.UPDATE),
            ("DELETE", AuditAction.DELETE),
            ("OPTIONS", AuditAction.READ),
        ],
    )
    def test_action_for_method(self, method, action):
        assert action_for_method(method) is action

    @pytest.mark.parametrize(
        "path, resource",
        [
            ("/api/users/42", AuditResource.USER),
            ("/api/vendors", AuditResource.VENDOR),
            ("/api/contracts/1/renew", AuditResource.CONTRACT),
            ("/api/data-types", AuditResource.DATA_TYPE),
            ("/api/tenants/me", AuditResource.TENANT),
            ("/api/auth/profile", AuditResource.AUTH),
            ("/api/reports", AuditResource.SYSTEM),
        ],
    )
    def test_resource_for_path(self, path, resource):
        assert resource_for_path(path) is resource

    def test_resource_id_for_path(self):
        assert resource_id_for_path(f"/api/vendors/{VENDOR_ID}") == VENDOR_ID
        assert (
            resource_id_for_path("/api/contracts/3f1c2a9e-7b7d-4c1e-9a55-0c0b1f7e2d10/renew")
            == "3f1c2a9e-7b7d-4c1e-9a55-0c0b1f7e2d10"
        )
        assert resource_id_for_path("/api/vendors") is None

    def test_sanitize_payload_is_recursive(self):
        payload = {
            "name": "Acme",
            "password": "hunter2",
            "contact": {"apiKey": "abc", "email": "a@example.com"},
            "credentials": [{"refresh_token": "r"}],
        }
        assert sanitize_payload(payload) == {
            "name": "Acme",
            "password": REDACTED,
            "contact": {"apiKey": REDACTED, "email": "a@example.com"},
            "credentials": [{"refresh_token": REDACTED}],
        }
        assert payload["password"] == "hunter2"

    def test_compute_changes(self):
        before = {"name": "Acme", "tags": ["a"], "updatedAt": 1, "status": "active"}
        after = {"name": "Acme Corp", "tags": ["a"], "updatedAt": 2, "owner": "u2"}

        assert compute_changes(before, after) == {
            "name": {"before": "Acme", "after": "Acme Corp"},
            "owner": {"before": None, "after": "u2"},
        }


def build_app(writer) -> FastAPI:
    app = FastAPI()
    app.add_middleware(AuditRequestMiddleware, writer=writer, api_prefix="/api")

    @app.post("/api/vendors")
    async def create_vendor(body: dict):
        return {"id": VENDOR_ID, **body}

    @app.put("/api/vendors/{vendor_id}")
    async def update_vendor(vendor_id: str, body: dict):
        return {"id": vendor_id}

    @app.get("/api/vendors")
    async def list_vendors():
        return []

    @app.get("/api/vendors/missing")
    async def missing_vendor():
        raise HTTPException(status_code=404, detail="not found")

    @app.get("/api/auth/profile")
    async def profile():
        return {"ok": True}

    @app.post("/api/auth/login")
    async def login():
        return {"ok": True}

    @app.get("/api/audit/logs")
    async def audit_logs():
        return {"ok": True}

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


@pytest.fixture
def writer():
    return MagicMock(spec=AuditWriter)


@pytest_asyncio.fixture
async def client(writer):
    transport = ASGITransport(app=build_app(writer))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestMiddleware:
    async def test_records_successful_create(self, client, writer, regular_headers):
        response = await client.post(
            "/api/vendors",
            json={"name": "Acme", "password": "hunter2"},
            headers={**regular_headers, "User-Agent": "pytest-agent"},
        )

        assert response.status_code == 200
        writer.record.assert_called_once()
        args, kwargs = writer.record.call_args
        assert args == ("tenant-a", "user-1", AuditAction.CREATE, AuditResource.VENDOR)
        assert kwargs["details"] == "CREATE VENDOR"
        assert kwargs["actor_email"] == "user@tenant-a.example"
        assert kwargs["request_context"].user_agent == "pytest-agent"
        metadata = kwargs["metadata"]
        assert metadata["method"] == "POST"
        assert metadata["statusCode"] == 200
        assert metadata["requestPayload"] == {"name": "Acme", "password": REDACTED}

    async def test_records_update_with_resource_id(self, client, writer, regular_headers):
        await client.put(f"/api/vendors/{VENDOR_ID}", json={"name": "B"}, headers=regular_headers)

        kwargs = writer.record.call_args.kwargs
        assert kwargs["resource_id"] == VENDOR_ID
        assert kwargs["details"] == f"UPDATE VENDOR (ID: {VENDOR_ID})"

    async def test_get_records_query_params(self, client, writer, regular_headers):
        await client.get("/api/vendors", params={"q": "acme", "token": "t"}, headers=regular_headers)

        metadata = writer.record.call_args.kwargs["metadata"]
        assert metadata["queryParams"] == {"q": "acme", "token": REDACTED}
        assert "requestPayload" not in metadata

    async def test_profile_access_details(self, client, writer, regular_headers):
        await client.get("/api/auth/profile", headers=regular_headers)
        assert writer.record.call_args.kwargs["details"] == "User profile accessed"

    @pytest.mark.parametrize("path", ["/api/audit/logs", "/health"])
    async def test_skip_paths(self, client, writer, regular_headers, path):
        response = await client.get(path, headers=regular_headers)
        assert response.status_code == 200
        writer.record.assert_not_called()

    async def test_login_not_recorded(self, client, writer, regular_headers):
        await client.post("/api/auth/login", json={"password": "x"}, headers=regular_headers)
        writer.record.assert_not_called()

    async def test_failed_request_not_recorded(self, client, writer, regular_headers):
        response = await client.get("/api/vendors/missing", headers=regular_headers)
        assert response.status_code == 404
        writer.record.assert_not_called()

    async def test_anonymous_request_not_recorded(self, client, writer):
        response = await client.get("/api/vendors")
        assert response.status_code == 200
        writer.record.assert_not_called()

    async def test_recording_failure_does_not_change_response(self, client, writer, regular_headers):
        writer.record.side_effect = RuntimeError("boom")
        response = await client.get("/api/vendors", headers=regular_headers)
        assert response.status_code == 200

    @pytest.mark.parametrize(
        "claims",
        [{"tenant_id": 42}, {"tenant_id": "tenant-a", "roles": [1, 2]}, {"tenant_id": "tenant-a", "email": ["x"]}],
    )
    async def test_malformed_claims_do_not_fail_request(self, client, writer, claims):
        """A signed token with claims that do not fit a user passes through unaudited."""
        token = signed_token({"sub": "user-1", **claims})
        response = await client.post(
            "/api/vendors", json={"name": "Acme"}, headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Acme"
        writer.record.assert_not_called()


def make_request(method: str = "PUT", path: str = "/api/vendors/v-1") -> Request:
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "headers": [(b"user-agent", b"pytest")],
        "client": ("10.0.0.9", 1),
        "query_string": b"",
    }
    return Request(scope)


class TestDirectRecording:
    async def test_record_change_persists_diff(self, audit_writer, async_db_session):
        user = UserInfo(user_id="user-1", email="u@example.com", tenant_id="tenant-a")
        event_id = record_change(
            make_request(),
            user,
            AuditResource.VENDOR,
            "v-1",
            before={"name": "Acme", "status": "active"},
            after={"name": "Acme Corp", "status": "active"},
        )
        await audit_writer.flush()

        stored = (
            await async_db_session.execute(select(AuditEvent).where(AuditEvent.id == event_id))
        ).scalar_one()
        assert stored.action == "UPDATE"
        assert stored.details == "UPDATE VENDOR (ID: v-1)"
        assert stored.event_metadata["changes"] == {"name": {"before": "Acme", "after": "Acme Corp"}}
        assert stored.ip_address == "10.0.0.9"

    async def test_login_and_logout(self, writer):
        user = UserInfo(user_id="user-1", tenant_id="tenant-a")
        record_login(make_request("POST", "/api/auth/login"), user, writer=writer)
        record_logout(make_request("POST", "/api/auth/logout"), user, writer=writer)

        calls = writer.record.call_args_list
        assert [c.args[2] for c in calls] == [AuditAction.LOGIN, AuditAction.LOGOUT]
        assert calls[0].kwargs["details"] == "User logged in successfully"
        assert all(c.args[3] is AuditResource.AUTH for c in calls)

    async def test_helpers_skip_users_without_tenant(self, writer):
        user = UserInfo(user_id="user-1")
        assert record_login(make_request(), user, writer=writer) is None
        assert record_change(make_request(), user, "VENDOR", "v-1", {}, {}, writer=writer) is None
        writer.record.assert_not_called()
