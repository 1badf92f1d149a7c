"""
Request-level audit logging.

``AuditRequestMiddleware`` records one event for every successful,
authenticated business request. The helpers below it let route handlers of
other services record field diffs and authentication events directly.
"""

import json
import re
from typing import Any
from uuid import UUID

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..auth.core import UserInfo, get_user_from_authorization
from ..settings import get_settings
from .models import AuditAction, AuditResource
from .writer import AuditWriter, get_audit_writer, request_context_from_request

logger = structlog.get_logger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_KEY_PARTS = ("password", "token", "secret", "key", "authorization")
UNCHANGED_FIELDS = frozenset(
    {"_id", "__v", "id", "createdAt", "updatedAt", "created_at", "updated_at"}
)

METHOD_ACTIONS = {
    "GET": AuditAction.READ,
    "POST": AuditAction.CREATE,
    "PUT": AuditAction.UPDATE,
    "PATCH": AuditAction.UPDATE,
    "DELETE": AuditAction.DELETE,
}

# First match wins
PATH_RESOURCES = (
    ("/users", AuditResource.USER),
    ("/vendors", AuditResource.VENDOR),
    ("/contracts", AuditResource.CONTRACT),
    ("/data-types", AuditResource.DATA_TYPE),
    ("/tenants", AuditResource.TENANT),
    ("/auth", AuditResource.AUTH),
)

_OBJECT_ID = re.compile(r"/([a-f0-9]{24})(?:/|$)")
_UUID = re.compile(
    r"/([0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})(?:/|$)"
)


def action_for_method(method: str) -> AuditAction:
    return METHOD_ACTIONS.get(method.upper(), AuditAction.READ)


def resource_for_path(path: str) -> AuditResource:
    for fragment, resource in PATH_RESOURCES:
        if fragment in path:
            return resource
    return AuditResource.SYSTEM


def resource_id_for_path(path: str) -> str | None:
    for pattern in (_OBJECT_ID, _UUID):
        match = pattern.search(path)
        if match:
            return match.group(1)
    return None


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in SENSITIVE_KEY_PARTS)


def sanitize_payload(value: Any) -> Any:
    """Copy ``value`` with every sensitive key's value replaced, recursively."""
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_sensitive(str(key)) else sanitize_payload(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [sanitize_payload(item) for item in value]
    return value


def compute_changes(before: dict[str, Any], after: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Field-level diff in the shape stored under ``metadata["changes"]``.

    Only keys present in ``after`` are compared; bookkeeping fields are ignored.
    """
    changes: dict[str, dict[str, Any]] = {}
    for key, updated in after.items():
        if key in UNCHANGED_FIELDS:
            continue
        original = before.get(key)
        if json.dumps(original, sort_keys=True, default=str) != json.dumps(
            updated, sort_keys=True, default=str
        ):
            changes[key] = {"before": original, "after": updated}
    return changes


def _caller_for(request: Request) -> UserInfo | None:
    user = getattr(request.state, "user", None)
    if isinstance(user, UserInfo):
        return user
    return get_user_from_authorization(request.headers.get("authorization"))


class AuditRequestMiddleware(BaseHTTPMiddleware):
    """
    Middleware that records an audit event for each successful business request.

    Requests without an authenticated user and tenant, non-2xx responses and
    the skip paths (credential flows, the audit API itself, health checks) are
    not recorded. Failures here never change the response.
    """

    def __init__(
        self,
        app: ASGIApp,
        writer: AuditWriter | None = None,
        api_prefix: str | None = None,
    ):
        super().__init__(app)
        self._writer = writer
        prefix = get_settings().api_prefix if api_prefix is None else api_prefix
        self.skip_paths = tuple(
            f"{prefix}{path}"
            for path in (
                "/auth/login",
                "/auth/register",
                "/auth/forgot-password",
                "/auth/reset-password",
                "/audit",
                "/health",
            )
        ) + ("/health",)

    @property
    def writer(self) -> AuditWriter:
        return self._writer or get_audit_writer()

    async def dispatch(self, request: Request, call_next: Any) -> Any:
        path = request.url.path
        if path.startswith(self.skip_paths):
            return await call_next(request)

        try:
            user = _caller_for(request)
            payload = None
            if user is not None and request.method in ("POST", "PUT", "PATCH"):
                payload = await self._read_json_body(request)
        except Exception as e:
            logger.warning("audit.request_middleware_failed", path=path, error=str(e))
            user = None

        if user is None or not user.tenant_id:
            return await call_next(request)

        response = await call_next(request)

        if 200 <= response.status_code < 300:
            try:
                self._record(request, user, response.status_code, payload)
            except Exception as e:
                logger.warning("audit.request_middleware_failed", path=path, error=str(e))
        return response

    async def _read_json_body(self, request: Request) -> Any:
        if "json" not in request.headers.get("content-type", ""):
            return None
        body = await request.body()
        if not body:
            return None
        try:
            return json.loads(body)
        except ValueError:
            return None

    def _record(
        self, request: Request, user: UserInfo, status_code: int, payload: Any
    ) -> None:
        path = request.url.path
        action = action_for_method(request.method)
        resource = resource_for_path(path)
        resource_id = resource_id_for_path(path)

        details = f"{action.value} {resource.value}"
        if resource_id:
            details += f" (ID: {resource_id})"
        if path.endswith("/auth/profile") and request.method == "GET":
            details = "User profile accessed"

        metadata: dict[str, Any] = {
            "method": request.method,
            "url": path,
            "statusCode": status_code,
        }
        if payload:
            metadata["requestPayload"] = sanitize_payload(payload)
        if request.method == "GET" and request.query_params:
            metadata["queryParams"] = sanitize_payload(dict(request.query_params))

        self.writer.record(
            user.tenant_id,
            user.user_id,
            action,
            resource,
            resource_id=resource_id,
            details=details,
            metadata=metadata,
            request_context=request_context_from_request(request),
            actor_email=user.email,
        )


def record_change(
    request: Request,
    user: UserInfo,
    resource: AuditResource | str,
    resource_id: str | UUID,
    before: dict[str, Any],
    after: dict[str, Any],
    details: str | None = None,
    writer: AuditWriter | None = None,
) -> UUID | None:
    """Record an UPDATE carrying the field diff between ``before`` and ``after``."""
    if not user.tenant_id:
        return None
    changes = compute_changes(before, after)
    metadata: dict[str, Any] = {"method": request.method, "url": request.url.path}
    if changes:
        metadata["changes"] = changes
    return (writer or get_audit_writer()).record(
        user.tenant_id,
        user.user_id,
        AuditAction.UPDATE,
        resource,
        resource_id=str(resource_id),
        details=details or f"UPDATE {getattr(resource, 'value', resource)} (ID: {resource_id})",
        metadata=metadata,
        request_context=request_context_from_request(request),
        actor_email=user.email,
    )


def _record_auth_event(
    request: Request,
    user: UserInfo,
    action: AuditAction,
    details: str,
    writer: AuditWriter | None,
) -> UUID | None:
    if not user.tenant_id:
        return None
    return (writer or get_audit_writer()).record(
        user.tenant_id,
        user.user_id,
        action,
        AuditResource.AUTH,
        details=details,
        metadata={"method": request.method, "url": request.url.path},
        request_context=request_context_from_request(request),
        actor_email=user.email,
    )


def record_login(
    request: Request, user: UserInfo, writer: AuditWriter | None = None
) -> UUID | None:
    return _record_auth_event(
        request, user, AuditAction.LOGIN, "User logged in successfully", writer
    )


def record_logout(
    request: Request, user: UserInfo, writer: AuditWriter | None = None
) -> UUID | None:
    return _record_auth_event(request, user, AuditAction.LOGOUT, "User logged out", writer)


__all__ = [
    "AuditRequestMiddleware",
    "action_for_method",
    "resource_for_path",
    "resource_id_for_path",
    "sanitize_payload",
    "compute_changes",
    "record_change",
    "record_login",
    "record_logout",
]
