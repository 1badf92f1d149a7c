"""
Permission gate for the audit read paths.

Access is decided on an explicit capability, never on role labels alone.
The caller context is passed into every call rather than read from
request-global state.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import structlog
from fastapi import Depends
from sqlalchemy import Select

from ..auth.core import UserInfo, get_current_user
from ..settings import get_settings
from .exceptions import AuditPermissionDenied
from .models import AuditEvent

logger = structlog.get_logger(__name__)

AUDIT_READ = "audit:logs"


@dataclass(frozen=True)
class AuditCaller:
    """Who is asking, on behalf of which tenant, with which capabilities."""

    tenant_id: str | None
    user_id: str | None = None
    email: str | None = None
    roles: tuple[str, ...] = ()
    capabilities: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def system(cls, tenant_id: str, user_id: str | None = None) -> "AuditCaller":
        """Operator caller used by maintenance jobs such as the CLI export."""
        return cls(tenant_id=tenant_id, user_id=user_id, capabilities=frozenset({AUDIT_READ}))


def capabilities_for(
    roles: Iterable[str],
    permissions: Iterable[str] = (),
    role_capabilities: dict[str, list[str]] | None = None,
) -> frozenset[str]:
    """Union of explicit permissions and the capabilities granted by each role."""
    if role_capabilities is None:
        role_capabilities = get_settings().audit.role_capabilities
    granted = set(permissions)
    for role in roles:
        granted.update(role_capabilities.get(role, ()))
    return frozenset(granted)


def caller_from_user(user: UserInfo) -> AuditCaller:
    return AuditCaller(
        tenant_id=user.tenant_id,
        user_id=user.user_id,
        email=user.email,
        roles=tuple(user.roles),
        capabilities=capabilities_for(user.roles, user.permissions),
    )


def can_read(caller: AuditCaller) -> bool:
    return AUDIT_READ in caller.capabilities


def require_audit_read(caller: AuditCaller) -> str:
    """Raise ``AuditPermissionDenied`` unless the caller may read its tenant's trail.

    Returns:
        The tenant id every subsequent storage statement must be scoped to.
    """
    if not can_read(caller):
        logger.info("audit.access_denied", user_id=caller.user_id, tenant_id=caller.tenant_id)
        raise AuditPermissionDenied()
    if not caller.tenant_id:
        logger.info("audit.access_denied.no_tenant", user_id=caller.user_id)
        raise AuditPermissionDenied("Access denied: tenant context required")
    return caller.tenant_id


def tenant_scoped(statement: Select[Any], tenant_id: str) -> Select[Any]:
    """Apply the mandatory tenant filter to a select over ``audit_events``."""
    if not tenant_id:
        raise AuditPermissionDenied("Access denied: tenant context required")
    return statement.where(AuditEvent.tenant_id == tenant_id)


async def get_audit_caller(current_user: UserInfo = Depends(get_current_user)) -> AuditCaller:
    """FastAPI dependency: authenticated user, gated on the audit-read capability."""
    caller = caller_from_user(current_user)
    require_audit_read(caller)
    return caller


__all__ = [
    "AUDIT_READ",
    "AuditCaller",
    "caller_from_user",
    "capabilities_for",
    "can_read",
    "require_audit_read",
    "tenant_scoped",
    "get_audit_caller",
]
