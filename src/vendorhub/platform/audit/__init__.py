"""
Audit trail module for VendorHub.

Records who did what to which resource, per tenant, and serves that trail back
to callers holding the ``audit:logs`` capability.

Usage Examples:

    # Record an event from a business operation (never raises, never blocks)
    from vendorhub.platform.audit import AuditAction, AuditResource, record_event

    record_event(
        tenant_id,
        user.user_id,
        AuditAction.CREATE,
        AuditResource.VENDOR,
        resource_id=str(vendor.id),
        details=f"Created vendor {vendor.name}",
        actor_email=user.email,
    )

    # Read the trail
    from vendorhub.platform.audit import AuditFilter, AuditService, caller_from_user

    service = AuditService(session)
    page = await service.query(caller_from_user(user), AuditFilter(action="UPDATE"))
"""

from .exceptions import (
    AuditError,
    AuditEventNotFound,
    AuditExportTruncated,
    AuditPermissionDenied,
    AuditQueryTimeout,
    AuditStorageUnavailable,
    InvalidAuditFilter,
)
from .export import AuditExporter, AuditExportStream, filename_for_export
from .middleware import (
    AuditRequestMiddleware,
    compute_changes,
    record_change,
    record_login,
    record_logout,
)
from .models import (
    AuditAction,
    AuditEvent,
    AuditEventDetail,
    AuditEventResponse,
    AuditFilter,
    AuditResource,
    AuditStatsPayload,
    FieldChange,
    UnrecognizedValue,
    parse_action,
    parse_resource,
)
from .permissions import (
    AUDIT_READ,
    AuditCaller,
    caller_from_user,
    can_read,
    get_audit_caller,
    require_audit_read,
)
from .query import AuditFilterForm, AuditQueryEngine, AuditQueryResult
from .retention import AuditRetentionPolicy, AuditRetentionService
from .router import router
from .service import AuditService
from .stats import AuditStatsAggregator
from .writer import (
    AuditWriter,
    RequestContext,
    get_audit_writer,
    record_event,
    request_context_from_request,
    set_audit_writer,
)

__all__ = [
    # Models
    "AuditAction",
    "AuditResource",
    "AuditEvent",
    "AuditEventResponse",
    "AuditEventDetail",
    "AuditFilter",
    "AuditStatsPayload",
    "FieldChange",
    "UnrecognizedValue",
    "parse_action",
    "parse_resource",
    # Errors
    "AuditError",
    "AuditPermissionDenied",
    "AuditEventNotFound",
    "InvalidAuditFilter",
    "AuditStorageUnavailable",
    "AuditQueryTimeout",
    "AuditExportTruncated",
    # Permissions
    "AUDIT_READ",
    "AuditCaller",
    "caller_from_user",
    "can_read",
    "require_audit_read",
    "get_audit_caller",
    # Ingestion
    "AuditWriter",
    "RequestContext",
    "request_context_from_request",
    "get_audit_writer",
    "set_audit_writer",
    "record_event",
    # Reads
    "AuditService",
    "AuditQueryEngine",
    "AuditQueryResult",
    "AuditFilterForm",
    "AuditStatsAggregator",
    "AuditExporter",
    "AuditExportStream",
    "filename_for_export",
    # Middleware and helpers
    "AuditRequestMiddleware",
    "compute_changes",
    "record_change",
    "record_login",
    "record_logout",
    # Maintenance
    "AuditRetentionPolicy",
    "AuditRetentionService",
    # API
    "router",
]
