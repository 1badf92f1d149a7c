"""
Audit trail exceptions.

Each read-path failure maps to exactly one category so callers can tell
"access denied", "not found", "bad request" and "try again later" apart.
"""

from typing import Any


class AuditError(Exception):
    """
    Base audit error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        retryable: Whether repeating the same call may succeed
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        retryable: bool = False,
    ):
        self.message = message
        self.error_code = error_code or "AUDIT_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.retryable = retryable
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "success": False,
            "error": self.message,
            "code": self.error_code,
            "retryable": self.retryable,
            "context": self.context,
        }


class AuditPermissionDenied(AuditError):
    """Caller lacks the audit-read capability or a tenant context."""

    def __init__(self, message: str = "Access denied: audit permissions required") -> None:
        super().__init__(message, "PERMISSION_DENIED", status_code=403)


class AuditEventNotFound(AuditError):
    """Event does not exist or belongs to another tenant."""

    def __init__(self, event_id: str) -> None:
        # No id in the context
        super().__init__("Audit log not found", "NOT_FOUND", status_code=404)
        self.event_id = event_id


class InvalidAuditFilter(AuditError):
    """Malformed date range, unsupported enum value or bad pagination parameters."""

    def __init__(self, message: str, field: str | None = None) -> None:
        context = {"field": field} if field else {}
        super().__init__(message, "INVALID_FILTER", status_code=400, context=context)
        self.field = field


class AuditStorageUnavailable(AuditError):
    """Transient backing-store failure."""

    def __init__(self, operation: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Audit storage unavailable during {operation}",
            "STORAGE_UNAVAILABLE",
            status_code=503,
            context={"operation": operation},
            retryable=True,
        )
        self.operation = operation


class AuditQueryTimeout(AuditError):
    """Read did not finish within the caller-supplied timeout."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(
            f"Audit {operation} timed out after {timeout:g}s",
            "QUERY_TIMEOUT",
            status_code=504,
            context={"operation": operation, "timeout_seconds": timeout},
            retryable=True,
        )
        self.operation = operation
        self.timeout = timeout


class AuditExportTruncated(AuditError):
    """Export stream failed after rows were already emitted."""

    def __init__(self, rows_emitted: int) -> None:
        super().__init__(
            f"Audit export truncated after {rows_emitted} rows",
            "EXPORT_TRUNCATED",
            status_code=500,
            context={"rows_emitted": rows_emitted},
            retryable=True,
        )
        self.rows_emitted = rows_emitted


__all__ = [
    "AuditError",
    "AuditPermissionDenied",
    "AuditEventNotFound",
    "InvalidAuditFilter",
    "AuditStorageUnavailable",
    "AuditQueryTimeout",
    "AuditExportTruncated",
]
