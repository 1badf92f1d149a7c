"""
VendorHub platform services - audit trail.

This package provides the tenant-scoped audit trail of the VendorHub
vendor-management application:
- Best-effort ingestion of audit events from business operations
- Capability-gated query, statistics, CSV export and detail lookups
- Request-level audit middleware for FastAPI applications
"""

__version__ = "1.0.0"


def get_version() -> str:
    """Get platform services version."""
    return __version__
