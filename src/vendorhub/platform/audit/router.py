"""
FastAPI router for the audit trail endpoints.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import get_async_session
from .exceptions import InvalidAuditFilter
from .export import filename_for_export
from .models import (
    AuditErrorResponse,
    AuditFilter,
    AuditLogDetailResponse,
    AuditLogListResponse,
    AuditStatsResponse,
)
from .permissions import AuditCaller, get_audit_caller
from .service import AuditService
from .writer import request_context_from_request

logger = structlog.get_logger(__name__)

ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": AuditErrorResponse, "description": "Invalid filter"},
    403: {"model": AuditErrorResponse, "description": "Audit permissions required"},
    503: {"model": AuditErrorResponse, "description": "Audit storage unavailable"},
    504: {"model": AuditErrorResponse, "description": "Query timed out"},
}

router = APIRouter(prefix="/audit", tags=["Audit"], responses=ERROR_RESPONSES)


def get_audit_service(session: AsyncSession = Depends(get_async_session)) -> AuditService:
    return AuditService(session)


def _parse_int(value: str | None, field: str, default: int | None) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise InvalidAuditFilter(f"{field} must be an integer", field=field)


@router.get("/logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    page: str | None = Query(None, description="Page number, starting at 1"),
    limit: str | None = Query(None, description="Items per page"),
    action: str | None = Query(None, description="Filter by action"),
    resource: str | None = Query(None, description="Filter by resource"),
    user_id: str | None = Query(None, alias="userId", description="Filter by actor user ID"),
    start_date: str | None = Query(None, alias="startDate", description="Inclusive lower bound"),
    end_date: str | None = Query(None, alias="endDate", description="Inclusive upper bound"),
    search: str | None = Query(None, description="Case-insensitive text search"),
    sort_by: str = Query("timestamp", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    snapshot: str | None = Query(None, description="Snapshot bound from a previous page"),
    caller: AuditCaller = Depends(get_audit_caller),
    service: AuditService = Depends(get_audit_service),
) -> AuditLogListResponse:
    """
    Get a paginated, filtered list of audit events for the caller's tenant.
    """
    filters = AuditFilter.from_query_params(
        action=action,
        resource=resource,
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    result = await service.query(
        caller,
        filters,
        page=_parse_int(page, "page", 1),
        page_size=_parse_int(limit, "limit", None),
        sort_field=sort_by,
        sort_order=sort_order,
        snapshot=snapshot,
    )
    return result.to_response()


@router.get("/logs/{event_id}", response_model=AuditLogDetailResponse)
async def get_audit_log(
    event_id: str,
    caller: AuditCaller = Depends(get_audit_caller),
    service: AuditService = Depends(get_audit_service),
) -> AuditLogDetailResponse:
    """Get a single audit event, with any recorded field changes expanded."""
    event = await service.get_event(caller, event_id)
    return AuditLogDetailResponse(data=event)


@router.get("/stats", response_model=AuditStatsResponse)
async def get_audit_stats(
    start_date: str | None = Query(None, alias="startDate"),
    end_date: str | None = Query(None, alias="endDate"),
    caller: AuditCaller = Depends(get_audit_caller),
    service: AuditService = Depends(get_audit_service),
) -> AuditStatsResponse:
    """Aggregate counts for the requested window plus activity in the last 24 hours."""
    payload = await service.stats(caller, start_date, end_date)
    return AuditStatsResponse(data=payload)


@router.get(
    "/export",
    response_class=StreamingResponse,
    responses={200: {"content": {"text/csv": {}}, "description": "CSV export"}},
)
async def export_audit_logs(
    request: Request,
    action: str | None = Query(None),
    resource: str | None = Query(None),
    user_id: str | None = Query(None, alias="userId"),
    start_date: str | None = Query(None, alias="startDate"),
    end_date: str | None = Query(None, alias="endDate"),
    search: str | None = Query(None),
    caller: AuditCaller = Depends(get_audit_caller),
    service: AuditService = Depends(get_audit_service),
) -> StreamingResponse:
    """
    Stream every matching audit event as CSV.

    If storage fails part-way, the response is aborted instead of being
    terminated normally, so clients never mistake a partial file for a full one.
    """
    filters = AuditFilter.from_query_params(
        action=action,
        resource=resource,
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    stream = await service.export(
        caller, filters, request_context=request_context_from_request(request)
    )
    filename = filename_for_export()
    logger.info("audit.export.requested", tenant_id=caller.tenant_id, filename=filename)
    return StreamingResponse(
        stream,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


__all__ = ["router", "get_audit_service"]
