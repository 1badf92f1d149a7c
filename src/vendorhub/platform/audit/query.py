"""
Audit query engine: filtered, paginated, tenant-scoped reads.

Statements for the query engine, the statistics aggregator and the export
streamer are all built by ``build_scoped_select`` so the three share one set of
filter semantics and one tenant filter.
"""

import asyncio
import math
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

import structlog
from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..settings import get_settings
from .exceptions import AuditQueryTimeout, AuditStorageUnavailable, InvalidAuditFilter
from .models import (
    AuditEvent,
    AuditEventResponse,
    AuditFilter,
    AuditLogListResponse,
    AuditPagination,
    parse_date_param,
)
from .permissions import AuditCaller, require_audit_read, tenant_scoped

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SORT_COLUMNS = {
    "timestamp": AuditEvent.timestamp,
    "action": AuditEvent.action,
    "resource": AuditEvent.resource,
    "actorEmail": AuditEvent.actor_email,
    "actor_email": AuditEvent.actor_email,
    "actorUserId": AuditEvent.actor_user_id,
    "actor_user_id": AuditEvent.actor_user_id,
}
SORT_ORDERS = ("asc", "desc")


def escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def build_filter_conditions(filters: AuditFilter) -> list[Any]:
    """Translate an ``AuditFilter`` into AND-combined SQL conditions."""
    conditions: list[Any] = []

    if filters.action:
        conditions.append(AuditEvent.action == filters.action.value)
    if filters.resource:
        conditions.append(AuditEvent.resource == filters.resource.value)
    if filters.actor_user_id:
        conditions.append(AuditEvent.actor_user_id == filters.actor_user_id)
    if filters.start_date:
        conditions.append(AuditEvent.timestamp >= filters.start_date)
    if filters.end_date:
        conditions.append(AuditEvent.timestamp <= filters.end_date)
    if filters.search:
        pattern = f"%{escape_like(filters.search)}%"
        conditions.append(
            or_(
                AuditEvent.details.ilike(pattern, escape="\\"),
                AuditEvent.actor_email.ilike(pattern, escape="\\"),
                AuditEvent.action.ilike(pattern, escape="\\"),
                AuditEvent.resource.ilike(pattern, escape="\\"),
            )
        )
    return conditions


def build_scoped_select(
    tenant_id: str,
    filters: AuditFilter,
    *columns: Any,
    snapshot: datetime | None = None,
) -> Select[Any]:
    """Select over ``audit_events`` restricted to one tenant, the filter and the snapshot bound."""
    statement = select(*columns) if columns else select(AuditEvent)
    statement = tenant_scoped(statement, tenant_id)
    conditions = build_filter_conditions(filters)
    if snapshot is not None:
        conditions.append(AuditEvent.timestamp <= snapshot)
    return statement.where(*conditions) if conditions else statement


async def run_read(operation: str, awaitable: Awaitable[T], timeout: float | None) -> T:
    """Await a read with a timeout, mapping storage failures to audit errors."""
    try:
        if timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        logger.warning("audit.read_timeout", operation=operation, timeout=timeout)
        raise AuditQueryTimeout(operation, timeout or 0) from e
    except (SQLAlchemyError, OSError) as e:
        logger.error("audit.storage_unavailable", operation=operation, error=str(e))
        raise AuditStorageUnavailable(operation) from e


@dataclass
class AuditQueryResult:
    """One page of audit events plus the pagination state needed to fetch the next."""

    records: list[AuditEvent]
    total_count: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_prev: bool
    snapshot: datetime

    @property
    def ids(self) -> list[str]:
        return [str(record.id) for record in self.records]

    def to_response(self) -> AuditLogListResponse:
        return AuditLogListResponse(
            data=[AuditEventResponse.model_validate(record) for record in self.records],
            pagination=AuditPagination(
                current_page=self.page,
                total_pages=self.total_pages,
                total_count=self.total_count,
                page_size=self.page_size,
                has_next=self.has_next,
                has_prev=self.has_prev,
                snapshot=self.snapshot,
            ),
        )


class AuditQueryEngine:
    """Filtered, paginated reads over one tenant's audit trail."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def validate_paging(
        page: int, page_size: int, sort_field: str, sort_order: str
    ) -> tuple[Any, str]:
        max_page_size = get_settings().audit.max_page_size
        if page < 1:
            raise InvalidAuditFilter("page must be >= 1", field="page")
        if page_size < 1 or page_size > max_page_size:
            raise InvalidAuditFilter(
                f"limit must be between 1 and {max_page_size}", field="limit"
            )
        column = SORT_COLUMNS.get(sort_field)
        if column is None:
            raise InvalidAuditFilter(f"Unsupported sort field: {sort_field}", field="sortBy")
        order = sort_order.lower()
        if order not in SORT_ORDERS:
            raise InvalidAuditFilter("sortOrder must be 'asc' or 'desc'", field="sortOrder")
        return column, order

    async def query(
        self,
        caller: AuditCaller,
        filters: AuditFilter | None = None,
        page: int = 1,
        page_size: int | None = None,
        sort_field: str = "timestamp",
        sort_order: str = "desc",
        snapshot: datetime | str | None = None,
        timeout: float | None = None,
    ) -> AuditQueryResult:
        """Return one page of events matching ``filters`` in the caller's tenant.

        Args:
            snapshot: Upper timestamp bound from a previous page; events written
                after it are excluded so later pages do not shift.
            timeout: Seconds before the read is abandoned with ``AuditQueryTimeout``.
        """
        tenant_id = require_audit_read(caller)
        config = get_settings().audit
        filters = filters or AuditFilter()
        page_size = config.default_page_size if page_size is None else page_size
        column, order = self.validate_paging(page, page_size, sort_field, sort_order)
        try:
            bound = parse_date_param(snapshot) or datetime.now(UTC)
        except ValueError as e:
            raise InvalidAuditFilter("Invalid snapshot timestamp", field="snapshot") from e

        timeout = config.query_timeout_seconds if timeout is None else timeout
        total_count, records = await run_read(
            "query", self._fetch(tenant_id, filters, page, page_size, column, order, bound), timeout
        )

        total_pages = math.ceil(total_count / page_size) if total_count else 0
        logger.debug(
            "audit.query",
            tenant_id=tenant_id,
            page=page,
            page_size=page_size,
            total_count=total_count,
        )
        return AuditQueryResult(
            records=records,
            total_count=total_count,
            page=page,
            page_size=page_size,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
            snapshot=bound,
        )

    async def _fetch(
        self,
        tenant_id: str,
        filters: AuditFilter,
        page: int,
        page_size: int,
        column: Any,
        order: str,
        snapshot: datetime,
    ) -> tuple[int, list[AuditEvent]]:
        count_stmt = build_scoped_select(
            tenant_id, filters, func.count(AuditEvent.id), snapshot=snapshot
        )
        total_count = (await self.session.execute(count_stmt)).scalar_one()

        if order == "desc":
            ordering = (column.desc(), AuditEvent.id.desc())
        else:
            ordering = (column.asc(), AuditEvent.id.asc())
        page_stmt = (
            build_scoped_select(tenant_id, filters, snapshot=snapshot)
            .order_by(*ordering)
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        records = list((await self.session.execute(page_stmt)).scalars().all())
        return total_count, records


@dataclass
class AuditFilterForm:
    """Filter and page state for a stateful caller such as a UI table.

    Any change to the filter returns to page 1 and drops the snapshot.
    """

    filters: AuditFilter = field(default_factory=AuditFilter)
    page: int = 1
    snapshot: datetime | None = None

    def update(self, **changes: Any) -> AuditFilter:
        merged = {**self.filters.model_dump(), **changes}
        updated = AuditFilter.model_validate(merged)
        if updated != self.filters:
            self.filters = updated
            self.page = 1
            self.snapshot = None
        return self.filters

    def clear(self) -> None:
        self.filters = AuditFilter()
        self.page = 1
        self.snapshot = None

    def go_to(self, page: int, result: AuditQueryResult | None = None) -> None:
        if page < 1:
            raise InvalidAuditFilter("page must be >= 1", field="page")
        self.page = page
        if result is not None:
            self.snapshot = result.snapshot


__all__ = [
    "SORT_COLUMNS",
    "AuditQueryEngine",
    "AuditQueryResult",
    "AuditFilterForm",
    "build_filter_conditions",
    "build_scoped_select",
    "escape_like",
    "run_read",
]
