"""
Audit service: the read-side facade used by the router and the CLI.
"""

from datetime import datetime
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..settings import get_settings
from .exceptions import AuditEventNotFound
from .export import AuditExporter, AuditExportStream
from .models import AuditEvent, AuditEventDetail, AuditFilter, AuditStatsPayload
from .permissions import AuditCaller, require_audit_read, tenant_scoped
from .query import AuditQueryEngine, AuditQueryResult, run_read
from .stats import AuditStatsAggregator
from .writer import RequestContext

logger = structlog.get_logger(__name__)


class AuditService:
    """Query, statistics, export and detail lookups for one caller's tenant.

    Every entry point re-checks the audit-read capability before touching
    storage, whatever the HTTP layer already did.
    """

    def __init__(self, session: AsyncSession, exporter: AuditExporter | None = None):
        self.session = session
        self.query_engine = AuditQueryEngine(session)
        self.aggregator = AuditStatsAggregator(session)
        self.exporter = exporter or AuditExporter()

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
        return await self.query_engine.query(
            caller,
            filters,
            page=page,
            page_size=page_size,
            sort_field=sort_field,
            sort_order=sort_order,
            snapshot=snapshot,
            timeout=timeout,
        )

    async def stats(
        self,
        caller: AuditCaller,
        start_date: datetime | str | None = None,
        end_date: datetime | str | None = None,
        timeout: float | None = None,
    ) -> AuditStatsPayload:
        return await self.aggregator.stats(caller, start_date, end_date, timeout=timeout)

    async def export(
        self,
        caller: AuditCaller,
        filters: AuditFilter | None = None,
        request_context: RequestContext | None = None,
    ) -> AuditExportStream:
        return await self.exporter.open(caller, filters, request_context=request_context)

    async def get_event(
        self, caller: AuditCaller, event_id: str | UUID, timeout: float | None = None
    ) -> AuditEventDetail:
        """Fetch one event of the caller's tenant with its changes expanded.

        Raises:
            AuditEventNotFound: malformed id, unknown id, or an id owned by another tenant
        """
        tenant_id = require_audit_read(caller)
        try:
            parsed_id = event_id if isinstance(event_id, UUID) else UUID(str(event_id))
        except ValueError:
            raise AuditEventNotFound(str(event_id))

        statement = tenant_scoped(select(AuditEvent), tenant_id).where(AuditEvent.id == parsed_id)
        if timeout is None:
            timeout = get_settings().audit.query_timeout_seconds
        event = await run_read("detail", self._fetch_one(statement), timeout)
        if event is None:
            logger.info("audit.detail.not_found", tenant_id=tenant_id, event_id=str(parsed_id))
            raise AuditEventNotFound(str(parsed_id))
        return AuditEventDetail.model_validate(event)

    async def _fetch_one(self, statement) -> AuditEvent | None:
        result = await self.session.execute(statement)
        return result.scalar_one_or_none()


__all__ = ["AuditService"]
