"""
Statistics over a tenant's audit trail.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession

from ..settings import get_settings
from .models import (
    ActionCount,
    AuditEvent,
    AuditFilter,
    AuditStatsPayload,
    DateRange,
    ResourceCount,
    UserCount,
)
from .permissions import AuditCaller, require_audit_read
from .query import build_scoped_select, run_read

logger = structlog.get_logger(__name__)

RECENT_ACTIVITY_WINDOW = timedelta(hours=24)


class AuditStatsAggregator:
    """Grouped counts for the dashboard.

    ``recent_activity`` always covers the trailing 24 hours before the call;
    the other figures cover the requested date window.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def stats(
        self,
        caller: AuditCaller,
        start_date: datetime | str | None = None,
        end_date: datetime | str | None = None,
        timeout: float | None = None,
        now: datetime | None = None,
    ) -> AuditStatsPayload:
        tenant_id = require_audit_read(caller)
        window = AuditFilter.from_query_params(start_date=start_date, end_date=end_date)
        now = now or datetime.now(UTC)
        if timeout is None:
            timeout = get_settings().audit.query_timeout_seconds

        payload = await run_read("stats", self._aggregate(tenant_id, window, now), timeout)
        logger.debug("audit.stats", tenant_id=tenant_id, total_logs=payload.total_logs)
        return payload

    async def _count(self, statement: Any) -> int:
        return (await self.session.execute(statement)).scalar_one()

    async def _aggregate(
        self, tenant_id: str, window: AuditFilter, now: datetime
    ) -> AuditStatsPayload:
        total_logs = await self._count(
            build_scoped_select(tenant_id, window, func.count(AuditEvent.id))
        )
        recent_activity = await self._count(
            build_scoped_select(tenant_id, AuditFilter(), func.count(AuditEvent.id)).where(
                AuditEvent.timestamp >= now - RECENT_ACTIVITY_WINDOW,
                AuditEvent.timestamp <= now,
            )
        )

        count = func.count(AuditEvent.id).label("count")

        action_rows = await self.session.execute(
            build_scoped_select(tenant_id, window, AuditEvent.action, count)
            .group_by(AuditEvent.action)
            .order_by(count.desc(), AuditEvent.action.asc())
        )
        resource_rows = await self.session.execute(
            build_scoped_select(tenant_id, window, AuditEvent.resource, count)
            .group_by(AuditEvent.resource)
            .order_by(count.desc(), AuditEvent.resource.asc())
        )
        # System events have no actor and are left out of the per-user figures
        user_rows = await self.session.execute(
            build_scoped_select(
                tenant_id,
                window,
                AuditEvent.actor_user_id,
                func.max(AuditEvent.actor_email).label("actor_email"),
                count,
            )
            .where(AuditEvent.actor_user_id.is_not(None))
            .group_by(AuditEvent.actor_user_id)
            .order_by(count.desc(), AuditEvent.actor_user_id.asc())
            .limit(get_settings().audit.stats_top_users)
        )

        return AuditStatsPayload(
            total_logs=total_logs,
            recent_activity=recent_activity,
            action_stats=[ActionCount(action=a, count=c) for a, c in action_rows.all()],
            resource_stats=[ResourceCount(resource=r, count=c) for r, c in resource_rows.all()],
            user_stats=[
                UserCount(actor_user_id=u, actor_email=e, count=c) for u, e, c in user_rows.all()
            ],
            date_range=DateRange(start_date=window.start_date, end_date=window.end_date),
        )


__all__ = ["AuditStatsAggregator", "RECENT_ACTIVITY_WINDOW"]
