"""
Audit event retention.

Expiry is off by default and left to the storage layer (for example a
partition-drop job). When ``AUDIT__RETENTION_DAYS`` is set, operators can purge
expired events with ``vendorhub purge-audit-logs``. Nothing in the HTTP API
deletes audit events.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, func, select

from ..db import get_async_db
from ..settings import get_settings
from .models import AuditEvent

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuditRetentionPolicy:
    """Configuration for audit event retention."""

    retention_days: int | None = None
    batch_size: int = 1000

    @classmethod
    def from_settings(cls) -> "AuditRetentionPolicy":
        config = get_settings().audit
        return cls(retention_days=config.retention_days, batch_size=config.retention_batch_size)

    def cutoff(self, now: datetime | None = None) -> datetime | None:
        if self.retention_days is None:
            return None
        return (now or datetime.now(UTC)) - timedelta(days=self.retention_days)


class AuditRetentionService:
    """Deletes audit events older than the retention window, in batches."""

    def __init__(self, policy: AuditRetentionPolicy | None = None):
        self.policy = policy or AuditRetentionPolicy.from_settings()

    async def purge_expired(
        self,
        now: datetime | None = None,
        dry_run: bool = False,
        tenant_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Remove expired audit events.

        Args:
            now: Reference time for the cutoff (defaults to the current time)
            dry_run: If True, only count what would be deleted
            tenant_id: Optionally limit to one tenant

        Returns:
            Summary of the purge
        """
        cutoff = self.policy.cutoff(now)
        results: dict[str, Any] = {
            "cutoff": cutoff.isoformat() if cutoff else None,
            "dry_run": dry_run,
            "matched": 0,
            "deleted": 0,
            "batches": 0,
        }
        if cutoff is None:
            logger.info("audit.retention.disabled")
            return results

        conditions = [AuditEvent.timestamp < cutoff]
        if tenant_id:
            conditions.append(AuditEvent.tenant_id == tenant_id)

        async with get_async_db() as session:
            count_query = select(func.count(AuditEvent.id)).where(*conditions)
            results["matched"] = (await session.execute(count_query)).scalar_one()

        logger.info(
            "audit.retention.matched",
            cutoff=results["cutoff"],
            tenant_id=tenant_id,
            matched=results["matched"],
            dry_run=dry_run,
        )
        if dry_run or results["matched"] == 0:
            return results

        while True:
            async with get_async_db() as session:
                id_query = select(AuditEvent.id).where(*conditions).limit(self.policy.batch_size)
                ids = list((await session.execute(id_query)).scalars().all())
                if not ids:
                    break
                await session.execute(delete(AuditEvent).where(AuditEvent.id.in_(ids)))
            results["deleted"] += len(ids)
            results["batches"] += 1
            if len(ids) < self.policy.batch_size:
                break

        logger.info("audit.retention.purged", deleted=results["deleted"], batches=results["batches"])
        return results


__all__ = ["AuditRetentionPolicy", "AuditRetentionService"]
