"""
CSV export of a tenant's audit trail.

The export walks the whole filtered set in keyset-paginated batches and yields
one CSV line at a time, so memory use is bounded by the batch size no matter
how many events match.
"""

import csv
import io
from collections.abc import AsyncIterator, Callable, Iterable
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db import get_session_factory
from ..settings import get_settings
from .exceptions import AuditExportTruncated, AuditStorageUnavailable
from .models import AuditAction, AuditEvent, AuditFilter, AuditResource, ensure_utc
from .permissions import AuditCaller, require_audit_read
from .query import build_scoped_select
from .writer import RequestContext, get_audit_writer

logger = structlog.get_logger(__name__)

CSV_HEADER = [
    "ID",
    "Timestamp",
    "User ID",
    "User Email",
    "Action",
    "Resource",
    "Resource ID",
    "Details",
    "IP Address",
    "User Agent",
]


def csv_line(values: Iterable[Any]) -> str:
    """Render one RFC 4180 row terminated by CRLF."""
    buffer = io.StringIO()
    csv.writer(buffer, lineterminator="\r\n").writerow(values)
    return buffer.getvalue()


def csv_row(event: AuditEvent) -> list[str]:
    return [
        str(event.id),
        ensure_utc(event.timestamp).isoformat(),
        event.actor_user_id or "",
        event.actor_email or "",
        event.action,
        event.resource,
        event.resource_id or "",
        event.details or "",
        event.ip_address or "",
        event.user_agent or "",
    ]


def filename_for_export(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"audit_logs_{now:%Y-%m-%d}.csv"


class AuditExportStream:
    """Single-use async iterator of CSV lines.

    Iterating a second time raises ``RuntimeError``. A storage failure after the
    header has been produced raises ``AuditExportTruncated`` so the consumer can
    tell a partial file from a complete one.
    """

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str,
        filters: AuditFilter,
        snapshot: datetime,
        batch_size: int,
        first_batch: list[AuditEvent],
        on_complete: Callable[["AuditExportStream"], None] | None = None,
    ):
        self.tenant_id = tenant_id
        self.filters = filters
        self.snapshot = snapshot
        self.batch_size = batch_size
        self.rows_emitted = 0
        self.completed = False
        self._session = session
        self._first_batch: list[AuditEvent] | None = first_batch
        self._on_complete = on_complete
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("Audit export stream has already been consumed")
        self._consumed = True
        return self._iterate()

    async def aclose(self) -> None:
        """Release the stream's session without consuming it."""
        self._consumed = True
        self._first_batch = None
        await self._session.close()

    async def _iterate(self) -> AsyncIterator[str]:
        try:
            yield csv_line(CSV_HEADER)

            batch = self._first_batch or []
            self._first_batch = None
            while batch:
                for event in batch:
                    yield csv_line(csv_row(event))
                    self.rows_emitted += 1
                if len(batch) < self.batch_size:
                    break
                last = batch[-1]
                try:
                    batch = await fetch_batch(
                        self._session,
                        self.tenant_id,
                        self.filters,
                        self.snapshot,
                        self.batch_size,
                        after=(last.timestamp, last.id),
                    )
                except (SQLAlchemyError, OSError) as e:
                    logger.error(
                        "audit.export_truncated",
                        tenant_id=self.tenant_id,
                        rows_emitted=self.rows_emitted,
                        error=str(e),
                    )
                    raise AuditExportTruncated(self.rows_emitted) from e

            self.completed = True
            logger.info("audit.export_completed", tenant_id=self.tenant_id, rows=self.rows_emitted)
        finally:
            await self._session.close()

        if self._on_complete is not None:
            self._on_complete(self)


async def fetch_batch(
    session: AsyncSession,
    tenant_id: str,
    filters: AuditFilter,
    snapshot: datetime,
    batch_size: int,
    after: tuple[datetime, UUID] | None = None,
) -> list[AuditEvent]:
    """Next batch in (timestamp desc, id desc) order, strictly after ``after``."""
    statement = build_scoped_select(tenant_id, filters, snapshot=snapshot)
    if after is not None:
        last_timestamp, last_id = after
        statement = statement.where(
            or_(
                AuditEvent.timestamp < last_timestamp,
                and_(AuditEvent.timestamp == last_timestamp, AuditEvent.id < last_id),
            )
        )
    statement = statement.order_by(AuditEvent.timestamp.desc(), AuditEvent.id.desc()).limit(
        batch_size
    )
    return list((await session.execute(statement)).scalars().all())


class AuditExporter:
    """Opens export streams. Each stream owns a session for its lifetime."""

    def __init__(
        self,
        session_factory: Callable[[], async_sessionmaker[AsyncSession]] | None = None,
        batch_size: int | None = None,
    ):
        self._session_factory = session_factory or get_session_factory
        self.batch_size = batch_size or get_settings().audit.export_batch_size

    async def open(
        self,
        caller: AuditCaller,
        filters: AuditFilter | None = None,
        request_context: RequestContext | None = None,
    ) -> AuditExportStream:
        """Check access, take the snapshot and fetch the first batch.

        Failures here raise ``AuditStorageUnavailable`` before any output exists.
        """
        tenant_id = require_audit_read(caller)
        filters = filters or AuditFilter()
        snapshot = datetime.now(UTC)

        session = self._session_factory()()
        try:
            first_batch = await fetch_batch(session, tenant_id, filters, snapshot, self.batch_size)
        except (SQLAlchemyError, OSError) as e:
            await session.close()
            logger.error("audit.storage_unavailable", operation="export", error=str(e))
            raise AuditStorageUnavailable("export") from e

        on_complete = None
        if get_settings().audit.record_exports:
            on_complete = _export_recorder(caller, request_context)

        logger.info("audit.export_started", tenant_id=tenant_id, user_id=caller.user_id)
        return AuditExportStream(
            session,
            tenant_id,
            filters,
            snapshot,
            self.batch_size,
            first_batch,
            on_complete=on_complete,
        )


def _export_recorder(
    caller: AuditCaller, request_context: RequestContext | None
) -> Callable[[AuditExportStream], None]:
    def record(stream: AuditExportStream) -> None:
        get_audit_writer().record(
            stream.tenant_id,
            caller.user_id,
            AuditAction.EXPORT,
            AuditResource.SYSTEM,
            details=f"Exported {stream.rows_emitted} audit log entries",
            metadata={
                "filters": stream.filters.model_dump(mode="json", exclude_none=True),
                "rowCount": stream.rows_emitted,
            },
            request_context=request_context,
            actor_email=caller.email,
        )

    return record


__all__ = [
    "CSV_HEADER",
    "AuditExporter",
    "AuditExportStream",
    "csv_line",
    "csv_row",
    "fetch_batch",
    "filename_for_export",
]
