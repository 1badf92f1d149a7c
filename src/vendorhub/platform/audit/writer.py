"""
Best-effort audit event ingestion.

``AuditWriter.record`` is a plain synchronous call: it stamps the event and
hands it to a bounded queue drained by a small pool of worker tasks. The
business operation that triggered the event never awaits the write and never
sees its failure; persist errors go to the operational log instead.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import structlog
from fastapi import Request
from pydantic import ValidationError
from pydantic_core import to_jsonable_python
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db import get_session_factory
from ..logging import get_operational_logger
from ..settings import get_settings
from .models import (
    ACTION_MAX_LENGTH,
    DETAILS_MAX_LENGTH,
    IP_ADDRESS_MAX_LENGTH,
    RESOURCE_MAX_LENGTH,
    USER_AGENT_MAX_LENGTH,
    AuditAction,
    AuditEventCreate,
    AuditResource,
    UnrecognizedValue,
    parse_action,
    parse_resource,
)

logger = structlog.get_logger(__name__)
operational_logger = get_operational_logger()


@dataclass(frozen=True)
class RequestContext:
    """Network provenance of the request that caused an event."""

    ip_address: str | None = None
    user_agent: str | None = None


def request_context_from_request(request: Request) -> RequestContext:
    """Extract client address and user agent, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address: str | None = forwarded.split(",")[0].strip() or None
    else:
        ip_address = request.client.host if request.client else None
    return RequestContext(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


def _truncate(value: str | None, limit: int) -> str | None:
    if value is None:
        return None
    return value if len(value) <= limit else value[:limit]


class AuditWriter:
    """Fire-and-forget writer backed by an ``asyncio.Queue`` and worker tasks."""

    def __init__(
        self,
        session_factory: Callable[[], async_sessionmaker[AsyncSession]] | None = None,
        queue_size: int | None = None,
        workers: int | None = None,
    ):
        config = get_settings().audit
        # Resolved per write so tests and the CLI can rebind the engine
        self._session_factory = session_factory or get_session_factory
        self._queue_size = queue_size or config.writer_queue_size
        self._worker_count = workers or config.writer_workers

        self._queue: asyncio.Queue[AuditEventCreate] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._last_timestamp: datetime | None = None
        self._stats = {"enqueued": 0, "persisted": 0, "failed": 0, "dropped": 0}

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    @property
    def running(self) -> bool:
        return bool(self._workers) and self._loop is not None and not self._loop.is_closed()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._ensure_started()

    def _ensure_started(self) -> bool:
        """Start workers on the running loop; False when there is no loop to run on."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False

        if self._workers and self._loop is loop:
            return True
        if self._workers:
            pending = self._queue.qsize() if self._queue else 0
            logger.warning("audit.writer.loop_changed", abandoned_events=pending)
            self._stats["dropped"] += pending

        self._loop = loop
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._workers = [
            loop.create_task(self._worker(self._queue), name=f"audit-writer-{i}")
            for i in range(self._worker_count)
        ]
        logger.info("audit.writer.started", workers=self._worker_count, queue_size=self._queue_size)
        return True

    async def flush(self) -> None:
        """Wait until every enqueued event has been persisted or has failed."""
        if self._queue is not None and self.running:
            await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        if not self._workers:
            return
        if drain:
            await self.flush()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        if self._queue is not None and not drain:
            self._stats["dropped"] += self._queue.qsize()
        self._workers = []
        self._queue = None
        self._loop = None
        logger.info("audit.writer.stopped", **self._stats)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def _next_timestamp(self) -> datetime:
        now = datetime.now(UTC)
        if self._last_timestamp is not None and now < self._last_timestamp:
            now = self._last_timestamp
        self._last_timestamp = now
        return now

    def build_event(
        self,
        tenant_id: str,
        actor_user_id: str | None,
        action: "AuditAction | str",
        resource: "AuditResource | str",
        resource_id: str | None = None,
        details: str | None = None,
        metadata: dict[str, Any] | None = None,
        request_context: RequestContext | None = None,
        actor_email: str | None = None,
    ) -> AuditEventCreate:
        """Stamp id and timestamp and normalise values to column limits."""
        parsed_action = parse_action(action)
        parsed_resource = parse_resource(resource)
        recognized = not isinstance(parsed_action, UnrecognizedValue) and not isinstance(
            parsed_resource, UnrecognizedValue
        )
        context = request_context or RequestContext()

        return AuditEventCreate(
            tenant_id=tenant_id,
            timestamp=self._next_timestamp(),
            actor_user_id=actor_user_id,
            actor_email=_truncate(actor_email, 320),
            action=_truncate(parsed_action.value, ACTION_MAX_LENGTH),
            resource=_truncate(parsed_resource.value, RESOURCE_MAX_LENGTH),
            resource_id=_truncate(resource_id, 255),
            details=_truncate(details, DETAILS_MAX_LENGTH),
            metadata=to_jsonable_python(metadata, fallback=str) if metadata is not None else None,
            is_recognized=recognized,
            ip_address=_truncate(context.ip_address, IP_ADDRESS_MAX_LENGTH),
            user_agent=_truncate(context.user_agent, USER_AGENT_MAX_LENGTH),
        )

    def record(
        self,
        tenant_id: str,
        actor_user_id: str | None,
        action: "AuditAction | str",
        resource: "AuditResource | str",
        resource_id: str | None = None,
        details: str | None = None,
        metadata: dict[str, Any] | None = None,
        request_context: RequestContext | None = None,
        actor_email: str | None = None,
    ) -> UUID | None:
        """Enqueue one audit event without waiting for it to be stored.

        Returns:
            The id assigned to the event, or None if it could not be enqueued.
            From another thread the id is returned once the event is handed to
            the writer's loop; a full queue there is logged and counted.
            Never raises.
        """
        try:
            event = self.build_event(
                tenant_id,
                actor_user_id,
                action,
                resource,
                resource_id=resource_id,
                details=details,
                metadata=metadata,
                request_context=request_context,
                actor_email=actor_email,
            )
        except (ValidationError, ValueError, TypeError) as e:
            self._stats["dropped"] += 1
            operational_logger.error(
                "audit.record_rejected",
                tenant_id=tenant_id,
                action=str(action),
                resource=str(resource),
                error=str(e),
            )
            return None

        try:
            running_loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if running_loop is not self._loop and self.running and self._loop.is_running():
            # Another thread, e.g. a sync route in the threadpool
            try:
                self._loop.call_soon_threadsafe(self._enqueue, event)
            except RuntimeError as e:
                self._stats["dropped"] += 1
                operational_logger.error(
                    "audit.writer.loop_closed", event_id=str(event.id), tenant_id=tenant_id, error=str(e)
                )
                return None
            return event.id

        if not self._ensure_started() or self._queue is None:
            self._stats["dropped"] += 1
            operational_logger.error(
                "audit.writer.no_event_loop", event_id=str(event.id), tenant_id=tenant_id
            )
            return None

        return event.id if self._enqueue(event) else None

    def _enqueue(self, event: AuditEventCreate) -> bool:
        if self._queue is None:
            self._stats["dropped"] += 1
            operational_logger.error(
                "audit.writer.no_event_loop", event_id=str(event.id), tenant_id=event.tenant_id
            )
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats["dropped"] += 1
            operational_logger.error(
                "audit.queue_full",
                event_id=str(event.id),
                tenant_id=event.tenant_id,
                queue_size=self._queue_size,
            )
            return False

        self._stats["enqueued"] += 1
        return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _worker(self, queue: "asyncio.Queue[AuditEventCreate]") -> None:
        while True:
            event = await queue.get()
            try:
                await self.persist(event)
            finally:
                queue.task_done()

    async def persist(self, event: AuditEventCreate) -> bool:
        """Insert one event in its own transaction. Failures are logged, not raised."""
        try:
            async with self._session_factory()() as session:
                try:
                    session.add(event.to_orm())
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except Exception as e:
            self._stats["failed"] += 1
            operational_logger.error(
                "audit.persist_failed",
                event_id=str(event.id),
                tenant_id=event.tenant_id,
                action=event.action,
                resource=event.resource,
                error=str(e),
                exc_info=True,
            )
            return False

        self._stats["persisted"] += 1
        return True


_writer: AuditWriter | None = None


def get_audit_writer() -> AuditWriter:
    """Process-wide writer, created on first use."""
    global _writer
    if _writer is None:
        _writer = AuditWriter()
    return _writer


def set_audit_writer(writer: AuditWriter | None) -> None:
    global _writer
    _writer = writer


def record_event(*args: Any, **kwargs: Any) -> UUID | None:
    """Shorthand for ``get_audit_writer().record(...)``."""
    return get_audit_writer().record(*args, **kwargs)


__all__ = [
    "AuditWriter",
    "RequestContext",
    "request_context_from_request",
    "get_audit_writer",
    "set_audit_writer",
    "record_event",
]
