"""
Tests for the CSV export streamer.
"""

import csv
import io
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from vendorhub.platform.audit import export as export_module
from vendorhub.platform.audit.exceptions import (
    AuditExportTruncated,
    AuditPermissionDenied,
    AuditStorageUnavailable,
)
from vendorhub.platform.audit.export import (
    CSV_HEADER,
    AuditExporter,
    csv_line,
    filename_for_export,
)
from vendorhub.platform.audit.models import AuditEvent, AuditFilter
from vendorhub.platform.audit.query import AuditQueryEngine
from vendorhub.platform.settings import get_settings

pytestmark = pytest.mark.asyncio


async def collect(stream) -> str:
    return "".join([line async for line in stream])


def parse(text: str) -> list[list[str]]:
    return list(csv.reader(io.StringIO(text)))


class TestCsvFormatting:
    def test_header_line(self):
        assert csv_line(CSV_HEADER) == (
            "ID,Timestamp,User ID,User Email,Action,Resource,Resource ID,Details,IP Address,User Agent\r\n"
        )

    def test_quoting(self):
        line = csv_line(["plain", "with,comma", 'with "quotes"', "multi\nline", ""])
        assert line == 'plain,"with,comma","with ""quotes""","multi\nline",\r\n'

    def test_filename(self):
        assert filename_for_export(datetime(2026, 3, 9, 23, 0, tzinfo=UTC)) == "audit_logs_2026-03-09.csv"


class TestExport:
    async def test_filtered_export(self, async_db_engine, auditor, scenario):
        stream = await AuditExporter().open(auditor, AuditFilter(action="UPDATE"))
        rows = parse(await collect(stream))

        assert rows[0] == CSV_HEADER
        assert len(rows) == 2
        updated = scenario["update"]
        assert rows[1][0] == str(updated.id)
        assert rows[1][1] == "2026-01-05T10:00:00+00:00"
        assert rows[1][4:8] == ["UPDATE", "VENDOR", "v-1", "Updated Acme"]
        assert stream.completed is True
        assert stream.rows_emitted == 1

    async def test_empty_export_has_header_only(self, async_db_engine, auditor):
        stream = await AuditExporter().open(auditor)
        assert parse(await collect(stream)) == [CSV_HEADER]

    async def test_matches_paged_query_across_batches(
        self, async_db_session, auditor, make_event, seed_events
    ):
        """Every matching event appears exactly once, in the query engine's order."""
        base = datetime(2026, 1, 1, tzinfo=UTC)
        events = [
            make_event("tenant-a", "READ", "VENDOR", base + timedelta(minutes=i // 3))
            for i in range(11)
        ]
        await seed_events(*events)

        stream = await AuditExporter(batch_size=4).open(auditor)
        exported = [row[0] for row in parse(await collect(stream))[1:]]

        engine = AuditQueryEngine(async_db_session)
        paged = []
        for page in (1, 2, 3):
            paged.extend((await engine.query(auditor, page=page, page_size=5)).ids)

        assert len(exported) == 11
        assert len(set(exported)) == 11
        assert exported == paged

    async def test_other_tenants_never_exported(self, async_db_engine, tenant_b_auditor, scenario):
        stream = await AuditExporter().open(tenant_b_auditor)
        rows = parse(await collect(stream))
        assert [row[0] for row in rows[1:]] == [str(scenario["tenant_b"].id)]

    async def test_quoted_fields_survive(self, async_db_engine, auditor, make_event, seed_events):
        await seed_events(
            make_event(
                "tenant-a",
                "UPDATE",
                "VENDOR",
                datetime(2026, 1, 1, tzinfo=UTC),
                details='Renamed "Acme, Inc."\nto Acme',
                user_agent="Mozilla/5.0 (X11, Linux)",
            )
        )
        stream = await AuditExporter().open(auditor)
        rows = parse(await collect(stream))
        assert rows[1][7] == 'Renamed "Acme, Inc."\nto Acme'
        assert rows[1][9] == "Mozilla/5.0 (X11, Linux)"

    async def test_stream_is_single_use(self, async_db_engine, auditor, scenario):
        stream = await AuditExporter().open(auditor)
        await collect(stream)
        with pytest.raises(RuntimeError, match="consumed"):
            stream.__aiter__()

    async def test_permission_denied_before_storage(self, async_db_engine, regular_user):
        with patch.object(export_module, "fetch_batch") as fetch:
            with pytest.raises(AuditPermissionDenied):
                await AuditExporter().open(regular_user)
        fetch.assert_not_called()


class TestExportFailures:
    async def test_failure_before_output_is_unavailable(self, async_db_engine, auditor):
        async def broken(*args, **kwargs):
            raise OperationalError("SELECT", {}, ConnectionRefusedError("db down"))

        with patch.object(export_module, "fetch_batch", new=broken):
            with pytest.raises(AuditStorageUnavailable):
                await AuditExporter().open(auditor)

    async def test_failure_mid_stream_signals_truncation(
        self, async_db_engine, auditor, make_event, seed_events
    ):
        base = datetime(2026, 1, 1, tzinfo=UTC)
        await seed_events(
            *[make_event("tenant-a", "READ", "VENDOR", base + timedelta(minutes=i)) for i in range(6)]
        )
        real_fetch = export_module.fetch_batch
        calls = {"count": 0}

        async def flaky(*args, **kwargs):
            calls["count"] += 1
            if calls["count"] > 1:
                raise OperationalError("SELECT", {}, ConnectionResetError("connection reset"))
            return await real_fetch(*args, **kwargs)

        with patch.object(export_module, "fetch_batch", new=flaky):
            stream = await AuditExporter(batch_size=2).open(auditor)
            lines = []
            with pytest.raises(AuditExportTruncated) as exc_info:
                async for line in stream:
                    lines.append(line)

        assert exc_info.value.rows_emitted == 2
        assert len(lines) == 3
        assert stream.completed is False


class TestExportRecording:
    async def test_completed_export_is_audited(
        self, async_db_session, audit_writer, auditor, scenario
    ):
        stream = await AuditExporter().open(auditor, AuditFilter(action="UPDATE"))
        await collect(stream)
        await audit_writer.flush()

        recorded = (
            await async_db_session.execute(select(AuditEvent).where(AuditEvent.action == "EXPORT"))
        ).scalar_one()
        assert recorded.tenant_id == "tenant-a"
        assert recorded.actor_user_id == "auditor-1"
        assert recorded.resource == "SYSTEM"
        assert recorded.event_metadata == {"filters": {"action": "UPDATE"}, "rowCount": 1}

    async def test_recording_can_be_disabled(
        self, async_db_session, audit_writer, auditor, scenario, monkeypatch
    ):
        monkeypatch.setattr(get_settings().audit, "record_exports", False)
        stream = await AuditExporter().open(auditor)
        await collect(stream)
        await audit_writer.flush()

        exports = (
            await async_db_session.execute(select(AuditEvent).where(AuditEvent.action == "EXPORT"))
        ).scalars().all()
        assert exports == []
