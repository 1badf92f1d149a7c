#!/usr/bin/env python
"""
CLI management commands for the VendorHub audit trail service.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

import click
import uvicorn

from vendorhub.platform.audit.exceptions import AuditError, AuditExportTruncated
from vendorhub.platform.audit.export import AuditExporter, filename_for_export
from vendorhub.platform.audit.models import AuditFilter
from vendorhub.platform.audit.permissions import AuditCaller
from vendorhub.platform.audit.retention import AuditRetentionPolicy, AuditRetentionService
from vendorhub.platform.audit.writer import AuditWriter, get_audit_writer
from vendorhub.platform.db import create_all_tables_async, get_async_engine
from vendorhub.platform.settings import settings


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    create_tables: Callable[[], Awaitable[None]]
    dispose_engine: Callable[[], Awaitable[None]]
    exporter_factory: Callable[[], AuditExporter]
    retention_factory: Callable[[int | None], AuditRetentionService]
    writer_factory: Callable[[], AuditWriter]
    path_factory: Callable[[str], Path]
    run_server: Callable[..., None]


def _retention_service(days: int | None) -> AuditRetentionService:
    policy = AuditRetentionPolicy.from_settings()
    if days is not None:
        policy = AuditRetentionPolicy(retention_days=days, batch_size=policy.batch_size)
    return AuditRetentionService(policy)


async def _dispose_engine() -> None:
    await get_async_engine().dispose()


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        create_tables=create_all_tables_async,
        dispose_engine=_dispose_engine,
        exporter_factory=AuditExporter,
        retention_factory=_retention_service,
        writer_factory=get_audit_writer,
        path_factory=Path,
        run_server=uvicorn.run,
    )


@click.group()
def cli() -> None:
    """VendorHub audit trail CLI."""
    pass


@cli.command()
def init_db() -> None:
    """Create the audit tables if they do not exist."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")

    async def _init() -> None:
        try:
            await deps.create_tables()
        finally:
            await deps.dispose_engine()

    asyncio.run(_init())
    click.echo("Database initialized successfully!")


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to HOST)")
@click.option("--port", type=int, default=None, help="Bind port (defaults to PORT)")
def serve(host: str | None, port: int | None) -> None:
    """Run the audit API under uvicorn."""
    deps = _get_cli_dependencies()
    deps.run_server(
        "vendorhub.platform.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=settings.debug,
        log_level=settings.observability.log_level.value.lower(),
    )


@cli.command()
@click.option("--tenant", required=True, help="Tenant whose audit trail is exported")
@click.option("--output", default=None, help="Output file (default: audit_logs_<date>.csv)")
@click.option("--action", default=None, help="Filter by action")
@click.option("--resource", default=None, help="Filter by resource")
@click.option("--user-id", default=None, help="Filter by actor user ID")
@click.option("--start-date", default=None, help="Inclusive lower bound (ISO date/datetime)")
@click.option("--end-date", default=None, help="Inclusive upper bound (ISO date/datetime)")
@click.option("--search", default=None, help="Case-insensitive text search")
def export_audit_logs(
    tenant: str,
    output: str | None,
    action: str | None,
    resource: str | None,
    user_id: str | None,
    start_date: str | None,
    end_date: str | None,
    search: str | None,
) -> None:
    """Export a tenant's audit trail to CSV."""
    deps = _get_cli_dependencies()
    path = deps.path_factory(output or filename_for_export())

    async def _export() -> int:
        filters = AuditFilter.from_query_params(
            action=action,
            resource=resource,
            user_id=user_id,
            start_date=start_date,
            end_date=end_date,
            search=search,
        )
        writer = deps.writer_factory()
        try:
            stream = await deps.exporter_factory().open(AuditCaller.system(tenant), filters)
            with path.open("w", newline="", encoding="utf-8") as file_handle:
                async for line in stream:
                    file_handle.write(line)
            return stream.rows_emitted
        finally:
            await writer.stop(drain=True)
            await deps.dispose_engine()

    try:
        rows = asyncio.run(_export())
    except AuditExportTruncated as e:
        path.unlink(missing_ok=True)
        raise click.ClickException(f"{e.message}; partial output removed")
    except AuditError as e:
        raise click.ClickException(e.message)

    click.echo(f"Exported {rows} audit log entries to {path}")


@cli.command()
@click.option("--dry-run", is_flag=True, help="Only count what would be deleted")
@click.option("--tenant", default=None, help="Limit the purge to one tenant")
@click.option("--days", type=int, default=None, help="Override AUDIT__RETENTION_DAYS")
def purge_audit_logs(dry_run: bool, tenant: str | None, days: int | None) -> None:
    """Delete audit events older than the retention window."""
    deps = _get_cli_dependencies()
    service = deps.retention_factory(days)
    if service.policy.retention_days is None:
        click.echo("Retention is not configured (AUDIT__RETENTION_DAYS); nothing to purge.")
        return

    async def _purge() -> dict:
        try:
            return await service.purge_expired(dry_run=dry_run, tenant_id=tenant)
        finally:
            await deps.dispose_engine()

    results = asyncio.run(_purge())
    if dry_run:
        click.echo(f"Would delete {results['matched']} audit events older than {results['cutoff']}")
    else:
        click.echo(f"Deleted {results['deleted']} audit events older than {results['cutoff']}")


if __name__ == "__main__":
    cli()
