"""
Main FastAPI application entry point for the VendorHub audit trail service.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vendorhub.platform.audit.exceptions import AuditError, AuditStorageUnavailable
from vendorhub.platform.audit.middleware import AuditRequestMiddleware
from vendorhub.platform.audit.router import router as audit_router
from vendorhub.platform.audit.writer import get_audit_writer
from vendorhub.platform.db import check_database_health, create_all_tables_async
from vendorhub.platform.logging import setup_logging
from vendorhub.platform.settings import settings

logger = structlog.get_logger(__name__)

RETRY_AFTER_SECONDS = "5"


def audit_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render audit errors in the ``{success, error, code}`` envelope."""
    if not isinstance(exc, AuditError):
        raise exc
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "audit.request_failed",
        path=request.url.path,
        code=exc.error_code,
        status_code=exc.status_code,
        error=exc.message,
    )
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if isinstance(exc, AuditStorageUnavailable) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifecycle events."""
    setup_logging()
    logger.info("service.starting", app=settings.app_name, environment=settings.environment.value)

    if settings.is_development or settings.is_testing:
        await create_all_tables_async()
        logger.info("database.tables.ensured")

    writer = get_audit_writer()
    await writer.start()

    yield

    await writer.stop(drain=True)
    logger.info("service.stopped", **writer.stats)


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="VendorHub Audit Trail",
        description="Tenant-scoped audit trail: query, statistics, export and detail",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url=None,
    )

    if settings.audit.request_logging_enabled:
        app.add_middleware(AuditRequestMiddleware)

    if settings.cors.enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors.origins,
            allow_credentials=settings.cors.credentials,
            allow_methods=settings.cors.methods,
            allow_headers=settings.cors.headers,
            expose_headers=settings.cors.expose_headers,
        )

    app.add_exception_handler(AuditError, audit_error_handler)
    app.include_router(audit_router, prefix=settings.api_prefix)

    @app.get("/health")
    @app.get(f"{settings.api_prefix}/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint for monitoring."""
        database_ok = await check_database_health()
        return {
            "status": "healthy" if database_ok else "degraded",
            "version": settings.app_version,
            "environment": settings.environment.value,
            "database": database_ok,
        }

    return app


app = create_application()
