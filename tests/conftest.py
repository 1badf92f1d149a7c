"""
Global pytest configuration and fixtures for the VendorHub audit trail tests.
"""

import asyncio
import os

# Configure the environment before any application module builds its settings.
# The module-level engine then points at an in-memory SQLite database.
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE__URL"] = "sqlite:///:memory:"
os.environ.setdefault("JWT__SECRET_KEY", "test-secret-key-for-audit-trail-tests")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "text")
os.environ.setdefault("OBSERVABILITY__LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker  # noqa: E402

from vendorhub.platform import db as db_module  # noqa: E402
from vendorhub.platform.audit.permissions import AUDIT_READ, AuditCaller  # noqa: E402
from vendorhub.platform.audit.writer import AuditWriter, set_audit_writer  # noqa: E402
from vendorhub.platform.auth.core import create_access_token  # noqa: E402

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"


@pytest_asyncio.fixture
async def async_db_engine():
    """Fresh in-memory database per test, wired into the application's session factory."""
    engine = db_module.create_async_database_engine("sqlite+aiosqlite:///:memory:")
    await db_module.create_all_tables_async(engine)
    db_module.configure_engine(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def async_db_session(async_db_engine):
    """Async database session."""
    SessionMaker = async_sessionmaker(async_db_engine, expire_on_commit=False)
    async with SessionMaker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()
            await asyncio.sleep(0)


@pytest_asyncio.fixture
async def audit_writer(async_db_engine):
    """Process-wide writer bound to the test database."""
    writer = AuditWriter(workers=1, queue_size=100)
    set_audit_writer(writer)
    await writer.start()
    try:
        yield writer
    finally:
        await writer.stop(drain=True)
        set_audit_writer(None)


@pytest.fixture
def auditor():
    """Caller holding the audit-read capability in tenant A."""
    return AuditCaller(
        tenant_id=TENANT_A,
        user_id="auditor-1",
        email="auditor@tenant-a.example",
        roles=("auditor",),
        capabilities=frozenset({AUDIT_READ, "view:reports"}),
    )


@pytest.fixture
def tenant_b_auditor():
    return AuditCaller(
        tenant_id=TENANT_B,
        user_id="auditor-2",
        email="auditor@tenant-b.example",
        roles=("auditor",),
        capabilities=frozenset({AUDIT_READ}),
    )


@pytest.fixture
def regular_user():
    """Caller without audit capabilities."""
    return AuditCaller(
        tenant_id=TENANT_A,
        user_id="user-1",
        email="user@tenant-a.example",
        roles=("regular",),
        capabilities=frozenset(),
    )


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auditor_headers():
    token = create_access_token(
        "auditor-1", tenant_id=TENANT_A, email="auditor@tenant-a.example", roles=["auditor"]
    )
    return bearer(token)


@pytest.fixture
def admin_headers():
    token = create_access_token(
        "admin-1", tenant_id=TENANT_A, email="admin@tenant-a.example", roles=["admin"]
    )
    return bearer(token)


@pytest.fixture
def regular_headers():
    token = create_access_token(
        "user-1", tenant_id=TENANT_A, email="user@tenant-a.example", roles=["regular"]
    )
    return bearer(token)
