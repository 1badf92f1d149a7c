from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
import pytest_asyncio

from vendorhub.platform.audit.models import AuditEvent

T1 = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)
T2 = T1 + timedelta(hours=1)
T3 = T1 + timedelta(hours=2)


def make_event(tenant_id: str, action: str, resource: str, timestamp: datetime, **kwargs):
    """Build an AuditEvent row with sensible defaults."""
    values = {
        "id": uuid4(),
        "tenant_id": tenant_id,
        "timestamp": timestamp,
        "actor_user_id": "user-1",
        "actor_email": "user@tenant-a.example",
        "action": action,
        "resource": resource,
        "details": f"{action} {resource}",
        "is_recognized": True,
    }
    values.update(kwargs)
    return AuditEvent(**values)


@pytest.fixture(name="make_event")
def make_event_fixture():
    return make_event


@pytest.fixture
def seed_events(async_db_session):
    """Persist events and return them."""

    async def _seed(*events: AuditEvent) -> list[AuditEvent]:
        async_db_session.add_all(events)
        await async_db_session.commit()
        return list(events)

    return _seed


@pytest_asyncio.fixture
async def scenario(seed_events):
    """Three vendor events for tenant A and one login for tenant B."""
    created = make_event("tenant-a", "CREATE", "VENDOR", T1, resource_id="v-1", details="Created Acme")
    updated = make_event(
        "tenant-a",
        "UPDATE",
        "VENDOR",
        T2,
        resource_id="v-1",
        details="Updated Acme",
        event_metadata={
            "method": "PUT",
            "changes": {
                "name": {"before": "Acme", "after": "Acme Corp"},
                "tags": {"before": ["a"], "after": ["a", "b"]},
            },
        },
    )
    deleted = make_event("tenant-a", "DELETE", "VENDOR", T3, resource_id="v-1", details="Deleted Acme")
    other_tenant = make_event(
        "tenant-b",
        "LOGIN",
        "AUTH",
        T1,
        actor_user_id="user-b",
        actor_email="user@tenant-b.example",
        details="User logged in successfully",
    )
    await seed_events(created, updated, deleted, other_tenant)
    return {
        "create": created,
        "update": updated,
        "delete": deleted,
        "tenant_b": other_tenant,
        "times": (T1, T2, T3),
    }
