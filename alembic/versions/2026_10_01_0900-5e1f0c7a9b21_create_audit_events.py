"""create_audit_events

Revision ID: 5e1f0c7a9b21
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision = "5e1f0c7a9b21"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the append-only audit_events table and its tenant-leading indexes."""
    op.create_table(
        "audit_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_user_id", sa.String(length=255), nullable=True),
        sa.Column("actor_email", sa.String(length=320), nullable=True),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("resource", sa.String(length=50), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("is_recognized", sa.Boolean(), nullable=False),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_audit_events_tenant_timestamp",
        "audit_events",
        ["tenant_id", "timestamp", "id"],
    )
    op.create_index("ix_audit_events_tenant_action", "audit_events", ["tenant_id", "action"])
    op.create_index("ix_audit_events_tenant_resource", "audit_events", ["tenant_id", "resource"])
    op.create_index("ix_audit_events_tenant_actor", "audit_events", ["tenant_id", "actor_user_id"])


def downgrade() -> None:
    """Drop the audit_events table."""
    op.drop_index("ix_audit_events_tenant_actor", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_resource", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_action", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_timestamp", table_name="audit_events")
    op.drop_table("audit_events")
