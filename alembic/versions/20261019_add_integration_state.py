"""add integration_state

Revision ID: 20261019_add_integration_state
Revises: 20261019_create_integration_outbox
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261019_add_integration_state"
down_revision = "20261019_create_integration_outbox"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "integration_state",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("integration_id", sa.String(), nullable=False),
        sa.Column("last_dispatch_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_reconcile_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("integration_id", name="uq_integration_state_integration_id"),
    )


def downgrade() -> None:
    op.drop_table("integration_state")
