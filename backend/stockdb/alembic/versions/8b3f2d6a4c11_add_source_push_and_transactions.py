"""Add outbound push settings and the source transaction log.

Revision ID: 8b3f2d6a4c11
Revises: 5e1a7c3d9b20
Create Date: 2026-10-17 15:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "8b3f2d6a4c11"
down_revision = "5e1a7c3d9b20"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("external_sources") as batch_op:
        batch_op.add_column(sa.Column("push_enabled", sa.Boolean(), nullable=False, server_default=sa.false()))
        batch_op.add_column(sa.Column("push_url", sa.String(length=512), nullable=True))
        batch_op.add_column(sa.Column("last_pushed_at", sa.DateTime(timezone=True), nullable=True))

    op.create_table(
        "sync_source_transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "source_id",
            sa.String(length=36),
            sa.ForeignKey("external_sources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "run_id",
            sa.String(length=36),
            sa.ForeignKey("sync_runs.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("transaction_type", sa.String(length=32), nullable=False),
        sa.Column(
            "direction",
            sa.Enum("inbound", "outbound", name="sync_transaction_direction", native_enum=False),
            nullable=False,
        ),
        sa.Column("entity_type", sa.String(length=32), nullable=True),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "failed", name="sync_transaction_status", native_enum=False),
            nullable=False,
        ),
        sa.Column("request_json", sa.JSON(), nullable=True),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("elapsed_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_source_transactions_source_id", "sync_source_transactions", ["source_id"])
    op.create_index("ix_sync_source_transactions_run_id", "sync_source_transactions", ["run_id"])
    op.create_index(
        "ix_sync_source_transactions_transaction_type",
        "sync_source_transactions",
        ["transaction_type"],
    )
    op.create_index("ix_sync_source_transactions_status", "sync_source_transactions", ["status"])
    op.create_index(
        "ix_sync_source_transactions_source_created",
        "sync_source_transactions",
        ["source_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("sync_source_transactions")
    with op.batch_alter_table("external_sources") as batch_op:
        batch_op.drop_column("last_pushed_at")
        batch_op.drop_column("push_url")
        batch_op.drop_column("push_enabled")
