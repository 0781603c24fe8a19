"""Create stock ledger and external sync tables.

Revision ID: 5e1a7c3d9b20
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "5e1a7c3d9b20"
down_revision = None
branch_labels = None
depends_on = None


LEDGER_ENTRY_TYPES = ("sale", "return", "adjustment", "restock", "sync")


def upgrade() -> None:
    op.create_table(
        "stock_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sku", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=128), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        sa.Column(
            "parent_id",
            sa.Integer(),
            sa.ForeignKey("stock_items.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("track_inventory", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("allow_backorder", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("current_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("low_stock_threshold", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("ledger_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_placeholder", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("sku", name="uq_stock_items_sku"),
        sa.CheckConstraint("ledger_sequence >= 0", name="ck_stock_items_ledger_sequence"),
    )
    op.create_index("ix_stock_items_id", "stock_items", ["id"])
    op.create_index("ix_stock_items_sku", "stock_items", ["sku"])
    op.create_index("ix_stock_items_parent_id", "stock_items", ["parent_id"])
    op.create_index("ix_stock_items_is_active", "stock_items", ["is_active"])
    op.create_index(
        "ix_stock_items_low_stock",
        "stock_items",
        ["track_inventory", "is_active", "current_quantity"],
    )

    op.create_table(
        "stock_ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "item_id",
            sa.Integer(),
            sa.ForeignKey("stock_items.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("delta_quantity", sa.Integer(), nullable=False),
        sa.Column("quantity_before", sa.Integer(), nullable=False),
        sa.Column("quantity_after", sa.Integer(), nullable=False),
        sa.Column(
            "entry_type",
            sa.Enum(*LEDGER_ENTRY_TYPES, name="stock_ledger_entry_type_enum", native_enum=False),
            nullable=False,
        ),
        sa.Column("reference_type", sa.String(length=64), nullable=True),
        sa.Column("reference_id", sa.String(length=64), nullable=True),
        sa.Column("actor_id", sa.String(length=64), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("item_id", "sequence", name="uq_stock_ledger_item_sequence"),
        sa.CheckConstraint(
            "quantity_after = quantity_before + delta_quantity",
            name="ck_stock_ledger_chain_arithmetic",
        ),
    )
    op.create_index("ix_stock_ledger_entries_id", "stock_ledger_entries", ["id"])
    op.create_index("ix_stock_ledger_entries_item_id", "stock_ledger_entries", ["item_id"])
    op.create_index("ix_stock_ledger_entries_entry_type", "stock_ledger_entries", ["entry_type"])
    op.create_index("ix_stock_ledger_entries_actor_id", "stock_ledger_entries", ["actor_id"])
    op.create_index("ix_stock_ledger_item_created", "stock_ledger_entries", ["item_id", "created_at"])
    op.create_index("ix_stock_ledger_reference", "stock_ledger_entries", ["reference_type", "reference_id"])

    op.create_table(
        "external_sources",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("source_key", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.String(length=128), nullable=False),
        sa.Column("source_type", sa.String(length=32), nullable=False),
        sa.Column("endpoint_url", sa.String(length=512), nullable=True),
        sa.Column(
            "auth_type",
            sa.Enum("none", "basic", "bearer", "api_key", name="source_auth_type", native_enum=False),
            nullable=False,
        ),
        sa.Column("credentials_encrypted", sa.Text(), nullable=True),
        sa.Column("webhook_secret_encrypted", sa.Text(), nullable=True),
        sa.Column("field_map", sa.JSON(), nullable=True),
        sa.Column("create_missing_items", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("entry_type", sa.String(length=16), nullable=False, server_default="sync"),
        sa.Column("max_concurrency", sa.Integer(), nullable=True),
        sa.Column("sync_interval_minutes", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("source_key", name="uq_external_sources_key"),
    )
    op.create_index("ix_external_sources_source_key", "external_sources", ["source_key"])
    op.create_index("ix_external_sources_source_type", "external_sources", ["source_type"])
    op.create_index("ix_external_sources_is_active", "external_sources", ["is_active"])
    op.create_index("ix_external_sources_last_success_at", "external_sources", ["last_success_at"])

    op.create_table(
        "source_item_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "source_id",
            sa.String(length=36),
            sa.ForeignKey("external_sources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "item_id",
            sa.Integer(),
            sa.ForeignKey("stock_items.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_sku", sa.String(length=64), nullable=False),
        sa.Column("external_name", sa.String(length=255), nullable=True),
        sa.Column("external_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("last_reported_quantity", sa.Integer(), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("source_id", "external_sku", name="uq_source_item_links_source_sku"),
    )
    op.create_index("ix_source_item_links_id", "source_item_links", ["id"])
    op.create_index("ix_source_item_links_source_id", "source_item_links", ["source_id"])
    op.create_index("ix_source_item_links_item", "source_item_links", ["item_id"])

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "source_id",
            sa.String(length=36),
            sa.ForeignKey("external_sources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "trigger",
            sa.Enum("manual", "scheduled", "upload", "webhook", name="sync_trigger", native_enum=False),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("pending", "processing", "completed", "failed", name="sync_run_status", native_enum=False),
            nullable=False,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_records", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("entries_written", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_json", sa.JSON(), nullable=True),
        sa.Column("failures_json", sa.JSON(), nullable=True),
        sa.Column("triggered_by", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_sync_runs_source_id", "sync_runs", ["source_id"])
    op.create_index("ix_sync_runs_status", "sync_runs", ["status"])
    op.create_index("ix_sync_runs_source_started", "sync_runs", ["source_id", "started_at"])

    op.create_table(
        "sync_inbound_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "source_id",
            sa.String(length=36),
            sa.ForeignKey("external_sources.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("payload_hash", sa.String(length=64), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column("signature_valid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result_json", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.UniqueConstraint("source_id", "idempotency_key", name="uq_sync_inbound_source_idempotency"),
    )
    op.create_index("ix_sync_inbound_events_source_id", "sync_inbound_events", ["source_id"])
    op.create_index("ix_sync_inbound_events_event_type", "sync_inbound_events", ["event_type"])
    op.create_index("ix_sync_inbound_events_payload_hash", "sync_inbound_events", ["payload_hash"])
    op.create_index("ix_sync_inbound_received_at", "sync_inbound_events", ["received_at"])


def downgrade() -> None:
    op.drop_table("sync_inbound_events")
    op.drop_table("sync_runs")
    op.drop_table("source_item_links")
    op.drop_table("external_sources")
    op.drop_table("stock_ledger_entries")
    op.drop_table("stock_items")
