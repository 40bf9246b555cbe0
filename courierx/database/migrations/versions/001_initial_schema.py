"""Initial shipment lifecycle schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SHIPMENT_STATUSES = (
    "draft", "confirmed", "payment_received", "pickup_scheduled", "out_for_pickup",
    "picked_up", "at_warehouse", "qc_in_progress", "qc_passed", "qc_failed",
    "pending_payment", "dispatched", "in_transit", "customs_clearance",
    "out_for_delivery", "delivered", "cancelled",
)
LEDGER_TYPES = ("credit", "debit", "refund", "hold", "release", "adjustment")
ROLES = ("customer", "admin", "warehouse_operator", "cxbc_partner")


def _in(column: str, values: Sequence[str]) -> str:
    return f"{column} IN ({', '.join(repr(v) for v in values)})"


def upgrade() -> None:
    """Upgrade database schema."""
    op.create_table(
        "manifests",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("manifest_number", sa.String(length=32), nullable=False),
        sa.Column("carrier", sa.String(length=100), nullable=False),
        sa.Column("created_by", sa.String(length=64), nullable=False),
        sa.Column("shipment_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("shipment_count > 0", name="manifest_not_empty"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("manifest_number"),
    )

    # Money columns hold integer paise.
    op.create_table(
        "shipments",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tracking_number", sa.String(length=32), nullable=True),
        sa.Column("booking_reference_id", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("shipment_type", sa.String(length=16), nullable=False),
        sa.Column("recipient_name", sa.String(length=200), nullable=False),
        sa.Column("recipient_phone", sa.String(length=20), nullable=False),
        sa.Column("recipient_email", sa.String(length=255), nullable=True),
        sa.Column("origin_address", sa.Text(), nullable=False),
        sa.Column("destination_address", sa.Text(), nullable=False),
        sa.Column("destination_country", sa.String(length=100), nullable=False),
        sa.Column("weight_kg", sa.Float(), nullable=False),
        sa.Column("declared_value", sa.BigInteger(), nullable=False),
        sa.Column("shipping_cost", sa.BigInteger(), nullable=False),
        sa.Column("gst_amount", sa.BigInteger(), nullable=False),
        sa.Column("addons_total", sa.BigInteger(), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("domestic_awb", sa.String(length=64), nullable=True),
        sa.Column("international_awb", sa.String(length=64), nullable=True),
        sa.Column("international_carrier", sa.String(length=100), nullable=True),
        sa.Column("manifest_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("version >= 1", name="positive_version"),
        sa.CheckConstraint(_in("status", SHIPMENT_STATUSES), name="valid_shipment_status"),
        sa.CheckConstraint(
            _in("shipment_type", ("medicine", "document", "gift")), name="valid_shipment_type"
        ),
        sa.CheckConstraint("weight_kg > 0", name="positive_weight"),
        sa.ForeignKeyConstraint(["manifest_id"], ["manifests.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tracking_number"),
        sa.UniqueConstraint("international_awb"),
        sa.UniqueConstraint("owner_id", "booking_reference_id", name="uq_shipment_booking_reference"),
    )
    op.create_index(op.f("ix_shipments_owner_id"), "shipments", ["owner_id"], unique=False)
    op.create_index(op.f("ix_shipments_status"), "shipments", ["status"], unique=False)
    op.create_index(op.f("ix_shipments_domestic_awb"), "shipments", ["domestic_awb"], unique=False)
    op.create_index("idx_shipments_status_updated", "shipments", ["status", "updated_at"], unique=False)

    for table, columns in (
        (
            "shipment_line_items",
            [
                sa.Column("item_type", sa.String(length=16), nullable=False),
                sa.Column("name", sa.String(length=200), nullable=False),
                sa.Column("quantity", sa.Integer(), nullable=False),
                sa.Column("unit_value", sa.BigInteger(), nullable=False),
                sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
                sa.CheckConstraint("quantity > 0", name="positive_quantity"),
            ],
        ),
        (
            "shipment_addons",
            [
                sa.Column("code", sa.String(length=50), nullable=False),
                sa.Column("label", sa.String(length=200), nullable=False),
                sa.Column("price", sa.BigInteger(), nullable=False),
            ],
        ),
        (
            "shipment_documents",
            [
                sa.Column("document_type", sa.String(length=50), nullable=False),
                sa.Column("bucket", sa.String(length=100), nullable=False),
                sa.Column("path", sa.Text(), nullable=False),
                sa.Column("url", sa.Text(), nullable=False),
                sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            ],
        ),
    ):
        op.create_table(
            table,
            sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("shipment_id", postgresql.UUID(as_uuid=True), nullable=False),
            *columns,
            sa.ForeignKeyConstraint(["shipment_id"], ["shipments.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(op.f(f"ix_{table}_shipment_id"), table, ["shipment_id"], unique=False)

    op.create_table(
        "shipment_timeline",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("shipment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("from_status", sa.String(length=32), nullable=True),
        sa.Column("to_status", sa.String(length=32), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=False),
        sa.Column("actor_id", sa.String(length=64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["shipment_id"], ["shipments.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_shipment_timeline_shipment_id"), "shipment_timeline", ["shipment_id"], unique=False
    )

    op.create_table(
        "wallet_accounts",
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "wallet_ledger",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("reference_id", sa.String(length=64), nullable=True),
        sa.Column("reference_type", sa.String(length=32), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="positive_ledger_amount"),
        sa.CheckConstraint(_in("type", LEDGER_TYPES), name="valid_ledger_type"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_ledger_idempotency"),
    )
    op.create_index(op.f("ix_wallet_ledger_user_id"), "wallet_ledger", ["user_id"], unique=False)
    op.create_index(op.f("ix_wallet_ledger_reference_id"), "wallet_ledger", ["reference_id"], unique=False)
    op.create_index(op.f("ix_wallet_ledger_created_at"), "wallet_ledger", ["created_at"], unique=False)
    op.create_index("idx_ledger_user_reference", "wallet_ledger", ["user_id", "reference_id"], unique=False)

    op.create_table(
        "wallet_receipts",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("receipt_number", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("ledger_entry_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("transaction_id", sa.String(length=128), nullable=False),
        sa.Column("base_amount", sa.BigInteger(), nullable=False),
        sa.Column("gst_amount", sa.BigInteger(), nullable=False),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("payment_method", sa.String(length=20), nullable=False),
        sa.Column("issued_by", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "payment_method IN ('upi', 'card', 'netbanking')", name="valid_payment_method"
        ),
        sa.ForeignKeyConstraint(["ledger_entry_id"], ["wallet_ledger.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("receipt_number"),
        sa.UniqueConstraint("ledger_entry_id"),
        sa.UniqueConstraint("transaction_id", name="uq_receipt_transaction"),
    )
    op.create_index(op.f("ix_wallet_receipts_user_id"), "wallet_receipts", ["user_id"], unique=False)

    op.create_table(
        "user_roles",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(_in("role", ROLES), name="valid_role"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "role", name="uq_user_role"),
    )
    op.create_index(op.f("ix_user_roles_user_id"), "user_roles", ["user_id"], unique=False)

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("aggregate_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("published", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_outbox_events_published"), "outbox_events", ["published"], unique=False)
    op.create_index("idx_outbox_unpublished", "outbox_events", ["published", "created_at"], unique=False)
    op.create_index("idx_outbox_aggregate", "outbox_events", ["aggregate_id", "aggregate_type"], unique=False)

    # Ledger and receipts are append-only at the database level too.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_append_only_mutation() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% rows are append-only', TG_TABLE_NAME;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    for table in ("wallet_ledger", "wallet_receipts"):
        op.execute(
            f"""
            CREATE TRIGGER {table}_append_only
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW EXECUTE FUNCTION reject_append_only_mutation();
            """
        )


def downgrade() -> None:
    """Downgrade database schema."""
    for table in ("wallet_receipts", "wallet_ledger"):
        op.execute(f"DROP TRIGGER IF EXISTS {table}_append_only ON {table}")
    op.execute("DROP FUNCTION IF EXISTS reject_append_only_mutation()")

    op.drop_index("idx_outbox_aggregate", table_name="outbox_events")
    op.drop_index("idx_outbox_unpublished", table_name="outbox_events")
    op.drop_index(op.f("ix_outbox_events_published"), table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index(op.f("ix_user_roles_user_id"), table_name="user_roles")
    op.drop_table("user_roles")
    op.drop_index(op.f("ix_wallet_receipts_user_id"), table_name="wallet_receipts")
    op.drop_table("wallet_receipts")
    op.drop_index("idx_ledger_user_reference", table_name="wallet_ledger")
    op.drop_index(op.f("ix_wallet_ledger_created_at"), table_name="wallet_ledger")
    op.drop_index(op.f("ix_wallet_ledger_reference_id"), table_name="wallet_ledger")
    op.drop_index(op.f("ix_wallet_ledger_user_id"), table_name="wallet_ledger")
    op.drop_table("wallet_ledger")
    op.drop_table("wallet_accounts")
    op.drop_index(op.f("ix_shipment_timeline_shipment_id"), table_name="shipment_timeline")
    op.drop_table("shipment_timeline")
    for table in ("shipment_documents", "shipment_addons", "shipment_line_items"):
        op.drop_index(op.f(f"ix_{table}_shipment_id"), table_name=table)
        op.drop_table(table)
    op.drop_index("idx_shipments_status_updated", table_name="shipments")
    op.drop_index(op.f("ix_shipments_domestic_awb"), table_name="shipments")
    op.drop_index(op.f("ix_shipments_status"), table_name="shipments")
    op.drop_index(op.f("ix_shipments_owner_id"), table_name="shipments")
    op.drop_table("shipments")
    op.drop_table("manifests")
