"""SQLAlchemy database models for the shipment lifecycle and wallet ledger."""
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column
from sqlalchemy.types import TypeDecorator

JSONType = JSON().with_variant(JSONB(), "postgresql")
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")

PAISE = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShipmentStatus(str, Enum):
    """Canonical shipment lifecycle statuses."""

    DRAFT = "draft"
    CONFIRMED = "confirmed"
    PAYMENT_RECEIVED = "payment_received"
    PICKUP_SCHEDULED = "pickup_scheduled"
    OUT_FOR_PICKUP = "out_for_pickup"
    PICKED_UP = "picked_up"
    AT_WAREHOUSE = "at_warehouse"
    QC_IN_PROGRESS = "qc_in_progress"
    QC_PASSED = "qc_passed"
    QC_FAILED = "qc_failed"
    PENDING_PAYMENT = "pending_payment"
    DISPATCHED = "dispatched"
    IN_TRANSIT = "in_transit"
    CUSTOMS_CLEARANCE = "customs_clearance"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ShipmentType(str, Enum):
    MEDICINE = "medicine"
    DOCUMENT = "document"
    GIFT = "gift"


class LedgerEntryType(str, Enum):
    """Ledger entry types. Direction comes from the type, never the amount."""

    CREDIT = "credit"
    DEBIT = "debit"
    REFUND = "refund"
    HOLD = "hold"
    RELEASE = "release"
    ADJUSTMENT = "adjustment"


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    WAREHOUSE_OPERATOR = "warehouse_operator"
    CXBC_PARTNER = "cxbc_partner"


def _in_list(column: str, values: Any) -> str:
    quoted = ", ".join(f"'{v.value}'" for v in values)
    return f"{column} IN ({quoted})"


class Money(TypeDecorator):
    """
    Exact rupee amounts stored as integer paise.

    Values come back as Decimal quantized to two places. Binding a value
    with sub-paisa precision raises instead of rounding silently.
    """

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> int | None:
        if value is None:
            return None
        amount = Decimal(str(value)) if not isinstance(value, Decimal) else value
        paise = amount * 100
        if paise != paise.to_integral_value():
            raise ValueError(f"Amount {amount} has sub-paisa precision")
        return int(paise)

    def process_result_value(self, value: Any, dialect: Any) -> Decimal | None:
        if value is None:
            return None
        return (Decimal(int(value)) / 100).quantize(PAISE, rounding=ROUND_HALF_UP)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class ImmutableRecordError(Exception):
    """Raised when code attempts to modify an append-only record."""

    pass


class Manifest(Base):
    """Batch of shipments handed to one international carrier together."""

    __tablename__ = "manifests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    manifest_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    carrier: Mapped[str] = mapped_column(String(100), nullable=False)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    shipment_count: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (CheckConstraint("shipment_count > 0", name="manifest_not_empty"),)

    def __repr__(self) -> str:
        return f"<Manifest(number={self.manifest_number}, carrier={self.carrier})>"


class Shipment(Base):
    """
    Shipments table.

    `status` only changes through the state machine, which bumps `version`
    by exactly one per accepted transition. Money fields are fixed at
    booking time and never recomputed.
    """

    __tablename__ = "shipments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tracking_number: Mapped[str | None] = mapped_column(String(32), unique=True, nullable=True)
    booking_reference_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=ShipmentStatus.DRAFT.value, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    shipment_type: Mapped[str] = mapped_column(String(16), nullable=False)

    recipient_name: Mapped[str] = mapped_column(String(200), nullable=False)
    recipient_phone: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    origin_address: Mapped[str] = mapped_column(Text, nullable=False)
    destination_address: Mapped[str] = mapped_column(Text, nullable=False)
    destination_country: Mapped[str] = mapped_column(String(100), nullable=False)
    weight_kg: Mapped[float] = mapped_column(Float, nullable=False)

    declared_value: Mapped[Decimal] = mapped_column(Money, nullable=False)
    shipping_cost: Mapped[Decimal] = mapped_column(Money, nullable=False)
    gst_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    addons_total: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)

    domestic_awb: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    international_awb: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    international_carrier: Mapped[str | None] = mapped_column(String(100), nullable=True)
    manifest_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("manifests.id"), nullable=True
    )
    details: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("version >= 1", name="positive_version"),
        CheckConstraint(_in_list("status", ShipmentStatus), name="valid_shipment_status"),
        CheckConstraint(_in_list("shipment_type", ShipmentType), name="valid_shipment_type"),
        CheckConstraint("weight_kg > 0", name="positive_weight"),
        UniqueConstraint("owner_id", "booking_reference_id", name="uq_shipment_booking_reference"),
        Index("idx_shipments_status_updated", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation of Shipment."""
        return (
            f"<Shipment(id={self.id}, status={self.status}, "
            f"version={self.version}, owner={self.owner_id})>"
        )


class ShipmentLineItem(Base):
    """Type-specific contents of a shipment (medicine, document or gift rows)."""

    __tablename__ = "shipment_line_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shipment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_type: Mapped[str] = mapped_column(String(16), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_value: Mapped[Decimal] = mapped_column(Money, nullable=False)
    details: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)

    __table_args__ = (CheckConstraint("quantity > 0", name="positive_quantity"),)


class ShipmentAddon(Base):
    __tablename__ = "shipment_addons"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shipment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    label: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)


class ShipmentDocument(Base):
    __tablename__ = "shipment_documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    shipment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    document_type: Mapped[str] = mapped_column(String(50), nullable=False)
    bucket: Mapped[str] = mapped_column(String(100), nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class ShipmentTimeline(Base):
    """
    Status history for a shipment.

    One row per accepted transition, written in the same transaction as the
    version bump. Also carries system flags such as stuck-shipment alerts.
    """

    __tablename__ = "shipment_timeline"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    shipment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<ShipmentTimeline(shipment_id={self.shipment_id}, "
            f"{self.from_status}->{self.to_status}, v={self.version})>"
        )


class WalletAccount(Base):
    """
    Per-user lock anchor for ledger writes.

    Holds no balance. Writers lock this row before checking availability
    so concurrent deductions for one user are serialised.
    """

    __tablename__ = "wallet_accounts"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class LedgerEntry(Base):
    """
    Append-only wallet ledger.

    Rows are never updated or deleted; corrections are compensating entries.
    Balance and availability are derived by summing entries per type.
    """

    __tablename__ = "wallet_ledger"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reference_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)
    details: Mapped[Dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_ledger_amount"),
        CheckConstraint(_in_list("type", LedgerEntryType), name="valid_ledger_type"),
        UniqueConstraint("user_id", "idempotency_key", name="uq_ledger_idempotency"),
        Index("idx_ledger_user_reference", "user_id", "reference_id"),
    )

    def __repr__(self) -> str:
        """String representation of LedgerEntry."""
        return (
            f"<LedgerEntry(id={self.id}, user_id={self.user_id}, "
            f"type={self.type}, amount={self.amount})>"
        )


class WalletReceipt(Base):
    """Immutable tax-inclusive receipt snapshot for one top-up."""

    __tablename__ = "wallet_receipts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    receipt_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    ledger_entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallet_ledger.id"), unique=True, nullable=False
    )
    transaction_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    base_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    gst_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    issued_by: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "payment_method IN ('upi', 'card', 'netbanking')", name="valid_payment_method"
        ),
    )


class UserRole(Base):
    """Role assignments. `customer` is implied and never needs a row."""

    __tablename__ = "user_roles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        CheckConstraint(_in_list("role", Role), name="valid_role"),
        UniqueConstraint("user_id", "role", name="uq_user_role"),
    )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Every committed shipment transition writes one row here in the same
    transaction; the publisher drains it to subscribers.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_outbox_unpublished", "published", "created_at"),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )


APPEND_ONLY_MODELS = (LedgerEntry, WalletReceipt)


def _reject_mutation(mapper: Any, connection: Any, target: Any) -> None:
    raise ImmutableRecordError(f"{type(target).__name__} rows are append-only")


for _model in APPEND_ONLY_MODELS:
    event.listen(_model, "before_update", _reject_mutation)
    event.listen(_model, "before_delete", _reject_mutation)


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_mutation(orm_execute_state: Any) -> None:
    """Block bulk UPDATE/DELETE statements aimed at append-only tables."""
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and mapper.class_ in APPEND_ONLY_MODELS:
        raise ImmutableRecordError(f"{mapper.class_.__name__} rows are append-only")
