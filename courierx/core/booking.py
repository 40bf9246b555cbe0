"""
Booking service.

Creates shipments as a saga (shipment row, line items, add-ons, uploaded
documents) with a compensating delete if any child insert fails, confirms
and cancels bookings through the state machine, runs admin actions, and
dispatches shipments to the international carrier together with their
manifest.
"""
import base64
import binascii
import secrets
import string
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Sequence, Tuple, Union

import structlog
from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courierx.config import get_settings
from courierx.core.errors import (
    Forbidden,
    InvalidTransition,
    LifecycleError,
    NotFound,
    UpstreamFailure,
    ValidationError,
)
from courierx.core.lifecycle import ADMIN_ACTION_TARGETS, Actor, AdminAction
from courierx.core.saga import Saga
from courierx.core.state_machine import ShipmentStateMachine, as_shipment_id
from courierx.database.connection import get_session_factory
from courierx.database.models import (
    PAISE,
    Manifest,
    Shipment,
    ShipmentAddon,
    ShipmentDocument,
    ShipmentLineItem,
    ShipmentStatus,
    ShipmentTimeline,
    utcnow,
)
from courierx.integrations.compliance import ComplianceLookup
from courierx.integrations.storage import StorageClient
from courierx.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PHONE_PATTERN = r"^\+?[1-9]\d{6,14}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
MAX_WEIGHT_KG = 30


# ---------------------------------------------------------------------------
# Booking payloads
# ---------------------------------------------------------------------------


class Recipient(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    email: Optional[str] = Field(None, pattern=EMAIL_PATTERN)


class Addon(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    label: str = Field(..., min_length=1, max_length=200)
    price: Decimal = Field(..., ge=0, decimal_places=2)


class DocumentUpload(BaseModel):
    document_type: str = Field(..., min_length=1, max_length=50, examples=["prescription"])
    filename: str = Field(..., min_length=1, max_length=200)
    content_type: str = Field(default="application/pdf")
    content_base64: str = Field(..., min_length=1)

    def decoded(self) -> bytes:
        try:
            return base64.b64decode(self.content_base64, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError(f"Document {self.filename} is not valid base64")


class MedicineItem(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    quantity: int = Field(..., gt=0)
    unit_value: Decimal = Field(..., gt=0, decimal_places=2)
    dosage_form: Optional[str] = Field(None, max_length=50, examples=["tablet"])
    manufacturer: Optional[str] = Field(None, max_length=200)


class DocumentItem(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    quantity: int = Field(default=1, gt=0)
    unit_value: Decimal = Field(default=Decimal("0.01"), gt=0, decimal_places=2)
    category: Optional[str] = Field(None, max_length=50, examples=["academic"])


class GiftItem(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    quantity: int = Field(..., gt=0)
    unit_value: Decimal = Field(..., gt=0, decimal_places=2)
    category: Optional[str] = Field(None, max_length=50)


class _BookingBase(BaseModel):
    booking_reference_id: str = Field(..., min_length=1, max_length=64)
    recipient: Recipient
    origin_address: str = Field(..., min_length=1, max_length=500)
    destination_address: str = Field(..., min_length=1, max_length=500)
    destination_country: str = Field(..., min_length=2, max_length=100)
    destination_country_code: str = Field(..., min_length=2, max_length=2, examples=["AE"])
    weight_kg: float = Field(..., gt=0, le=MAX_WEIGHT_KG)
    shipping_cost: Decimal = Field(..., ge=0, decimal_places=2)
    addons: List[Addon] = Field(default_factory=list)
    documents: List[DocumentUpload] = Field(default_factory=list)

    @field_validator("destination_country_code")
    @classmethod
    def upper_country_code(cls, v: str) -> str:
        return v.upper()


class MedicineBooking(_BookingBase):
    shipment_type: Literal["medicine"]
    items: List[MedicineItem] = Field(..., min_length=1)


class DocumentBooking(_BookingBase):
    shipment_type: Literal["document"]
    items: List[DocumentItem] = Field(..., min_length=1)


class GiftBooking(_BookingBase):
    shipment_type: Literal["gift"]
    items: List[GiftItem] = Field(..., min_length=1)


BookingRequest = Annotated[
    Union[MedicineBooking, DocumentBooking, GiftBooking],
    Field(discriminator="shipment_type"),
]
_booking_adapter: TypeAdapter[Any] = TypeAdapter(BookingRequest)


def parse_booking(data: Any) -> Union[MedicineBooking, DocumentBooking, GiftBooking]:
    if isinstance(data, (MedicineBooking, DocumentBooking, GiftBooking)):
        return data
    try:
        return _booking_adapter.validate_python(data)
    except PydanticValidationError as e:
        issues = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(issues or "Invalid booking payload")


# ---------------------------------------------------------------------------
# Results and serialisation
# ---------------------------------------------------------------------------


@dataclass
class BookingResult:
    success: bool
    shipment: Optional[Dict[str, Any]] = None
    error: Optional[LifecycleError] = None
    duplicate: bool = False

    def to_dict(self, detailed: bool = False) -> Dict[str, Any]:
        if self.success and self.shipment is not None:
            return {
                "success": True,
                "shipment_id": self.shipment["id"],
                "tracking_number": self.shipment["tracking_number"],
                "shipment": self.shipment,
            }
        if self.error is None:
            raise ValueError("A failed BookingResult must carry its error")
        return self.error.to_dict(detailed)


def shipment_to_dict(shipment: Shipment) -> Dict[str, Any]:
    return {
        "id": str(shipment.id),
        "tracking_number": shipment.tracking_number,
        "booking_reference_id": shipment.booking_reference_id,
        "owner_id": shipment.owner_id,
        "status": shipment.status,
        "version": shipment.version,
        "shipment_type": shipment.shipment_type,
        "recipient_name": shipment.recipient_name,
        "destination_country": shipment.destination_country,
        "weight_kg": shipment.weight_kg,
        "declared_value": str(shipment.declared_value),
        "shipping_cost": str(shipment.shipping_cost),
        "gst_amount": str(shipment.gst_amount),
        "addons_total": str(shipment.addons_total),
        "total_amount": str(shipment.total_amount),
        "domestic_awb": shipment.domestic_awb,
        "international_awb": shipment.international_awb,
        "international_carrier": shipment.international_carrier,
        "manifest_id": str(shipment.manifest_id) if shipment.manifest_id else None,
        "created_at": shipment.created_at.isoformat(),
        "updated_at": shipment.updated_at.isoformat(),
    }


def timeline_to_dict(row: ShipmentTimeline) -> Dict[str, Any]:
    return {
        "from_status": row.from_status,
        "to_status": row.to_status,
        "version": row.version,
        "source": row.source,
        "description": row.description,
        "created_at": row.created_at.isoformat(),
    }


def _random_suffix(length: int) -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_international_awb() -> str:
    return f"INTL-{utcnow():%y%m%d}-{uuid.uuid4().hex[:10].upper()}"


def generate_manifest_number() -> str:
    return f"MNF{utcnow():%y%m%d}{_random_suffix(6)}"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class BookingService:
    """Orchestrates shipment creation, confirmation, admin actions and dispatch."""

    def __init__(
        self,
        state_machine: ShipmentStateMachine,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        compliance: Optional[ComplianceLookup] = None,
        storage: Optional[StorageClient] = None,
    ):
        settings = get_settings()
        self.state_machine = state_machine
        self._session_factory = session_factory
        self.compliance = compliance or ComplianceLookup()
        self._storage = storage
        self.gst_rate = settings.gst_rate
        self.storage_bucket = settings.storage_bucket
        self.default_carrier = settings.international_carrier_name

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    @property
    def storage(self) -> StorageClient:
        if self._storage is None:
            self._storage = StorageClient()
        return self._storage

    # -- creation ---------------------------------------------------------

    async def create_booking(self, booking_data: Any, user_id: str) -> BookingResult:
        """
        Create a draft shipment with its line items, add-ons and documents.

        No money moves here; the wallet is debited on confirmation. A repeated
        booking_reference_id for the same owner returns the original shipment.
        """
        shipment_type = getattr(booking_data, "shipment_type", None) or (
            booking_data.get("shipment_type") if isinstance(booking_data, dict) else None
        )
        try:
            booking = parse_booking(booking_data)
            existing = await self._find_by_reference(user_id, booking.booking_reference_id)
            if existing is not None:
                logger.info(
                    "booking_duplicate_reference",
                    user_id=user_id,
                    booking_reference_id=booking.booking_reference_id,
                    shipment_id=existing["id"],
                )
                return BookingResult(success=True, shipment=existing, duplicate=True)

            await self._check_compliance(booking)
            shipment = await self._run_booking_saga(booking, user_id)
        except LifecycleError as e:
            metrics.record_booking(str(shipment_type or "unknown"), "failed")
            logger.info(
                "booking_failed",
                user_id=user_id,
                error_code=e.error_code,
                error=e.message,
            )
            return BookingResult(success=False, error=e)

        metrics.record_booking(booking.shipment_type, "created")
        logger.info(
            "booking_created",
            user_id=user_id,
            shipment_id=shipment["id"],
            shipment_type=booking.shipment_type,
            total_amount=shipment["total_amount"],
        )
        return BookingResult(success=True, shipment=shipment)

    async def _find_by_reference(self, user_id: str, reference: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as db:
            row = (
                await db.execute(
                    select(Shipment).where(
                        Shipment.owner_id == user_id,
                        Shipment.booking_reference_id == reference,
                    )
                )
            ).scalar_one_or_none()
            return shipment_to_dict(row) if row is not None else None

    async def _check_compliance(self, booking: Any) -> None:
        regulation = await self.compliance.get_regulation(
            booking.destination_country_code, booking.shipment_type
        )
        if not regulation.allowed:
            raise ValidationError(
                f"{booking.shipment_type} shipments to {booking.destination_country} are not allowed"
            )
        declared = self._declared_value(booking)
        if regulation.max_declared_value is not None and declared > regulation.max_declared_value:
            raise ValidationError(
                f"Declared value {declared} exceeds the limit of "
                f"{regulation.max_declared_value} for {booking.destination_country}"
            )
        if regulation.requires_prescription and not any(
            doc.document_type == "prescription" for doc in booking.documents
        ):
            raise ValidationError("A prescription document is required for this destination")

    @staticmethod
    def _declared_value(booking: Any) -> Decimal:
        return sum(
            (item.unit_value * item.quantity for item in booking.items), Decimal("0")
        ).quantize(PAISE)

    def _price(self, booking: Any) -> Dict[str, Decimal]:
        """Money fields, computed once at booking time."""
        shipping_cost = booking.shipping_cost.quantize(PAISE)
        addons_total = sum((addon.price for addon in booking.addons), Decimal("0")).quantize(PAISE)
        gst_amount = ((shipping_cost + addons_total) * self.gst_rate).quantize(
            PAISE, rounding=ROUND_HALF_UP
        )
        return {
            "declared_value": self._declared_value(booking),
            "shipping_cost": shipping_cost,
            "addons_total": addons_total,
            "gst_amount": gst_amount,
            "total_amount": shipping_cost + addons_total + gst_amount,
        }

    async def _run_booking_saga(self, booking: Any, user_id: str) -> Dict[str, Any]:
        uploads = [(doc, doc.decoded()) for doc in booking.documents]
        saga = Saga(name="create_booking")

        async def create_shipment(ctx: Dict[str, Any]) -> uuid.UUID:
            shipment_id = uuid.uuid4()
            try:
                async with self.session_factory() as db:
                    async with db.begin():
                        db.add(
                            Shipment(
                                id=shipment_id,
                                booking_reference_id=booking.booking_reference_id,
                                owner_id=user_id,
                                status=ShipmentStatus.DRAFT.value,
                                version=1,
                                shipment_type=booking.shipment_type,
                                recipient_name=booking.recipient.name,
                                recipient_phone=booking.recipient.phone,
                                recipient_email=booking.recipient.email,
                                origin_address=booking.origin_address,
                                destination_address=booking.destination_address,
                                destination_country=booking.destination_country,
                                weight_kg=booking.weight_kg,
                                details={"destination_country_code": booking.destination_country_code},
                                **self._price(booking),
                            )
                        )
                        await db.flush()
                        db.add(
                            ShipmentTimeline(
                                shipment_id=shipment_id,
                                from_status=None,
                                to_status=ShipmentStatus.DRAFT.value,
                                version=1,
                                source="customer",
                                actor_id=user_id,
                                description="Booking created",
                            )
                        )
            except IntegrityError as e:
                raise ValidationError(
                    f"Booking reference {booking.booking_reference_id} already exists"
                ) from e
            return shipment_id

        async def insert_line_items(ctx: Dict[str, Any]) -> int:
            shipment_id = ctx["create_shipment_result"]
            async with self.session_factory() as db:
                async with db.begin():
                    for item in booking.items:
                        extra = item.model_dump(exclude={"name", "quantity", "unit_value"}, exclude_none=True)
                        db.add(
                            ShipmentLineItem(
                                shipment_id=shipment_id,
                                item_type=booking.shipment_type,
                                name=item.name,
                                quantity=item.quantity,
                                unit_value=item.unit_value,
                                details=extra or None,
                            )
                        )
            return len(booking.items)

        async def insert_addons(ctx: Dict[str, Any]) -> int:
            shipment_id = ctx["create_shipment_result"]
            if not booking.addons:
                return 0
            async with self.session_factory() as db:
                async with db.begin():
                    for addon in booking.addons:
                        db.add(
                            ShipmentAddon(
                                shipment_id=shipment_id,
                                code=addon.code,
                                label=addon.label,
                                price=addon.price,
                            )
                        )
            return len(booking.addons)

        async def upload_documents(ctx: Dict[str, Any]) -> int:
            shipment_id = ctx["create_shipment_result"]
            stored: List[Tuple[str, Dict[str, str]]] = []
            for doc, content in uploads:
                path = f"{user_id}/{shipment_id}/{doc.document_type}-{uuid.uuid4().hex[:8]}-{doc.filename}"
                result = await self.storage.upload(
                    self.storage_bucket, path, content, doc.content_type
                )
                stored.append((doc.document_type, result))
            if not stored:
                return 0
            async with self.session_factory() as db:
                async with db.begin():
                    for document_type, result in stored:
                        db.add(
                            ShipmentDocument(
                                shipment_id=shipment_id,
                                document_type=document_type,
                                bucket=self.storage_bucket,
                                path=result["path"],
                                url=result["url"],
                            )
                        )
            return len(stored)

        async def delete_shipment(ctx: Dict[str, Any], shipment_id: uuid.UUID) -> None:
            await self._delete_booking(shipment_id)

        saga.add_step("create_shipment", create_shipment, delete_shipment)
        saga.add_step("insert_line_items", insert_line_items)
        saga.add_step("insert_addons", insert_addons)
        saga.add_step("upload_documents", upload_documents)

        try:
            context = await saga.execute()
        except SQLAlchemyError as e:
            # The saga has already compensated; surface a retryable booking failure.
            logger.error(
                "booking_database_error",
                user_id=user_id,
                booking_reference_id=booking.booking_reference_id,
                error=str(e),
            )
            raise UpstreamFailure(
                "database", str(e), booking_reference_id=booking.booking_reference_id
            ) from e
        async with self.session_factory() as db:
            shipment = await db.get(Shipment, context["create_shipment_result"])
            return shipment_to_dict(shipment)

    async def _delete_booking(self, shipment_id: uuid.UUID) -> None:
        """Compensating delete: children first, then the draft shipment."""
        async with self.session_factory() as db:
            async with db.begin():
                for model in (ShipmentDocument, ShipmentAddon, ShipmentLineItem, ShipmentTimeline):
                    await db.execute(delete(model).where(model.shipment_id == shipment_id))
                await db.execute(
                    delete(Shipment).where(
                        Shipment.id == shipment_id,
                        Shipment.status == ShipmentStatus.DRAFT.value,
                    )
                )
        logger.info("booking_compensated", shipment_id=str(shipment_id))

    # -- reads ------------------------------------------------------------

    async def get_shipment(self, shipment_id: Any, actor: Actor) -> Dict[str, Any]:
        """Owners and staff see a shipment; anyone else gets NotFound."""
        shipment_uuid = as_shipment_id(shipment_id)
        async with self.session_factory() as db:
            shipment = await db.get(Shipment, shipment_uuid)
            if shipment is None or not (actor.is_staff or shipment.owner_id == actor.user_id):
                raise NotFound(f"Shipment {shipment_id} not found", user_message="Shipment not found.")
            timeline = (
                await db.execute(
                    select(ShipmentTimeline)
                    .where(ShipmentTimeline.shipment_id == shipment_uuid)
                    .order_by(ShipmentTimeline.id)
                )
            ).scalars().all()
            body = shipment_to_dict(shipment)
        body["timeline"] = [timeline_to_dict(row) for row in timeline]
        return body

    # -- transitions ------------------------------------------------------

    async def confirm_booking(self, shipment_id: Any, expected_version: int, actor: Actor) -> Dict[str, Any]:
        shipment = await self.state_machine.update_shipment_status(
            shipment_id, ShipmentStatus.CONFIRMED, expected_version, actor
        )
        metrics.record_booking(shipment.shipment_type, "confirmed")
        return shipment_to_dict(shipment)

    async def cancel_booking(
        self,
        shipment_id: Any,
        expected_version: int,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        shipment = await self.state_machine.update_shipment_status(
            shipment_id,
            ShipmentStatus.CANCELLED,
            expected_version,
            actor,
            metadata={"reason": reason} if reason else None,
        )
        metrics.record_booking(shipment.shipment_type, "cancelled")
        return shipment_to_dict(shipment)

    async def perform_admin_action(
        self,
        shipment_id: Any,
        action: AdminAction,
        expected_version: int,
        actor: Actor,
        additional_charge: Optional[Decimal] = None,
        domestic_awb: Optional[str] = None,
    ) -> Dict[str, Any]:
        fields = None
        if action == AdminAction.SCHEDULE_PICKUP and domestic_awb:
            fields = {"domestic_awb": domestic_awb}
        shipment = await self.state_machine.update_shipment_status(
            shipment_id,
            ADMIN_ACTION_TARGETS[action],
            expected_version,
            actor,
            additional_charge=additional_charge,
            metadata={"action": action.value},
            fields=fields,
        )
        return shipment_to_dict(shipment)

    # -- dispatch ---------------------------------------------------------

    async def dispatch_international(
        self,
        shipment_id: Any,
        expected_version: int,
        actor: Actor,
        carrier: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Hand a QC-passed shipment to the international carrier.

        The status change, AWB, carrier and a single-member manifest commit
        in one transaction.
        """
        manifest = await self.dispatch_batch([(shipment_id, expected_version)], actor, carrier)
        return manifest["shipments"][0]

    async def dispatch_batch(
        self,
        items: Sequence[Tuple[Any, int]],
        actor: Actor,
        carrier: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Dispatch several shipments under one manifest.

        Every member transitions or none do: any NotFound, VersionConflict or
        InvalidTransition rolls back the whole batch including the manifest.
        """
        if not actor.is_admin:
            raise Forbidden()
        if not items:
            raise ValidationError("A manifest needs at least one shipment")
        ids = [as_shipment_id(shipment_id) for shipment_id, _ in items]
        if len(set(ids)) != len(ids):
            raise ValidationError("A shipment can only appear once in a manifest")

        carrier = carrier or self.default_carrier
        now = utcnow()
        dispatched: List[Shipment] = []
        previous: List[str] = []

        async with self.session_factory() as db:
            async with db.begin():
                manifest = Manifest(
                    manifest_number=generate_manifest_number(),
                    carrier=carrier,
                    created_by=actor.user_id,
                    shipment_count=len(ids),
                    created_at=now,
                )
                db.add(manifest)
                await db.flush()

                for shipment_uuid, (_, expected_version) in zip(ids, items):
                    current = await db.get(Shipment, shipment_uuid)
                    if (
                        current is not None
                        and current.version == expected_version
                        and current.status != ShipmentStatus.QC_PASSED.value
                    ):
                        raise InvalidTransition(current.status, ShipmentStatus.DISPATCHED.value)
                    shipment, from_status = await self.state_machine.apply_transition(
                        db,
                        shipment_uuid,
                        ShipmentStatus.DISPATCHED,
                        expected_version,
                        actor,
                        metadata={"manifest_number": manifest.manifest_number, "carrier": carrier},
                        fields={
                            "international_awb": generate_international_awb(),
                            "international_carrier": carrier,
                            "manifest_id": manifest.id,
                            "dispatched_at": now,
                        },
                    )
                    dispatched.append(shipment)
                    previous.append(from_status)

        metrics.record_manifest(carrier)
        for shipment, from_status in zip(dispatched, previous):
            metrics.record_transition(from_status, shipment.status, actor.source, 0.0)
            self.state_machine.notifications.hand_off(str(shipment.id), shipment.status)

        logger.info(
            "manifest_dispatched",
            manifest_number=manifest.manifest_number,
            carrier=carrier,
            shipment_count=len(dispatched),
            actor=actor.user_id,
        )
        return {
            "manifest_id": str(manifest.id),
            "manifest_number": manifest.manifest_number,
            "carrier": carrier,
            "shipments": [shipment_to_dict(s) for s in dispatched],
        }
