"""
Shipment state machine with optimistic concurrency.

Every status change goes through `update_shipment_status`:
1. Load shipment (NotFound)
2. Compare version to expected_version (VersionConflict)
3. Check the edge exists in the graph (InvalidTransition)
4. Check the actor may trigger the edge (Forbidden)
5. Apply edge side effects (ledger debit/hold/release/refund, tracking number)
6. Compare-and-swap status + version, write timeline and outbox rows
7. Commit, then hand the notification off without waiting for it

Steps 5 and 6 share one transaction: either the status, version, ledger
entries, timeline and outbox row all land, or none of them do.
"""
import secrets
import string
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courierx.config import get_settings
from courierx.core.errors import (
    Forbidden,
    InvalidTransition,
    LifecycleError,
    NotFound,
    ValidationError,
    VersionConflict,
)
from courierx.core.ledger import ZERO, LedgerStore, to_money
from courierx.core.lifecycle import Actor, is_edge_permitted, is_valid_transition
from courierx.database.connection import get_session_factory
from courierx.database.models import (
    OutboxEvent,
    Shipment,
    ShipmentStatus,
    ShipmentTimeline,
    utcnow,
)
from courierx.integrations.notifications import NotificationDispatcher
from courierx.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

S = ShipmentStatus

# Columns a caller may set alongside a transition.
TRANSITION_FIELDS = frozenset(
    {"domestic_awb", "international_awb", "international_carrier", "manifest_id", "dispatched_at"}
)

# Dispatch only happens as part of a manifest.
DISPATCH_FIELDS = frozenset({"international_awb", "international_carrier", "manifest_id"})

_TRACKING_ALPHABET = string.ascii_uppercase + string.digits


def generate_tracking_number(now: Optional[datetime] = None) -> str:
    """CX + yymmdd + six random alphanumerics."""
    now = now or utcnow()
    suffix = "".join(secrets.choice(_TRACKING_ALPHABET) for _ in range(6))
    return f"CX{now:%y%m%d}{suffix}"


def parse_status(value: Any) -> ShipmentStatus:
    try:
        return ShipmentStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown shipment status: {value}")


class ShipmentStateMachine:
    """Owns the transition graph and the optimistic-concurrency contract."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        ledger: Optional[LedgerStore] = None,
        notifications: Optional[NotificationDispatcher] = None,
        min_confirm_balance: Optional[Decimal] = None,
    ):
        self._session_factory = session_factory
        self.ledger = ledger or LedgerStore()
        self.notifications = notifications or NotificationDispatcher()
        self.min_confirm_balance = (
            min_confirm_balance
            if min_confirm_balance is not None
            else get_settings().wallet_min_balance
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def update_shipment_status(
        self,
        shipment_id: uuid.UUID | str,
        new_status: ShipmentStatus | str,
        expected_version: int,
        actor: Actor,
        *,
        additional_charge: Optional[Any] = None,
        metadata: Optional[Dict[str, Any]] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> Shipment:
        """
        Apply one transition in its own transaction and return the updated shipment.

        A retry with the same expected_version after success is rejected as
        a VersionConflict, never silently re-applied.
        """
        start = time.time()
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    shipment, from_status = await self.apply_transition(
                        db,
                        shipment_id,
                        new_status,
                        expected_version,
                        actor,
                        additional_charge=additional_charge,
                        metadata=metadata,
                        fields=fields,
                    )
        except LifecycleError as e:
            metrics.record_transition_rejected(e.error_code)
            raise

        metrics.record_transition(from_status, shipment.status, actor.source, time.time() - start)
        self.notifications.hand_off(str(shipment.id), shipment.status)
        return shipment

    async def apply_transition(
        self,
        db: AsyncSession,
        shipment_id: uuid.UUID | str,
        new_status: ShipmentStatus | str,
        expected_version: int,
        actor: Actor,
        *,
        additional_charge: Optional[Any] = None,
        metadata: Optional[Dict[str, Any]] = None,
        fields: Optional[Dict[str, Any]] = None,
    ) -> tuple[Shipment, str]:
        """
        Apply one transition inside the caller's transaction.

        Used directly by batch dispatch so several shipments and their
        manifest commit together. Returns (shipment, previous status).
        """
        shipment_uuid = as_shipment_id(shipment_id)
        target = parse_status(new_status)

        # Step 1: Load
        shipment = await db.get(Shipment, shipment_uuid, populate_existing=True)
        if shipment is None:
            raise NotFound(f"Shipment {shipment_id} not found", user_message="Shipment not found.")

        # Step 2: Version check
        if shipment.version != expected_version:
            logger.info(
                "shipment_version_conflict",
                shipment_id=str(shipment.id),
                expected_version=expected_version,
                actual_version=shipment.version,
                actor=actor.user_id,
            )
            raise VersionConflict(shipment.id, expected_version, shipment.version)

        # Step 3: Edge check
        current = parse_status(shipment.status)
        if not is_valid_transition(current, target):
            logger.warning(
                "shipment_invalid_transition",
                shipment_id=str(shipment.id),
                from_status=current.value,
                to_status=target.value,
                actor=actor.user_id,
            )
            raise InvalidTransition(current.value, target.value)

        # Step 4: Actor check
        if not is_edge_permitted(actor, current, target, shipment.owner_id):
            logger.warning(
                "shipment_transition_forbidden",
                shipment_id=str(shipment.id),
                from_status=current.value,
                to_status=target.value,
                actor=actor.user_id,
            )
            raise Forbidden()

        if target == S.DISPATCHED:
            missing = sorted(DISPATCH_FIELDS - {k for k, v in (fields or {}).items() if v})
            if missing:
                logger.warning(
                    "shipment_dispatch_without_manifest",
                    shipment_id=str(shipment.id),
                    missing=missing,
                    actor=actor.user_id,
                )
                raise ValidationError(
                    f"Dispatch requires {', '.join(missing)}",
                    user_message="Shipments are dispatched through a manifest.",
                )

        # Step 5: Side effects
        now = utcnow()
        values = await self._apply_side_effects(
            db, shipment, current, target, expected_version, additional_charge, now
        )
        for key, value in (fields or {}).items():
            if key not in TRANSITION_FIELDS:
                raise ValidationError(f"Field {key} cannot be set on a transition")
            values[key] = value

        # Step 6: Compare-and-swap
        result = await db.execute(
            update(Shipment)
            .where(Shipment.id == shipment.id, Shipment.version == expected_version)
            .values(status=target.value, version=Shipment.version + 1, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "shipment_version_conflict",
                shipment_id=str(shipment.id),
                expected_version=expected_version,
                stage="compare_and_swap",
            )
            raise VersionConflict(shipment.id, expected_version)

        new_version = expected_version + 1
        db.add(
            ShipmentTimeline(
                shipment_id=shipment.id,
                from_status=current.value,
                to_status=target.value,
                version=new_version,
                source=actor.source,
                actor_id=actor.user_id,
                details=metadata,
                created_at=now,
            )
        )
        await self._write_outbox_event(db, shipment, current.value, target.value, new_version, actor, now)
        await db.flush()
        await db.refresh(shipment)

        logger.info(
            "shipment_status_updated",
            shipment_id=str(shipment.id),
            from_status=current.value,
            to_status=target.value,
            version=new_version,
            actor=actor.user_id,
            source=actor.source,
        )
        return shipment, current.value

    async def _apply_side_effects(
        self,
        db: AsyncSession,
        shipment: Shipment,
        current: ShipmentStatus,
        target: ShipmentStatus,
        expected_version: int,
        additional_charge: Optional[Any],
        now: datetime,
    ) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        owner = shipment.owner_id
        key_suffix = f"v{expected_version}"

        if (current, target) == (S.DRAFT, S.CONFIRMED):
            tracking_number = shipment.tracking_number or generate_tracking_number(now)
            await self.ledger.debit(
                db,
                owner,
                shipment.total_amount,
                shipment.id,
                f"Shipment booking {tracking_number}",
                idempotency_key=f"debit:{shipment.id}",
                require_available=self.min_confirm_balance,
            )
            values["tracking_number"] = tracking_number
            values["confirmed_at"] = now

        elif target == S.PENDING_PAYMENT:
            if additional_charge is None:
                raise ValidationError("An additional charge is required to request payment")
            amount = to_money(additional_charge)
            if amount <= ZERO:
                raise ValidationError("Additional charge must be positive")
            await self.ledger.hold(
                db,
                owner,
                amount,
                shipment.id,
                f"Additional charge for shipment {shipment.tracking_number or shipment.id}",
                idempotency_key=f"hold:{shipment.id}:{key_suffix}",
            )

        elif current == S.PENDING_PAYMENT and target in (S.QC_PASSED, S.DISPATCHED):
            await self.ledger.convert_holds(
                db,
                owner,
                shipment.id,
                f"Additional charge for shipment {shipment.tracking_number or shipment.id}",
                key_suffix,
            )

        elif target == S.QC_FAILED:
            await self.ledger.release_holds(
                db, owner, shipment.id, "QC failed hold release", f"release:{shipment.id}:{key_suffix}"
            )

        elif target == S.CANCELLED:
            await self.ledger.release_holds(
                db, owner, shipment.id, "Cancellation hold release", f"release:{shipment.id}:{key_suffix}"
            )
            net = await self.ledger.net_debited(db, owner, str(shipment.id))
            if net > ZERO:
                await self.ledger.refund(
                    db,
                    owner,
                    net,
                    shipment.id,
                    f"Refund for cancelled shipment {shipment.tracking_number or shipment.id}",
                    idempotency_key=f"refund:{shipment.id}:cancel",
                )

        return values

    async def _write_outbox_event(
        self,
        db: AsyncSession,
        shipment: Shipment,
        from_status: str,
        to_status: str,
        version: int,
        actor: Actor,
        now: datetime,
    ) -> None:
        """Write the committed transition to the transactional outbox."""
        db.add(
            OutboxEvent(
                aggregate_id=shipment.id,
                aggregate_type="shipment",
                event_type="shipment.status_changed",
                payload={
                    "shipment_id": str(shipment.id),
                    "owner_id": shipment.owner_id,
                    "from_status": from_status,
                    "to_status": to_status,
                    "version": version,
                    "source": actor.source,
                    "actor_id": actor.user_id,
                    "occurred_at": now.isoformat(),
                },
                published=False,
                created_at=now,
            )
        )


def as_shipment_id(value: uuid.UUID | str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFound(f"Shipment {value} not found", user_message="Shipment not found.")
