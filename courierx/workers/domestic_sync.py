"""
Domestic carrier tracking sync.

For each shipment on the domestic leg with a carrier AWB, fetch the latest
tracking event, map it to an internal status and advance the shipment
through the state machine. The version is re-read right before each call
so normal runs never lose to their own stale data, while a genuine race
with an admin still surfaces as a VersionConflict for that item only.
"""
import uuid
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courierx.core.errors import LifecycleError, VersionConflict
from courierx.core.lifecycle import Actor
from courierx.core.state_machine import ShipmentStateMachine
from courierx.database.models import Shipment, ShipmentStatus
from courierx.integrations.carrier_client import CarrierClient, map_carrier_status
from courierx.workers.base import BatchWorker, WorkerResult

logger = structlog.get_logger(__name__)

S = ShipmentStatus

DOMESTIC_SYNC_STATUSES = (S.PICKUP_SCHEDULED, S.OUT_FOR_PICKUP, S.PICKED_UP)
_STATUS_ORDER = {status: index for index, status in enumerate(ShipmentStatus)}

ADVANCED = "advanced"
SKIPPED = "skipped"


class DomesticSyncWorker(BatchWorker):
    name = "domestic_sync"
    advisory_lock_key = 839271

    def __init__(
        self,
        state_machine: ShipmentStateMachine,
        carrier: Optional[CarrierClient] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: Optional[int] = None,
    ):
        super().__init__(state_machine, session_factory, batch_size)
        self._carrier = carrier
        self.actor = Actor.system(self.name)

    @property
    def carrier(self) -> CarrierClient:
        if self._carrier is None:
            self._carrier = CarrierClient()
        return self._carrier

    async def run_batch(self) -> WorkerResult:
        async with self.session_factory() as db:
            candidates = (
                await db.execute(
                    select(Shipment.id, Shipment.domestic_awb)
                    .where(
                        Shipment.status.in_([s.value for s in DOMESTIC_SYNC_STATUSES]),
                        Shipment.domestic_awb.is_not(None),
                    )
                    .order_by(Shipment.updated_at)
                    .limit(self.batch_size)
                )
            ).all()

        result = WorkerResult()
        for shipment_id, awb in candidates:
            result.processed += 1
            try:
                outcome = await self._sync_one(shipment_id, awb)
            except VersionConflict as e:
                result.errors += 1
                logger.info("domestic_sync_version_conflict", shipment_id=str(shipment_id), error=e.message)
            except LifecycleError as e:
                result.errors += 1
                logger.warning(
                    "domestic_sync_item_failed",
                    shipment_id=str(shipment_id),
                    error_code=e.error_code,
                    error=e.message,
                )
            except Exception as e:
                result.errors += 1
                logger.error(
                    "domestic_sync_item_error",
                    shipment_id=str(shipment_id),
                    error_type=type(e).__name__,
                    error=str(e),
                )
            else:
                if outcome == ADVANCED:
                    result.advanced += 1
                else:
                    result.skipped += 1
        return result

    async def _sync_one(self, shipment_id: uuid.UUID, awb: str) -> str:
        event = await self.carrier.track(awb)
        if event is None:
            return SKIPPED

        target = map_carrier_status(event.raw_status)
        if target is None:
            logger.info("domestic_sync_unmapped_status", shipment_id=str(shipment_id), raw_status=event.raw_status)
            return SKIPPED

        # Re-read immediately before the transition.
        async with self.session_factory() as db:
            shipment = await db.get(Shipment, shipment_id)
            if shipment is None:
                return SKIPPED
            current = ShipmentStatus(shipment.status)
            version = shipment.version

        if target == current or _STATUS_ORDER[target] < _STATUS_ORDER[current]:
            return SKIPPED

        await self.state_machine.update_shipment_status(
            shipment_id,
            target,
            version,
            self.actor,
            metadata={
                "trigger": "domestic_sync",
                "raw_status": event.raw_status,
                "location": event.location,
                "carrier_timestamp": event.timestamp,
            },
        )
        return ADVANCED
