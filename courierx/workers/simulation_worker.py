"""
Simulation worker for staging and demo environments.

Stands in for real carrier events: each run advances every shipment on a
carrier-owned status one step along the canonical path. Never runs in
production.
"""
import uuid
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courierx.config import get_settings
from courierx.core.errors import LifecycleError
from courierx.core.lifecycle import CARRIER_NEXT_STATUS, Actor
from courierx.core.state_machine import ShipmentStateMachine
from courierx.database.models import Shipment, ShipmentStatus
from courierx.workers.base import BatchWorker, WorkerResult

logger = structlog.get_logger(__name__)


class SimulationWorker(BatchWorker):
    name = "simulation"
    advisory_lock_key = 920000

    def __init__(
        self,
        state_machine: ShipmentStateMachine,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: Optional[int] = None,
        enabled: Optional[bool] = None,
    ):
        super().__init__(state_machine, session_factory, batch_size)
        settings = get_settings()
        self.enabled = (
            enabled
            if enabled is not None
            else settings.simulation_enabled and not settings.is_production
        )
        self.actor = Actor.system(self.name)

    async def run_batch(self) -> WorkerResult:
        if not self.enabled:
            logger.info("simulation_disabled")
            return WorkerResult()

        async with self.session_factory() as db:
            candidates = (
                await db.execute(
                    select(Shipment.id)
                    .where(Shipment.status.in_([s.value for s in CARRIER_NEXT_STATUS]))
                    .order_by(Shipment.updated_at)
                    .limit(self.batch_size)
                )
            ).scalars().all()

        result = WorkerResult()
        for shipment_id in candidates:
            result.processed += 1
            try:
                advanced = await self._advance_with_retry(shipment_id)
            except LifecycleError as e:
                result.errors += 1
                logger.warning(
                    "simulation_item_failed",
                    shipment_id=str(shipment_id),
                    error_code=e.error_code,
                    error=e.message,
                )
            except Exception as e:
                result.errors += 1
                logger.error(
                    "simulation_item_error",
                    shipment_id=str(shipment_id),
                    error_type=type(e).__name__,
                    error=str(e),
                )
            else:
                if advanced:
                    result.advanced += 1
                else:
                    result.skipped += 1
        return result

    async def _advance_with_retry(self, shipment_id: uuid.UUID) -> bool:
        """One retry after a lifecycle rejection, re-reading the shipment first."""
        try:
            return await self._advance(shipment_id)
        except LifecycleError as first:
            logger.info("simulation_retrying", shipment_id=str(shipment_id), error=first.message)
            return await self._advance(shipment_id)

    async def _advance(self, shipment_id: uuid.UUID) -> bool:
        async with self.session_factory() as db:
            shipment = await db.get(Shipment, shipment_id)
            if shipment is None:
                return False
            current = ShipmentStatus(shipment.status)
            version = shipment.version

        target = CARRIER_NEXT_STATUS.get(current)
        if target is None:
            return False

        await self.state_machine.update_shipment_status(
            shipment_id,
            target,
            version,
            self.actor,
            metadata={"trigger": "simulation_worker", "previous_status": current.value},
        )
        return True
