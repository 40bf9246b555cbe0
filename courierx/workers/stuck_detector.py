"""Flags shipments that have sat on the domestic leg past the threshold."""
from datetime import timedelta
from typing import Any, Dict, Optional, Set, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courierx.config import get_settings
from courierx.database.connection import get_session_factory
from courierx.database.models import Shipment, ShipmentStatus, ShipmentTimeline, utcnow
from courierx.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

S = ShipmentStatus

DOMESTIC_LEG_STATUSES = (S.PAYMENT_RECEIVED, S.PICKUP_SCHEDULED, S.OUT_FOR_PICKUP, S.PICKED_UP)
SYSTEM_SOURCE = "system"


class StuckShipmentDetector:
    """
    Adds a `system` timeline flag to every domestic-leg shipment whose
    status has not changed for `threshold_hours`.

    A shipment is flagged once per version, so repeated runs do not pile up
    duplicate alerts.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        threshold_hours: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.threshold_hours = threshold_hours or get_settings().stuck_threshold_hours

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def detect(self) -> Dict[str, int]:
        now = utcnow()
        cutoff = now - timedelta(hours=self.threshold_hours)
        result = {"detected": 0, "flagged": 0, "errors": 0}

        async with self.session_factory() as db:
            async with db.begin():
                stuck = (
                    await db.execute(
                        select(Shipment)
                        .where(
                            Shipment.status.in_([s.value for s in DOMESTIC_LEG_STATUSES]),
                            Shipment.updated_at < cutoff,
                        )
                        .order_by(Shipment.updated_at)
                    )
                ).scalars().all()
                result["detected"] = len(stuck)
                if not stuck:
                    return result

                already: Set[Tuple[Any, int]] = set(
                    (
                        await db.execute(
                            select(ShipmentTimeline.shipment_id, ShipmentTimeline.version).where(
                                ShipmentTimeline.shipment_id.in_([s.id for s in stuck]),
                                ShipmentTimeline.source == SYSTEM_SOURCE,
                            )
                        )
                    ).all()
                )

                for shipment in stuck:
                    if (shipment.id, shipment.version) in already:
                        continue
                    updated_at = shipment.updated_at.replace(tzinfo=None)
                    stuck_hours = int((now.replace(tzinfo=None) - updated_at).total_seconds() // 3600)
                    logger.warning(
                        "shipment_stuck",
                        shipment_id=str(shipment.id),
                        status=shipment.status,
                        stuck_hours=stuck_hours,
                        domestic_awb=shipment.domestic_awb,
                    )
                    try:
                        async with db.begin_nested():
                            db.add(
                                ShipmentTimeline(
                                    shipment_id=shipment.id,
                                    from_status=shipment.status,
                                    to_status=shipment.status,
                                    version=shipment.version,
                                    source=SYSTEM_SOURCE,
                                    description=f"No progress for {stuck_hours}h",
                                    details={
                                        "alert_type": "stuck_shipment",
                                        "stuck_hours": stuck_hours,
                                        "threshold_hours": self.threshold_hours,
                                        "detected_at": now.isoformat(),
                                    },
                                    created_at=now,
                                )
                            )
                    except SQLAlchemyError as e:
                        result["errors"] += 1
                        logger.error("shipment_stuck_flag_failed", shipment_id=str(shipment.id), error=str(e))
                        continue
                    result["flagged"] += 1

        metrics.record_stuck_flagged(result["flagged"])
        return result
