"""
Tests for the scheduler-triggered workers: domestic carrier sync, the
simulation worker, the stuck-shipment detector and the in-process scheduler.
"""
import json
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import event, select, update
from sqlalchemy.exc import OperationalError

from courierx.core.errors import UpstreamFailure
from courierx.core.lifecycle import Actor, AdminAction
from courierx.database.models import Shipment, ShipmentStatus, ShipmentTimeline, utcnow
from courierx.integrations.carrier_client import CarrierClient, map_carrier_status
from courierx.workers.domestic_sync import DomesticSyncWorker
from courierx.workers.scheduler import WorkerScheduler
from courierx.workers.simulation_worker import SimulationWorker
from courierx.workers.stuck_detector import StuckShipmentDetector
from tests.conftest import advance, fund_wallet

S = ShipmentStatus


def carrier_with(scans: Dict[str, Optional[str]], status_code: int = 200) -> CarrierClient:
    """Carrier client answering from `scans` (awb -> raw status) over a mock transport."""

    def handler(request: httpx.Request) -> httpx.Response:
        awb = request.url.path.rsplit("/", 1)[-1]
        if status_code != 200:
            return httpx.Response(status_code, json={"status": False, "message": "error"})
        raw = scans.get(awb)
        if raw is None:
            return httpx.Response(200, json={"status": False, "data": None})
        body = {"status": True, "data": {"awb": awb, "status": raw, "location": "Bengaluru Hub"}}
        return httpx.Response(200, content=json.dumps(body), headers={"content-type": "application/json"})

    return CarrierClient(base_url="https://carrier.test", api_key="k", transport=httpx.MockTransport(handler))


async def pickup_scheduled(
    make_booking: Any, booking_service: Any, state_machine: Any, session_factory: Any, admin: Actor, awb: str
) -> Dict[str, Any]:
    shipment = await make_booking()
    await fund_wallet(session_factory, "user-1", "5000.00")
    version = await advance(state_machine, shipment["id"], (S.CONFIRMED, S.PAYMENT_RECEIVED), admin)
    return await booking_service.perform_admin_action(
        shipment["id"], AdminAction.SCHEDULE_PICKUP, version, admin, domestic_awb=awb
    )


async def load(session_factory: Any, shipment_id: str) -> Shipment:
    async with session_factory() as db:
        return await db.get(Shipment, uuid.UUID(shipment_id))


async def backdate(session_factory: Any, shipment_id: str, hours: int) -> None:
    async with session_factory() as db:
        async with db.begin():
            await db.execute(
                update(Shipment)
                .where(Shipment.id == uuid.UUID(shipment_id))
                .values(updated_at=utcnow() - timedelta(hours=hours))
            )


class TestCarrierStatusMapping:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Out for Pickup", S.OUT_FOR_PICKUP),
            ("Picked Up", S.PICKED_UP),
            ("In Transit", S.PICKED_UP),
            (" Delivered ", S.AT_WAREHOUSE),
            ("RTO Initiated", None),
            ("", None),
            (None, None),
        ],
    )
    def test_mapping(self, raw: Any, expected: Any) -> None:
        assert map_carrier_status(raw) == expected

    @pytest.mark.asyncio
    async def test_rejected_request_is_upstream_failure(self) -> None:
        with pytest.raises(UpstreamFailure):
            await carrier_with({}, status_code=404).track("DLV1")


class TestDomesticSync:
    @pytest.mark.asyncio
    async def test_advances_from_carrier_scan(
        self, make_booking: Any, booking_service: Any, state_machine: Any, session_factory: Any, admin: Actor
    ) -> None:
        shipment = await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, "DLV1")
        worker = DomesticSyncWorker(
            state_machine, carrier=carrier_with({"DLV1": "Picked Up"}), session_factory=session_factory
        )

        result = await worker.run()

        assert result.to_dict() == {"processed": 1, "advanced": 1, "skipped": 0, "errors": 0}
        stored = await load(session_factory, shipment["id"])
        assert stored.status == "picked_up"
        assert stored.version == shipment["version"] + 1
        async with session_factory() as db:
            last = (
                await db.execute(
                    select(ShipmentTimeline)
                    .where(ShipmentTimeline.shipment_id == stored.id)
                    .order_by(ShipmentTimeline.id.desc())
                    .limit(1)
                )
            ).scalar_one()
        assert last.source == "domestic_sync"
        assert last.details["raw_status"] == "Picked Up"

    @pytest.mark.asyncio
    async def test_unknown_missing_and_backward_scans_skip(
        self, make_booking: Any, booking_service: Any, state_machine: Any, session_factory: Any, admin: Actor
    ) -> None:
        first = await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, "DLV1")
        await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, "DLV2")
        third = await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, "DLV3")
        await advance(state_machine, third["id"], (S.OUT_FOR_PICKUP,), Actor.system("domestic_sync"), third["version"])

        worker = DomesticSyncWorker(
            state_machine,
            carrier=carrier_with({"DLV1": "RTO Initiated", "DLV3": "Out for Pickup"}),
            session_factory=session_factory,
        )
        result = await worker.run()

        assert result.to_dict() == {"processed": 3, "advanced": 0, "skipped": 3, "errors": 0}
        assert (await load(session_factory, first["id"])).status == "pickup_scheduled"

    @pytest.mark.asyncio
    async def test_illegal_jump_counted_without_aborting_batch(
        self, make_booking: Any, booking_service: Any, state_machine: Any, session_factory: Any, admin: Actor
    ) -> None:
        jumper = await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, "DLV1")
        mover = await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, "DLV2")

        worker = DomesticSyncWorker(
            state_machine,
            carrier=carrier_with({"DLV1": "Delivered", "DLV2": "Out for Pickup"}),
            session_factory=session_factory,
        )
        result = await worker.run()

        assert result.errors == 1
        assert result.advanced == 1
        assert (await load(session_factory, jumper["id"])).status == "pickup_scheduled"
        assert (await load(session_factory, mover["id"])).status == "out_for_pickup"

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, state_machine: Any, session_factory: Any) -> None:
        worker = DomesticSyncWorker(state_machine, carrier=carrier_with({}), session_factory=session_factory)

        async with worker._running:
            result = await worker.run()

        assert result.processed == 0


class TestSimulationWorker:
    @pytest.mark.asyncio
    async def test_advances_one_step_per_run(
        self, make_booking: Any, booking_service: Any, state_machine: Any, session_factory: Any, admin: Actor
    ) -> None:
        shipment = await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, "DLV1")
        worker = SimulationWorker(state_machine, session_factory=session_factory, enabled=True)

        first = await worker.run()
        second = await worker.run()
        third = await worker.run()
        fourth = await worker.run()

        assert [r.advanced for r in (first, second, third, fourth)] == [1, 1, 1, 0]
        # at_warehouse is a staff status; the simulation stops there.
        assert (await load(session_factory, shipment["id"])).status == "at_warehouse"

    @pytest.mark.asyncio
    async def test_disabled_worker_does_nothing(
        self, make_booking: Any, booking_service: Any, state_machine: Any, session_factory: Any, admin: Actor
    ) -> None:
        shipment = await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, "DLV1")
        worker = SimulationWorker(state_machine, session_factory=session_factory, enabled=False)

        result = await worker.run()

        assert result.processed == 0
        assert (await load(session_factory, shipment["id"])).status == "pickup_scheduled"

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_batch(
        self, make_booking: Any, booking_service: Any, state_machine: Any, session_factory: Any, admin: Actor
    ) -> None:
        await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, "DLV1")
        await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, "DLV2")
        original = state_machine.update_shipment_status
        calls = []

        async def reset_first(*args: Any, **kwargs: Any) -> Any:
            calls.append(args[0])
            if len(calls) == 1:
                raise ConnectionResetError("db connection reset")
            return await original(*args, **kwargs)

        worker = SimulationWorker(state_machine, session_factory=session_factory, enabled=True)
        with patch.object(state_machine, "update_shipment_status", side_effect=reset_first):
            result = await worker.run()

        assert (result.processed, result.advanced, result.errors) == (2, 1, 1)
        assert len(calls) == 2
        assert (await load(session_factory, str(calls[1]))).status == "out_for_pickup"


class TestStuckShipmentDetector:
    @pytest.mark.asyncio
    async def test_flags_once_per_version(
        self, make_booking: Any, booking_service: Any, state_machine: Any, session_factory: Any, admin: Actor
    ) -> None:
        stuck = await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, "DLV1")
        await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, "DLV2")
        await backdate(session_factory, stuck["id"], hours=72)
        detector = StuckShipmentDetector(session_factory=session_factory, threshold_hours=48)

        first = await detector.detect()
        second = await detector.detect()

        assert first == {"detected": 1, "flagged": 1, "errors": 0}
        assert second == {"detected": 1, "flagged": 0, "errors": 0}
        async with session_factory() as db:
            flags = (
                await db.execute(select(ShipmentTimeline).where(ShipmentTimeline.source == "system"))
            ).scalars().all()
        assert len(flags) == 1
        assert str(flags[0].shipment_id) == stuck["id"]
        assert flags[0].details["alert_type"] == "stuck_shipment"
        assert flags[0].details["stuck_hours"] >= 71

        stored = await load(session_factory, stuck["id"])
        assert stored.status == "pickup_scheduled"
        assert stored.version == stuck["version"]

    @pytest.mark.asyncio
    async def test_failed_flag_counted_and_others_written(
        self, make_booking: Any, booking_service: Any, state_machine: Any, session_factory: Any, admin: Actor
    ) -> None:
        for awb in ("DLV1", "DLV2"):
            shipment = await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, awb)
            await backdate(session_factory, shipment["id"], hours=72)
        failed = []

        def fail_first_flag(mapper: Any, connection: Any, target: Any) -> None:
            if not failed:
                failed.append(target.shipment_id)
                raise OperationalError("INSERT INTO shipment_timeline", {}, Exception("database is locked"))

        detector = StuckShipmentDetector(session_factory=session_factory, threshold_hours=48)
        event.listen(ShipmentTimeline, "before_insert", fail_first_flag)
        try:
            first = await detector.detect()
        finally:
            event.remove(ShipmentTimeline, "before_insert", fail_first_flag)
        second = await detector.detect()

        assert first == {"detected": 2, "flagged": 1, "errors": 1}
        assert second == {"detected": 2, "flagged": 1, "errors": 0}


class TestWorkerScheduler:
    @pytest.mark.asyncio
    async def test_tick_runs_every_job(
        self, make_booking: Any, booking_service: Any, state_machine: Any, session_factory: Any, admin: Actor
    ) -> None:
        shipment = await pickup_scheduled(make_booking, booking_service, state_machine, session_factory, admin, "DLV1")
        scheduler = WorkerScheduler(
            state_machine=state_machine,
            session_factory=session_factory,
            carrier=carrier_with({"DLV1": "Out for Pickup"}),
            simulation_enabled=True,
        )

        summary = await scheduler.run_once()

        assert summary["domestic_sync"]["advanced"] == 1
        assert summary["stuck_shipments"]["detected"] == 0
        assert summary["simulation"]["advanced"] == 1
        assert (await load(session_factory, shipment["id"])).status == "picked_up"

    @pytest.mark.asyncio
    async def test_failing_job_does_not_stop_others(self, state_machine: Any, session_factory: Any) -> None:
        scheduler = WorkerScheduler(
            state_machine=state_machine,
            session_factory=session_factory,
            carrier=carrier_with({}),
            simulation_enabled=False,
        )
        scheduler.stuck_detector.detect = AsyncMock(side_effect=RuntimeError("database went away"))

        summary = await scheduler.run_once()

        assert summary["stuck_shipments"] == {"error": "database went away"}
        assert summary["domestic_sync"]["errors"] == 0
        assert summary["simulation"]["processed"] == 0

    @pytest.mark.asyncio
    async def test_stop_ends_loop(self, state_machine: Any, session_factory: Any) -> None:
        scheduler = WorkerScheduler(
            state_machine=state_machine, session_factory=session_factory, interval_seconds=60
        )

        async def tick() -> Dict[str, Any]:
            scheduler.stop()
            return {}

        scheduler.run_once = AsyncMock(side_effect=tick)
        await scheduler.start()

        scheduler.run_once.assert_awaited_once()
