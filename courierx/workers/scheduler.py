"""
Interval scheduler for the lifecycle workers.

Deployments without an external cron can run this process instead of
calling the /cron endpoints. Each tick runs the domestic sync, the stuck
detector, and the simulation worker when it is enabled.
"""
import argparse
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courierx.config import get_settings
from courierx.core.state_machine import ShipmentStateMachine
from courierx.integrations.carrier_client import CarrierClient
from courierx.monitoring.logging import setup_logging
from courierx.workers.domestic_sync import DomesticSyncWorker
from courierx.workers.simulation_worker import SimulationWorker
from courierx.workers.stuck_detector import StuckShipmentDetector

logger = structlog.get_logger(__name__)


class WorkerScheduler:
    def __init__(
        self,
        state_machine: Optional[ShipmentStateMachine] = None,
        interval_seconds: Optional[float] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        carrier: Optional[CarrierClient] = None,
        simulation_enabled: Optional[bool] = None,
    ):
        self.state_machine = state_machine or ShipmentStateMachine(session_factory=session_factory)
        self.interval_seconds = interval_seconds or get_settings().worker_interval_seconds
        self.domestic_sync = DomesticSyncWorker(
            self.state_machine, carrier=carrier, session_factory=session_factory
        )
        self.simulation = SimulationWorker(
            self.state_machine, session_factory=session_factory, enabled=simulation_enabled
        )
        self.stuck_detector = StuckShipmentDetector(session_factory=session_factory)
        self._stop = asyncio.Event()

    async def run_once(self) -> Dict[str, Any]:
        """One tick. A failing job is logged and does not stop the others."""
        summary: Dict[str, Any] = {}
        for name, job in (
            ("domestic_sync", self._run_domestic_sync),
            ("stuck_shipments", self.stuck_detector.detect),
            ("simulation", self._run_simulation),
        ):
            try:
                summary[name] = await job()
            except Exception as e:
                logger.error("scheduled_job_failed", job=name, error_type=type(e).__name__, error=str(e))
                summary[name] = {"error": str(e)}
        return summary

    async def _run_domestic_sync(self) -> Dict[str, int]:
        return (await self.domestic_sync.run()).to_dict()

    async def _run_simulation(self) -> Dict[str, int]:
        return (await self.simulation.run()).to_dict()

    async def start(self) -> None:
        logger.info("worker_scheduler_starting", interval_seconds=self.interval_seconds)
        while not self._stop.is_set():
            summary = await self.run_once()
            logger.info("worker_scheduler_tick", **summary)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        await self.state_machine.notifications.drain()
        logger.info("worker_scheduler_stopped")

    def stop(self) -> None:
        self._stop.set()


async def start_scheduler(interval_seconds: Optional[float] = None) -> None:
    setup_logging()
    scheduler = WorkerScheduler(interval_seconds=interval_seconds)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, scheduler.stop)
    await scheduler.start()


def main() -> None:
    parser = argparse.ArgumentParser(description="Lifecycle worker scheduler")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between runs")
    args = parser.parse_args()
    asyncio.run(start_scheduler(args.interval))


if __name__ == "__main__":
    main()
