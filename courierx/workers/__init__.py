"""Scheduler-triggered batch workers."""
from .base import BatchWorker, WorkerResult
from .domestic_sync import DomesticSyncWorker
from .scheduler import WorkerScheduler
from .simulation_worker import SimulationWorker
from .stuck_detector import StuckShipmentDetector

__all__ = [
    "BatchWorker",
    "DomesticSyncWorker",
    "SimulationWorker",
    "StuckShipmentDetector",
    "WorkerResult",
    "WorkerScheduler",
]
