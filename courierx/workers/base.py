"""
Shared shape for scheduler-triggered batch workers.

A run loads candidate shipments, processes each one independently and
returns `{processed, advanced, skipped, errors}`. A failure on one shipment
is counted and never aborts the batch.

Overlapping runs are safe because every write goes through the version
check; the in-process lock and Postgres advisory lock only avoid wasted
work.
"""
import asyncio
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courierx.config import get_settings
from courierx.core.state_machine import ShipmentStateMachine
from courierx.database.connection import get_session_factory
from courierx.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class WorkerResult:
    processed: int = 0
    advanced: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class BatchWorker:
    """Base class for workers that drive shipments through the state machine."""

    name = "worker"
    advisory_lock_key = 0

    def __init__(
        self,
        state_machine: ShipmentStateMachine,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: Optional[int] = None,
    ):
        self.state_machine = state_machine
        self._session_factory = session_factory
        self.batch_size = batch_size or get_settings().worker_batch_size
        self._running = asyncio.Lock()

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def run(self) -> WorkerResult:
        if self._running.locked():
            logger.info("worker_run_skipped", worker=self.name, reason="already_running")
            metrics.record_worker_run(self.name, "skipped")
            return WorkerResult()

        async with self._running:
            start = time.time()
            async with self.session_factory() as lock_db:
                if not await self._try_advisory_lock(lock_db):
                    logger.info("worker_run_skipped", worker=self.name, reason="lock_held")
                    metrics.record_worker_run(self.name, "skipped")
                    return WorkerResult()
                try:
                    result = await self.run_batch()
                finally:
                    await self._release_advisory_lock(lock_db)

            duration = time.time() - start
            metrics.record_worker_run(
                self.name,
                "completed",
                duration_seconds=duration,
                advanced=result.advanced,
                skipped=result.skipped,
                errors=result.errors,
            )
            logger.info("worker_run_completed", worker=self.name, duration_seconds=duration, **result.to_dict())
            return result

    async def run_batch(self) -> WorkerResult:
        raise NotImplementedError

    @staticmethod
    def _uses_postgres(db: AsyncSession) -> bool:
        bind: Any = db.bind
        return bind is not None and bind.dialect.name == "postgresql"

    async def _try_advisory_lock(self, db: AsyncSession) -> bool:
        if not self._uses_postgres(db):
            return True
        result = await db.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": self.advisory_lock_key})
        return bool(result.scalar())

    async def _release_advisory_lock(self, db: AsyncSession) -> None:
        if not self._uses_postgres(db):
            return
        await db.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": self.advisory_lock_key})
