"""
Outbox publisher background worker.

Continuously drains committed shipment transitions from the outbox table
to subscribers.
"""
import asyncio
import signal
from typing import Any, Dict

import structlog

from courierx.core.outbox import OutboxPublisher
from courierx.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def publish_status_change(event_data: Dict[str, Any]) -> None:
    """
    Deliver a status change to the event stream.

    Replace with a real broker publish when a consumer needs one.
    """
    payload = event_data.get("payload") or {}
    logger.info(
        "shipment_status_event",
        event_type=event_data.get("event_type"),
        shipment_id=payload.get("shipment_id"),
        to_status=payload.get("to_status"),
        version=payload.get("version"),
    )


async def start_outbox_publisher() -> None:
    """Run until SIGINT/SIGTERM."""
    setup_logging()
    logger.info("outbox_publisher_worker_starting")

    publisher = OutboxPublisher(subscribers=[publish_status_change])
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, publisher.stop)

    try:
        await publisher.start()
    finally:
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
