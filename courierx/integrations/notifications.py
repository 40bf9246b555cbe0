"""
Status notifications (email / WhatsApp).

Delivery is fire-and-forget: the transition has already committed when a
notification is handed off, and a failed send is logged and dropped.
"""
import asyncio
from typing import Any, Optional, Protocol, Set

import structlog

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def send_status_notification(self, shipment_id: str, new_status: str) -> None:
        ...


class LoggingNotifier:
    """Default notifier; records the notification it would have sent."""

    async def send_status_notification(self, shipment_id: str, new_status: str) -> None:
        logger.info("status_notification_sent", shipment_id=shipment_id, status=new_status)


class NotificationDispatcher:
    """Hands notifications off to background tasks and forgets about them."""

    def __init__(self, notifier: Optional[Notifier] = None) -> None:
        self.notifier: Notifier = notifier or LoggingNotifier()
        self._tasks: Set[asyncio.Task[Any]] = set()

    def hand_off(self, shipment_id: str, new_status: str) -> None:
        task = asyncio.create_task(self._send(shipment_id, new_status))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, shipment_id: str, new_status: str) -> None:
        try:
            await self.notifier.send_status_notification(shipment_id, new_status)
        except Exception as e:
            logger.warning(
                "status_notification_failed",
                shipment_id=shipment_id,
                status=new_status,
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
