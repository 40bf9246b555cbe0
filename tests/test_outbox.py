"""
Tests for the transactional outbox publisher.
"""
from typing import Any, Dict, List

import pytest

from courierx.core.errors import InsufficientFunds
from courierx.core.outbox import OutboxPublisher
from tests.conftest import fund_wallet


async def confirmed_shipment(make_booking: Any, booking_service: Any, session_factory: Any, customer: Any) -> str:
    shipment = await make_booking()
    await fund_wallet(session_factory, "user-1", "3000.00")
    await booking_service.confirm_booking(shipment["id"], 1, customer)
    return shipment["id"]


class TestOutboxPublisher:
    @pytest.mark.asyncio
    async def test_committed_transition_is_published_once(
        self, make_booking: Any, booking_service: Any, session_factory: Any, customer: Any
    ) -> None:
        shipment_id = await confirmed_shipment(make_booking, booking_service, session_factory, customer)
        received: List[Dict[str, Any]] = []

        async def collect(event: Dict[str, Any]) -> None:
            received.append(event)

        publisher = OutboxPublisher(subscribers=[collect], session_factory=session_factory)

        assert await publisher.get_pending_count() == 1
        assert await publisher.process_batch() == 1
        assert await publisher.process_batch() == 0
        assert await publisher.get_pending_count() == 0

        assert len(received) == 1
        event = received[0]
        assert event["event_type"] == "shipment.status_changed"
        assert event["aggregate_id"] == shipment_id
        assert event["payload"]["from_status"] == "draft"
        assert event["payload"]["to_status"] == "confirmed"
        assert event["payload"]["version"] == 2
        assert event["payload"]["source"] == "customer"

    @pytest.mark.asyncio
    async def test_failing_subscriber_leaves_event_pending(
        self, make_booking: Any, booking_service: Any, session_factory: Any, customer: Any
    ) -> None:
        await confirmed_shipment(make_booking, booking_service, session_factory, customer)
        attempts: List[int] = []

        async def flaky(event: Dict[str, Any]) -> None:
            attempts.append(event["id"])
            if len(attempts) == 1:
                raise ConnectionError("push service unavailable")

        publisher = OutboxPublisher(subscribers=[flaky], session_factory=session_factory)

        assert await publisher.process_batch() == 0
        assert await publisher.get_pending_count() == 1
        assert await publisher.process_batch() == 1
        assert attempts[0] == attempts[1]

    @pytest.mark.asyncio
    async def test_rejected_transition_writes_no_event(
        self, make_booking: Any, booking_service: Any, session_factory: Any, customer: Any
    ) -> None:
        shipment = await make_booking()

        with pytest.raises(InsufficientFunds):
            await booking_service.confirm_booking(shipment["id"], 1, customer)

        publisher = OutboxPublisher(session_factory=session_factory)
        assert await publisher.get_pending_count() == 0
