"""
API tests: routing, auth, error envelopes and status codes.
"""
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from httpx import AsyncClient

from tests.conftest import PATH_TO_QC, advance, auth_headers, booking_payload, cron_headers, fund_wallet, grant_role

CUSTOMER = auth_headers("user-1")
ADMIN = auth_headers("admin-1")


@pytest_asyncio.fixture
async def staff(session_factory: Any) -> None:
    await grant_role(session_factory, "admin-1", "admin")
    await grant_role(session_factory, "operator-1", "warehouse_operator")


async def book(client: AsyncClient, **overrides: Any) -> Any:
    response = await client.post("/shipments/book", json=booking_payload(**overrides), headers=CUSTOMER)
    assert response.status_code == 201, response.text
    return response.json()["shipment"]


class TestBookingEndpoints:
    @pytest.mark.asyncio
    async def test_book_and_repeat(self, client: AsyncClient) -> None:
        payload = booking_payload(booking_reference_id="BK-API-1")

        created = await client.post("/shipments/book", json=payload, headers=CUSTOMER)
        repeated = await client.post("/shipments/book", json=payload, headers=CUSTOMER)

        assert created.status_code == 201
        body = created.json()
        assert body["success"] is True
        assert body["shipment"]["status"] == "draft"
        assert body["shipment"]["total_amount"] == "2360.00"
        assert "X-Request-ID" in created.headers
        assert repeated.status_code == 200
        assert repeated.json()["shipment_id"] == body["shipment_id"]

    @pytest.mark.asyncio
    async def test_invalid_booking_returns_envelope(self, client: AsyncClient) -> None:
        response = await client.post(
            "/shipments/book", json=booking_payload(weight_kg=31), headers=CUSTOMER
        )

        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "validation_error"
        assert "weight_kg" in body["error"]

    @pytest.mark.asyncio
    async def test_booking_is_rate_limited(self, client: AsyncClient) -> None:
        for _ in range(5):
            await book(client)

        response = await client.post("/shipments/book", json=booking_payload(), headers=CUSTOMER)

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_confirm_then_stale_confirm_conflicts(self, client: AsyncClient, session_factory: Any) -> None:
        shipment = await book(client)
        await fund_wallet(session_factory, "user-1", "3000.00")

        confirmed = await client.post(
            f"/shipments/{shipment['id']}/confirm", json={"expected_version": 1}, headers=CUSTOMER
        )
        stale = await client.post(
            f"/shipments/{shipment['id']}/confirm", json={"expected_version": 1}, headers=CUSTOMER
        )

        assert confirmed.status_code == 200
        assert confirmed.json()["shipment"]["status"] == "confirmed"
        assert confirmed.json()["shipment"]["tracking_number"].startswith("CX")
        assert stale.status_code == 409
        assert stale.json()["success"] is False
        assert stale.json()["code"] == "version_conflict"

    @pytest.mark.asyncio
    async def test_confirm_without_funds_is_payment_required(self, client: AsyncClient) -> None:
        shipment = await book(client)

        response = await client.post(
            f"/shipments/{shipment['id']}/confirm", json={"expected_version": 1}, headers=CUSTOMER
        )

        assert response.status_code == 402
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_cancel_and_read_timeline(self, client: AsyncClient) -> None:
        shipment = await book(client)

        cancelled = await client.post(
            f"/shipments/{shipment['id']}/cancel",
            json={"expected_version": 1, "reason": "Booked twice"},
            headers=CUSTOMER,
        )
        fetched = await client.get(f"/shipments/{shipment['id']}", headers=CUSTOMER)

        assert cancelled.json()["shipment"]["status"] == "cancelled"
        assert [row["to_status"] for row in fetched.json()["timeline"]] == ["draft", "cancelled"]

    @pytest.mark.asyncio
    async def test_other_customer_cannot_see_shipment(self, client: AsyncClient) -> None:
        shipment = await book(client)

        response = await client.get(f"/shipments/{shipment['id']}", headers=auth_headers("user-2"))

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"


class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_or_bad_token(self, client: AsyncClient) -> None:
        missing = await client.get("/wallet")
        bad = await client.get("/wallet", headers={"Authorization": "Bearer nope"})

        assert missing.status_code == 401
        assert bad.status_code == 401
        assert missing.json() == {"success": False, "error": "Unauthorized"}

    @pytest.mark.asyncio
    async def test_customer_forbidden_on_staff_endpoints(self, client: AsyncClient) -> None:
        shipment = await book(client)

        admin_action = await client.post(
            "/shipments/admin-action",
            json={"shipment_id": shipment["id"], "action": "confirm_payment", "expected_version": 1},
            headers=CUSTOMER,
        )
        dispatch = await client.post(
            "/shipments/dispatch",
            json={"shipment_id": shipment["id"], "expected_version": 1},
            headers=CUSTOMER,
        )

        for response in (admin_action, dispatch):
            assert response.status_code == 403
            assert response.json() == {"success": False, "error": "Forbidden"}

    @pytest.mark.asyncio
    async def test_operator_cannot_dispatch(self, client: AsyncClient, staff: None) -> None:
        shipment = await book(client)

        response = await client.post(
            "/shipments/dispatch",
            json={"shipment_id": shipment["id"], "expected_version": 1},
            headers=auth_headers("operator-1"),
        )

        assert response.status_code == 403


class TestAdminEndpoints:
    @pytest.mark.asyncio
    async def test_admin_walks_shipment_to_dispatch(
        self, client: AsyncClient, session_factory: Any, container: Any, admin: Any, staff: None
    ) -> None:
        shipment = await book(client)
        await fund_wallet(session_factory, "user-1", "5000.00")
        version = await advance(container.state_machine, shipment["id"], PATH_TO_QC, admin)

        packaged = await client.post(
            "/shipments/admin-action",
            json={"shipment_id": shipment["id"], "action": "package", "expected_version": version},
            headers=ADMIN,
        )
        assert packaged.status_code == 200
        assert packaged.json()["shipment"]["status"] == "qc_passed"

        dispatched = await client.post(
            "/shipments/manifests",
            json={
                "carrier": "DHL Express",
                "shipments": [{"shipment_id": shipment["id"], "expected_version": version + 1}],
            },
            headers=ADMIN,
        )
        assert dispatched.status_code == 201
        body = dispatched.json()
        assert body["carrier"] == "DHL Express"
        assert body["shipments"][0]["status"] == "dispatched"

    @pytest.mark.asyncio
    async def test_staff_errors_are_detailed(self, client: AsyncClient, staff: None) -> None:
        shipment = await book(client)

        response = await client.post(
            "/shipments/admin-action",
            json={"shipment_id": shipment["id"], "action": "package", "expected_version": 1},
            headers=ADMIN,
        )

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "invalid_transition"
        assert "draft" in body["detail"]

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, client: AsyncClient, staff: None) -> None:
        shipment = await book(client)

        response = await client.post(
            "/shipments/admin-action",
            json={"shipment_id": shipment["id"], "action": "teleport", "expected_version": 1},
            headers=ADMIN,
        )

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"


class TestWalletEndpoints:
    @pytest.mark.asyncio
    async def test_add_funds_and_history(self, client: AsyncClient, gateway: Any) -> None:
        gateway.payments["pi_api"] = Decimal("1180.00")

        added = await client.post(
            "/wallet/funds", json={"amount": "1180.00", "payment_ref": "pi_api"}, headers=CUSTOMER
        )
        wallet = await client.get("/wallet", headers=CUSTOMER)
        history = await client.get("/wallet/transactions", params={"type": "credit"}, headers=CUSTOMER)
        receipts = await client.get("/wallet/receipts", headers=CUSTOMER)

        assert added.status_code == 200
        assert added.json()["receipt"]["gst_amount"] == "180.00"
        assert wallet.json() == {"balance": "1180.00", "held": "0.00", "available": "1180.00"}
        assert [row["running_balance"] for row in history.json()["transactions"]] == ["1180.00"]
        assert len(receipts.json()["receipts"]) == 1

    @pytest.mark.asyncio
    async def test_history_paging_bounds(self, client: AsyncClient) -> None:
        response = await client.get("/wallet/transactions", params={"limit": 500}, headers=CUSTOMER)
        assert response.status_code == 422


class TestCronEndpoints:
    @pytest.mark.asyncio
    async def test_requires_shared_secret(self, client: AsyncClient) -> None:
        for headers in ({}, cron_headers("wrong"), CUSTOMER):
            response = await client.post("/cron/domestic-sync", headers=headers)
            assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_runs_with_secret(self, client: AsyncClient) -> None:
        sync = await client.post("/cron/domestic-sync", headers=cron_headers())
        simulation = await client.post("/cron/simulation-worker", headers=cron_headers())

        assert sync.status_code == 200
        assert sync.json()["processed"] == 0
        assert sync.json()["stuck_shipments"] == {"detected": 0, "flagged": 0, "errors": 0}
        assert simulation.json()["success"] is True


class TestMonitoring:
    @pytest.mark.asyncio
    async def test_liveness_and_metrics(self, client: AsyncClient) -> None:
        live = await client.get("/health/live")
        metrics = await client.get("/metrics")

        assert live.json()["status"] == "alive"
        assert metrics.status_code == 200
        assert "shipment_transitions_total" in metrics.text
