"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file, so tests never share state.
"""
import base64
import os
import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional, Tuple

# Settings are cached on first use; configure them before importing the app.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./courierx-test.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-courierx-suite-0001")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from unittest.mock import AsyncMock

from courierx.api.dependencies import ServiceContainer, get_container
from courierx.api.main import app
from courierx.core.booking import BookingService
from courierx.core.errors import ValidationError
from courierx.core.ledger import LedgerStore
from courierx.core.lifecycle import Actor
from courierx.core.rate_limiter import InMemoryBackend, RateLimiter
from courierx.core.state_machine import ShipmentStateMachine
from courierx.core.wallet import WalletService
from courierx.database.connection import build_session_factory, create_engine_for_url, init_db
from courierx.database.models import ShipmentStatus, UserRole
from courierx.integrations.notifications import NotificationDispatcher
from courierx.integrations.payment_gateway import PaymentConfirmation, PaymentGateway
from courierx.integrations.storage import StorageClient

JWT_SECRET = os.environ["JWT_SECRET"]
CRON_SECRET = os.environ["CRON_SECRET"]

S = ShipmentStatus

# Admin path from draft to the QC bench.
PATH_TO_QC: Tuple[ShipmentStatus, ...] = (
    S.CONFIRMED,
    S.PAYMENT_RECEIVED,
    S.PICKUP_SCHEDULED,
    S.OUT_FOR_PICKUP,
    S.PICKED_UP,
    S.AT_WAREHOUSE,
    S.QC_IN_PROGRESS,
)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []

    async def send_status_notification(self, shipment_id: str, new_status: str) -> None:
        self.sent.append((shipment_id, new_status))


def make_token(subject: str, secret: str = JWT_SECRET, **claims: Any) -> str:
    return jwt.encode({"sub": subject, **claims}, secret, algorithm="HS256")


def auth_headers(subject: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(subject)}"}


def cron_headers(secret: str = CRON_SECRET) -> Dict[str, str]:
    return {"Authorization": f"Bearer {secret}"}


def booking_payload(**overrides: Any) -> Dict[str, Any]:
    """A document booking to the UK: no prescription, no declared value cap."""
    payload: Dict[str, Any] = {
        "booking_reference_id": f"BK-{uuid.uuid4().hex[:10]}",
        "shipment_type": "document",
        "recipient": {"name": "Asha Menon", "phone": "+447700900123", "email": "asha@example.com"},
        "origin_address": "12 MG Road, Bengaluru 560001",
        "destination_address": "221B Baker Street, London NW1 6XE",
        "destination_country": "United Kingdom",
        "destination_country_code": "GB",
        "weight_kg": 1.5,
        "shipping_cost": "2000.00",
        "items": [{"name": "Degree certificate", "quantity": 1, "unit_value": "100.00"}],
    }
    payload.update(overrides)
    return payload


def medicine_payload(**overrides: Any) -> Dict[str, Any]:
    """Medicine to the UAE with the prescription the destination requires."""
    payload = booking_payload(
        shipment_type="medicine",
        destination_country="United Arab Emirates",
        destination_country_code="AE",
        destination_address="Villa 7, Jumeirah, Dubai",
        items=[{"name": "Metformin 500mg", "quantity": 10, "unit_value": "500.00", "dosage_form": "tablet"}],
        documents=[
            {
                "document_type": "prescription",
                "filename": "rx.pdf",
                "content_type": "application/pdf",
                "content_base64": base64.b64encode(b"%PDF-1.4 prescription").decode(),
            }
        ],
    )
    payload.update(overrides)
    return payload


async def fund_wallet(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: str,
    amount: Any,
    payment_ref: Optional[str] = None,
) -> None:
    async with session_factory() as db:
        async with db.begin():
            await LedgerStore().credit(
                db, user_id, Decimal(str(amount)), payment_ref or f"pi_{uuid.uuid4().hex}", "Test top-up"
            )


async def grant_role(session_factory: async_sessionmaker[AsyncSession], user_id: str, role: str) -> None:
    async with session_factory() as db:
        async with db.begin():
            db.add(UserRole(user_id=user_id, role=role))


async def advance(
    state_machine: ShipmentStateMachine,
    shipment_id: Any,
    statuses: Iterable[ShipmentStatus],
    actor: Actor,
    version: int = 1,
) -> int:
    """Walk a shipment through `statuses`, returning the final version."""
    for status in statuses:
        shipment = await state_machine.update_shipment_status(shipment_id, status, version, actor)
        version = shipment.version
    return version


@pytest.fixture
def customer() -> Actor:
    return Actor.user("user-1")


@pytest.fixture
def other_customer() -> Actor:
    return Actor.user("user-2")


@pytest.fixture
def admin() -> Actor:
    return Actor.user("admin-1", {"admin"})


@pytest.fixture
def operator() -> Actor:
    return Actor.user("operator-1", {"warehouse_operator"})


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'courierx.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def gateway() -> AsyncMock:
    """
    Payment gateway that confirms whatever is registered in `gateway.payments`.

    `gateway.owners` optionally pins a payment to the user named in its metadata.
    """
    payments: Dict[str, Decimal] = {}
    owners: Dict[str, str] = {}

    async def confirm(payment_ref: str) -> PaymentConfirmation:
        if payment_ref not in payments:
            raise ValidationError(f"Payment {payment_ref} could not be verified")
        return PaymentConfirmation(
            payment_ref=payment_ref,
            amount=payments[payment_ref],
            currency="INR",
            payment_method="upi",
            status="succeeded",
            user_id=owners.get(payment_ref),
        )

    mock = AsyncMock(spec=PaymentGateway)
    mock.confirm_payment.side_effect = confirm
    mock.payments = payments
    mock.owners = owners
    return mock


@pytest.fixture
def storage() -> AsyncMock:
    async def upload(bucket: str, path: str, content: bytes, content_type: str = "") -> Dict[str, str]:
        return {"path": path, "url": f"https://storage.test/{bucket}/{path}"}

    mock = AsyncMock(spec=StorageClient)
    mock.upload.side_effect = upload
    return mock


@pytest_asyncio.fixture
async def state_machine(
    session_factory: async_sessionmaker[AsyncSession], notifier: RecordingNotifier
) -> AsyncGenerator[ShipmentStateMachine, Any]:
    machine = ShipmentStateMachine(
        session_factory=session_factory,
        ledger=LedgerStore(),
        notifications=NotificationDispatcher(notifier),
    )
    yield machine
    await machine.notifications.drain()


@pytest.fixture
def booking_service(
    state_machine: ShipmentStateMachine,
    session_factory: async_sessionmaker[AsyncSession],
    storage: AsyncMock,
) -> BookingService:
    return BookingService(state_machine, session_factory=session_factory, storage=storage)


@pytest.fixture
def wallet_service(
    session_factory: async_sessionmaker[AsyncSession],
    state_machine: ShipmentStateMachine,
    gateway: AsyncMock,
) -> WalletService:
    return WalletService(session_factory=session_factory, ledger=state_machine.ledger, gateway=gateway)


@pytest.fixture
def make_booking(booking_service: BookingService) -> Any:
    async def _make(user_id: str = "user-1", **overrides: Any) -> Dict[str, Any]:
        result = await booking_service.create_booking(booking_payload(**overrides), user_id)
        assert result.success, result.error
        assert result.shipment is not None
        return result.shipment

    return _make


@pytest_asyncio.fixture
async def container(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: AsyncMock,
    storage: AsyncMock,
    notifier: RecordingNotifier,
) -> AsyncGenerator[ServiceContainer, Any]:
    services = ServiceContainer(
        session_factory=session_factory,
        gateway=gateway,
        storage=storage,
        notifier=notifier,
        rate_limiter=RateLimiter(InMemoryBackend()),
        simulation_enabled=True,
    )
    yield services
    await services.notifications.drain()


@pytest_asyncio.fixture
async def client(container: ServiceContainer) -> AsyncGenerator[AsyncClient, Any]:
    """HTTP client bound to the app with the test container."""
    app.dependency_overrides[get_container] = lambda: container
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
