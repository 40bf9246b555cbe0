"""
Service wiring and request-scoped dependencies.

A single ServiceContainer holds the long-lived services. Tests replace it
through `app.dependency_overrides[get_container]`.
"""
from typing import Callable, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courierx.core.access import AccessGuard
from courierx.core.booking import BookingService
from courierx.core.ledger import LedgerStore
from courierx.core.lifecycle import Actor
from courierx.core.outbox import OutboxPublisher
from courierx.core.rate_limiter import RateLimiter
from courierx.core.state_machine import ShipmentStateMachine
from courierx.core.wallet import WalletService
from courierx.integrations.carrier_client import CarrierClient
from courierx.integrations.compliance import ComplianceLookup
from courierx.integrations.notifications import NotificationDispatcher, Notifier
from courierx.integrations.payment_gateway import PaymentGateway
from courierx.integrations.storage import StorageClient
from courierx.monitoring.health import HealthCheck
from courierx.workers.domestic_sync import DomesticSyncWorker
from courierx.workers.simulation_worker import SimulationWorker
from courierx.workers.stuck_detector import StuckShipmentDetector


class ServiceContainer:
    """Builds every service once, sharing one ledger and one notification dispatcher."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        gateway: Optional[PaymentGateway] = None,
        carrier: Optional[CarrierClient] = None,
        storage: Optional[StorageClient] = None,
        notifier: Optional[Notifier] = None,
        rate_limiter: Optional[RateLimiter] = None,
        compliance: Optional[ComplianceLookup] = None,
        simulation_enabled: Optional[bool] = None,
    ):
        self.session_factory = session_factory
        self.ledger = LedgerStore()
        self.notifications = NotificationDispatcher(notifier)
        self.state_machine = ShipmentStateMachine(
            session_factory=session_factory,
            ledger=self.ledger,
            notifications=self.notifications,
        )
        self.booking = BookingService(
            self.state_machine,
            session_factory=session_factory,
            compliance=compliance,
            storage=storage,
        )
        self.wallet = WalletService(session_factory=session_factory, ledger=self.ledger, gateway=gateway)
        self.access = AccessGuard(session_factory=session_factory)
        self.rate_limiter = rate_limiter or RateLimiter()
        self.domestic_sync = DomesticSyncWorker(
            self.state_machine, carrier=carrier, session_factory=session_factory
        )
        self.simulation = SimulationWorker(
            self.state_machine, session_factory=session_factory, enabled=simulation_enabled
        )
        self.stuck_detector = StuckShipmentDetector(session_factory=session_factory)
        self.health = HealthCheck(session_factory=session_factory)
        self.outbox = OutboxPublisher(session_factory=session_factory)


_container: Optional[ServiceContainer] = None


def get_container() -> ServiceContainer:
    global _container
    if _container is None:
        _container = ServiceContainer()
    return _container


async def get_actor(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    container: ServiceContainer = Depends(get_container),
) -> Actor:
    """Resolve the bearer token to an Actor and remember it for error rendering."""
    actor = await container.access.resolve_actor(authorization)
    request.state.actor = actor
    return actor


def require(operation: str) -> Callable[..., object]:
    """Dependency that resolves the caller and checks `operation` against their roles."""

    async def dependency(
        actor: Actor = Depends(get_actor),
        container: ServiceContainer = Depends(get_container),
    ) -> Actor:
        container.access.authorize(actor, operation)
        return actor

    return dependency


def require_cron(operation: str) -> Callable[..., object]:
    """Dependency for scheduler endpoints authenticated by the shared cron secret."""

    async def dependency(
        request: Request,
        authorization: Optional[str] = Header(default=None),
        container: ServiceContainer = Depends(get_container),
    ) -> Actor:
        actor = container.access.verify_cron_secret(authorization, operation)
        request.state.actor = actor
        return actor

    return dependency
