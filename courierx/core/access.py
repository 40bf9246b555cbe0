"""
Access control guard.

Resolves a bearer token to an explicit Actor, loads the actor's roles, and
checks them against a declarative role set per operation. Scheduler-triggered
jobs authenticate with a shared secret instead of a user identity.

Every decision is written to the `courierx.audit` logger with actor,
operation, decision and timestamp. Denials never say which role was missing.
"""
import hmac
from typing import Dict, FrozenSet, Optional

import jwt
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from courierx.config import get_settings
from courierx.core.errors import Forbidden, Unauthorized
from courierx.core.lifecycle import Actor
from courierx.database.connection import get_session_factory
from courierx.database.models import Role, UserRole, utcnow
from courierx.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)
audit_logger = structlog.get_logger("courierx.audit")

CUSTOMER = frozenset({Role.CUSTOMER.value})
STAFF = frozenset({Role.ADMIN.value, Role.WAREHOUSE_OPERATOR.value})
ADMIN = frozenset({Role.ADMIN.value})

# Required role set per operation: the caller needs at least one of them.
OPERATION_ROLES: Dict[str, FrozenSet[str]] = {
    "booking.create": CUSTOMER,
    "booking.confirm": CUSTOMER,
    "booking.cancel": CUSTOMER,
    "shipment.read": CUSTOMER,
    "shipment.admin_action": STAFF,
    "shipment.dispatch": ADMIN,
    "manifest.create": ADMIN,
    "wallet.read": CUSTOMER,
    "wallet.add_funds": CUSTOMER,
}

CRON_OPERATIONS = frozenset({"cron.domestic_sync", "cron.simulation_worker"})


def _audit(actor_id: Optional[str], operation: str, decision: str) -> None:
    metrics.record_access_decision(operation, decision)
    audit_logger.info(
        "access_decision",
        actor=actor_id,
        operation=operation,
        decision=decision,
        timestamp=utcnow().isoformat(),
    )


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AccessGuard:
    """Allow/deny decisions for user operations and cron jobs."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        jwt_secret: Optional[str] = None,
        cron_secret: Optional[str] = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self.jwt_secret = jwt_secret or settings.jwt_secret
        self.jwt_algorithm = settings.jwt_algorithm
        self.jwt_audience = settings.jwt_audience
        self.cron_secret = cron_secret if cron_secret is not None else settings.cron_secret

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    def decode_token(self, token: str) -> str:
        """Verify the identity provider's token and return its subject."""
        try:
            payload = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=[self.jwt_algorithm],
                audience=self.jwt_audience,
                options={"require": ["sub"]},
            )
        except jwt.InvalidTokenError as e:
            logger.info("token_rejected", reason=type(e).__name__)
            raise Unauthorized()

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise Unauthorized()
        return subject

    async def fetch_roles(self, user_id: str) -> FrozenSet[str]:
        async with self.session_factory() as db:
            rows = (
                await db.execute(select(UserRole.role).where(UserRole.user_id == user_id))
            ).scalars().all()
        return frozenset(rows)

    async def resolve_actor(self, authorization: Optional[str]) -> Actor:
        """
        Resolve an `Authorization: Bearer <token>` header to an Actor.

        Raises:
            Unauthorized: Missing, malformed or rejected credential
        """
        token = _bearer_token(authorization)
        if token is None:
            raise Unauthorized()
        user_id = self.decode_token(token)
        return Actor.user(user_id, await self.fetch_roles(user_id))

    def authorize(self, actor: Actor, operation: str) -> None:
        """
        Raises:
            Forbidden: The actor holds none of the operation's required roles
        """
        required = OPERATION_ROLES.get(operation)
        if required is None or actor.is_system or not (actor.roles & required):
            _audit(actor.user_id, operation, "deny")
            raise Forbidden()
        _audit(actor.user_id, operation, "allow")

    def verify_cron_secret(self, authorization: Optional[str], operation: str) -> Actor:
        """
        Check a scheduler request's shared secret.

        An unconfigured server secret denies every request.
        """
        token = _bearer_token(authorization)
        expected = self.cron_secret
        if not expected or token is None or not hmac.compare_digest(
            token.encode("utf-8"), expected.encode("utf-8")
        ):
            _audit(None, operation, "deny")
            raise Unauthorized()
        _audit("system:cron", operation, "allow")
        return Actor.system(operation.split(".", 1)[1])
