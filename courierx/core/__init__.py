"""Shipment lifecycle engine: state machine, ledger, booking, access control."""
from .access import OPERATION_ROLES, AccessGuard
from .booking import BookingResult, BookingService
from .errors import (
    Forbidden,
    InsufficientFunds,
    InvalidTransition,
    LifecycleError,
    NotFound,
    RateLimited,
    Unauthorized,
    UpstreamFailure,
    ValidationError,
    VersionConflict,
)
from .ledger import LedgerStore, WalletSummary
from .lifecycle import Actor, AdminAction
from .outbox import OutboxPublisher
from .rate_limiter import RateLimiter
from .state_machine import ShipmentStateMachine
from .wallet import WalletService

__all__ = [
    "AccessGuard",
    "Actor",
    "AdminAction",
    "BookingResult",
    "BookingService",
    "Forbidden",
    "InsufficientFunds",
    "InvalidTransition",
    "LedgerStore",
    "LifecycleError",
    "NotFound",
    "OPERATION_ROLES",
    "OutboxPublisher",
    "RateLimited",
    "RateLimiter",
    "ShipmentStateMachine",
    "Unauthorized",
    "UpstreamFailure",
    "ValidationError",
    "VersionConflict",
    "WalletService",
    "WalletSummary",
]
