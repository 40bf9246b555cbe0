"""Database package for the shipment lifecycle engine."""
from .connection import get_db, get_session_factory, init_db
from .models import (
    Base,
    LedgerEntry,
    LedgerEntryType,
    Manifest,
    OutboxEvent,
    Role,
    Shipment,
    ShipmentStatus,
    ShipmentTimeline,
    ShipmentType,
    UserRole,
    WalletAccount,
    WalletReceipt,
)

__all__ = [
    "Base",
    "LedgerEntry",
    "LedgerEntryType",
    "Manifest",
    "OutboxEvent",
    "Role",
    "Shipment",
    "ShipmentStatus",
    "ShipmentTimeline",
    "ShipmentType",
    "UserRole",
    "WalletAccount",
    "WalletReceipt",
    "get_db",
    "get_session_factory",
    "init_db",
]
