"""External collaborators: payments, carrier tracking, storage, notifications, compliance."""
from .carrier_client import CarrierClient, TrackingEvent, map_carrier_status
from .compliance import ComplianceLookup, Regulation
from .notifications import LoggingNotifier, NotificationDispatcher
from .payment_gateway import PaymentConfirmation, PaymentGateway
from .storage import StorageClient

__all__ = [
    "CarrierClient",
    "ComplianceLookup",
    "LoggingNotifier",
    "NotificationDispatcher",
    "PaymentConfirmation",
    "PaymentGateway",
    "Regulation",
    "StorageClient",
    "TrackingEvent",
    "map_carrier_status",
]
