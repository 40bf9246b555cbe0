"""FastAPI application and routes."""
from .main import app
from .schemas import (
    AdminActionRequest,
    BookingResponse,
    DispatchRequest,
    ManifestRequest,
    ShipmentResponse,
)

__all__ = [
    "app",
    "AdminActionRequest",
    "BookingResponse",
    "DispatchRequest",
    "ManifestRequest",
    "ShipmentResponse",
]
