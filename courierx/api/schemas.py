"""
Pydantic schemas for API request/response models.

Booking payloads live with the booking service (`courierx.core.booking`)
because the service validates them too.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from courierx.core.lifecycle import AdminAction


class VersionedRequest(BaseModel):
    """Body for transitions on a shipment addressed by path."""

    expected_version: int = Field(..., gt=0, description="Version the caller last read")


class CancelRequest(VersionedRequest):
    reason: Optional[str] = Field(default=None, max_length=500, description="Why it was cancelled")


class AdminActionRequest(BaseModel):
    """Request schema for the admin action endpoint."""

    shipment_id: UUID = Field(..., description="Shipment ID")
    action: AdminAction = Field(..., description="Closed set of warehouse/admin actions")
    expected_version: int = Field(..., gt=0, description="Version the caller last read")
    additional_charge: Optional[Decimal] = Field(
        default=None, gt=0, decimal_places=2, description="Required for request_payment"
    )
    domestic_awb: Optional[str] = Field(
        default=None, max_length=64, description="Carrier AWB, recorded on schedule_pickup"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "shipment_id": "123e4567-e89b-12d3-a456-426614174000",
                    "action": "quality_check",
                    "expected_version": 7,
                }
            ]
        }
    }


class DispatchRequest(BaseModel):
    """Request schema for dispatching one shipment internationally."""

    shipment_id: UUID = Field(..., description="Shipment ID")
    expected_version: int = Field(..., gt=0, description="Version the caller last read")
    carrier: Optional[str] = Field(default=None, max_length=100, description="International carrier")


class ManifestMember(BaseModel):
    shipment_id: UUID
    expected_version: int = Field(..., gt=0)


class ManifestRequest(BaseModel):
    """Request schema for dispatching a batch under one manifest."""

    carrier: Optional[str] = Field(default=None, max_length=100, description="International carrier")
    shipments: List[ManifestMember] = Field(..., min_length=1, description="Members of the manifest")


class ShipmentResponse(BaseModel):
    """Response schema for a single shipment."""

    id: str
    tracking_number: Optional[str] = None
    booking_reference_id: str
    owner_id: str
    status: str
    version: int
    shipment_type: str
    recipient_name: str
    destination_country: str
    weight_kg: float
    declared_value: str
    shipping_cost: str
    gst_amount: str
    addons_total: str
    total_amount: str
    domestic_awb: Optional[str] = None
    international_awb: Optional[str] = None
    international_carrier: Optional[str] = None
    manifest_id: Optional[str] = None
    created_at: str
    updated_at: str
    timeline: Optional[List[Dict[str, Any]]] = None


class BookingResponse(BaseModel):
    success: bool = True
    shipment_id: str
    tracking_number: Optional[str] = None
    shipment: ShipmentResponse


class TransitionResponse(BaseModel):
    success: bool = True
    shipment: ShipmentResponse


class ManifestResponse(BaseModel):
    success: bool = True
    manifest_id: str
    manifest_number: str
    carrier: str
    shipments: List[ShipmentResponse]


class AddFundsRequest(BaseModel):
    """Request schema for a wallet top-up."""

    amount: Decimal = Field(..., gt=0, decimal_places=2, description="Amount in INR")
    payment_ref: str = Field(..., min_length=1, max_length=128, description="Stripe PaymentIntent ID")
    description: Optional[str] = Field(default=None, max_length=200)

    model_config = {
        "json_schema_extra": {
            "examples": [{"amount": "2500.00", "payment_ref": "pi_3OabcXYZ"}]
        }
    }


class WalletResponse(BaseModel):
    balance: str = Field(..., description="Σcredit + Σrefund − Σdebit")
    held: str = Field(..., description="Σhold − Σrelease")
    available: str = Field(..., description="balance − held")


class TransactionResponse(BaseModel):
    id: str
    type: str
    amount: str
    description: str
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    created_at: str
    running_balance: str


class TransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]
    limit: int
    offset: int


class WorkerRunResponse(BaseModel):
    """Counts only; never shipment detail."""

    success: bool = True
    processed: int
    advanced: int
    skipped: int
    errors: int
    stuck_shipments: Optional[Dict[str, int]] = None


class HealthCheckResponse(BaseModel):
    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual health checks")
    message: Optional[str] = Field(default=None, description="Status message")
