"""
API routes for the shipment lifecycle engine.

Handlers resolve the caller, check roles and rate limits, and delegate to
the services. LifecycleErrors propagate to the handler in `main`, which
renders the error envelope.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from courierx.core.lifecycle import Actor

from .dependencies import ServiceContainer, get_container, require, require_cron
from .schemas import (
    AddFundsRequest,
    AdminActionRequest,
    BookingResponse,
    CancelRequest,
    DispatchRequest,
    HealthCheckResponse,
    ManifestRequest,
    ManifestResponse,
    ShipmentResponse,
    TransactionListResponse,
    TransitionResponse,
    VersionedRequest,
    WalletResponse,
    WorkerRunResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
shipment_router = APIRouter(prefix="/shipments", tags=["shipments"])
wallet_router = APIRouter(prefix="/wallet", tags=["wallet"])
cron_router = APIRouter(prefix="/cron", tags=["cron"])
monitoring_router = APIRouter(tags=["monitoring"])


# ---------------------------------------------------------------------------
# Shipments
# ---------------------------------------------------------------------------


@shipment_router.post(
    "/book",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book a shipment",
    description="Create a draft shipment. Repeating a booking_reference_id returns the original.",
)
async def book_shipment(
    response: Response,
    payload: Dict[str, Any] = Body(...),
    actor: Actor = Depends(require("booking.create")),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    await container.rate_limiter.check(actor.user_id, "booking")

    result = await container.booking.create_booking(payload, actor.user_id)
    if result.error is not None:
        raise result.error

    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return result.to_dict()


@shipment_router.get(
    "/{shipment_id}",
    response_model=ShipmentResponse,
    summary="Get a shipment",
    description="Shipment with its timeline. Visible to the owner and staff only.",
)
async def get_shipment(
    shipment_id: str,
    actor: Actor = Depends(require("shipment.read")),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    return await container.booking.get_shipment(shipment_id, actor)


@shipment_router.post(
    "/{shipment_id}/confirm",
    response_model=TransitionResponse,
    summary="Confirm a draft booking",
    description="Debits the wallet for the shipment total and assigns a tracking number.",
)
async def confirm_booking(
    shipment_id: str,
    request: VersionedRequest,
    actor: Actor = Depends(require("booking.confirm")),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    shipment = await container.booking.confirm_booking(shipment_id, request.expected_version, actor)
    logger.info("api_booking_confirmed", shipment_id=shipment_id, version=shipment["version"])
    return {"success": True, "shipment": shipment}


@shipment_router.post(
    "/{shipment_id}/cancel",
    response_model=TransitionResponse,
    summary="Cancel a booking",
    description="Releases open holds and refunds whatever was debited for the shipment.",
)
async def cancel_booking(
    shipment_id: str,
    request: CancelRequest,
    actor: Actor = Depends(require("booking.cancel")),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    shipment = await container.booking.cancel_booking(
        shipment_id, request.expected_version, actor, reason=request.reason
    )
    logger.info("api_booking_cancelled", shipment_id=shipment_id, version=shipment["version"])
    return {"success": True, "shipment": shipment}


@shipment_router.post(
    "/admin-action",
    response_model=TransitionResponse,
    summary="Run a warehouse/admin action",
)
async def admin_action(
    request: AdminActionRequest,
    actor: Actor = Depends(require("shipment.admin_action")),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    await container.rate_limiter.check(actor.user_id, request.action.value)

    logger.info(
        "api_admin_action_request",
        shipment_id=str(request.shipment_id),
        action=request.action.value,
        actor=actor.user_id,
    )
    shipment = await container.booking.perform_admin_action(
        request.shipment_id,
        request.action,
        request.expected_version,
        actor,
        additional_charge=request.additional_charge,
        domestic_awb=request.domestic_awb,
    )
    return {"success": True, "shipment": shipment}


@shipment_router.post(
    "/dispatch",
    response_model=TransitionResponse,
    summary="Dispatch internationally",
    description="Hands a QC-passed shipment to the international carrier.",
)
async def dispatch_shipment(
    request: DispatchRequest,
    actor: Actor = Depends(require("shipment.dispatch")),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    shipment = await container.booking.dispatch_international(
        request.shipment_id, request.expected_version, actor, carrier=request.carrier
    )
    return {"success": True, "shipment": shipment}


@shipment_router.post(
    "/manifests",
    response_model=ManifestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Dispatch a batch under one manifest",
    description="All members are dispatched or none are.",
)
async def create_manifest(
    request: ManifestRequest,
    actor: Actor = Depends(require("manifest.create")),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    manifest = await container.booking.dispatch_batch(
        [(member.shipment_id, member.expected_version) for member in request.shipments],
        actor,
        carrier=request.carrier,
    )
    return {"success": True, **manifest}


# ---------------------------------------------------------------------------
# Wallet
# ---------------------------------------------------------------------------


@wallet_router.get("", response_model=WalletResponse, summary="Wallet balance")
async def get_wallet(
    actor: Actor = Depends(require("wallet.read")),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, str]:
    summary = await container.wallet.get_summary(actor.user_id)
    return summary.to_dict()


@wallet_router.get(
    "/transactions",
    response_model=TransactionListResponse,
    summary="Transaction history",
    description="Newest first, each entry with the balance as of that entry.",
)
async def list_transactions(
    entry_type: Optional[str] = Query(default=None, alias="type"),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(require("wallet.read")),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    transactions = await container.wallet.transaction_history(
        actor.user_id, entry_type=entry_type, start=start, end=end, limit=limit, offset=offset
    )
    return {"transactions": transactions, "limit": limit, "offset": offset}


@wallet_router.post(
    "/funds",
    summary="Add funds",
    description="Credits the wallet for a confirmed Stripe payment and issues a GST receipt.",
)
async def add_funds(
    request: AddFundsRequest,
    actor: Actor = Depends(require("wallet.add_funds")),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    logger.info(
        "api_add_funds_request",
        user_id=actor.user_id,
        amount=str(request.amount),
        payment_ref=request.payment_ref,
    )
    result = await container.wallet.add_funds(
        actor.user_id,
        request.amount,
        request.payment_ref,
        description=request.description or "Wallet recharge",
    )
    return {"success": True, **result}


@wallet_router.get("/receipts", summary="Wallet receipts")
async def list_receipts(
    actor: Actor = Depends(require("wallet.read")),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, List[Dict[str, Any]]]:
    return {"receipts": await container.wallet.get_receipts(actor.user_id)}


# ---------------------------------------------------------------------------
# Scheduler-triggered jobs
# ---------------------------------------------------------------------------


@cron_router.post(
    "/domestic-sync",
    response_model=WorkerRunResponse,
    summary="Sync domestic carrier tracking",
    description="Advances domestic-leg shipments from carrier events, then flags stuck ones.",
)
async def run_domestic_sync(
    _: Actor = Depends(require_cron("cron.domestic_sync")),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.domestic_sync.run()
    stuck = await container.stuck_detector.detect()
    return {"success": True, **result.to_dict(), "stuck_shipments": stuck}


@cron_router.post(
    "/simulation-worker",
    response_model=WorkerRunResponse,
    summary="Advance simulated carrier progress",
    description="Staging and demo only; does nothing in production.",
)
async def run_simulation_worker(
    _: Actor = Depends(require_cron("cron.simulation_worker")),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    result = await container.simulation.run()
    return {"success": True, **result.to_dict()}


# ---------------------------------------------------------------------------
# Monitoring
# ---------------------------------------------------------------------------


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await container.health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return await container.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    result = await container.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
