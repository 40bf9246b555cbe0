"""
Domestic carrier tracking client.

- Retries failed calls with exponential backoff (tenacity)
- Logs every request/response with personal data masked
- Maps raw carrier status strings onto internal statuses; raw strings are
  never stored on the shipment
"""
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from courierx.config import get_settings
from courierx.core.errors import UpstreamFailure
from courierx.database.models import ShipmentStatus
from courierx.monitoring.logging import mask_sensitive
from courierx.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# The domestic leg ends at our warehouse, so a carrier "Delivered" scan means
# the parcel reached the hub. Intermediate scans collapse onto picked_up.
CARRIER_STATUS_MAP: Dict[str, ShipmentStatus] = {
    "Out for Pickup": ShipmentStatus.OUT_FOR_PICKUP,
    "Picked Up": ShipmentStatus.PICKED_UP,
    "In Transit": ShipmentStatus.PICKED_UP,
    "Out for Delivery": ShipmentStatus.PICKED_UP,
    "Delivered": ShipmentStatus.AT_WAREHOUSE,
}


def map_carrier_status(raw_status: Optional[str]) -> Optional[ShipmentStatus]:
    """Unknown statuses map to None and trigger no transition."""
    if not raw_status:
        return None
    return CARRIER_STATUS_MAP.get(raw_status.strip())


@dataclass(frozen=True)
class TrackingEvent:
    awb: str
    raw_status: str
    location: Optional[str] = None
    timestamp: Optional[str] = None


class CarrierRequestError(Exception):
    """Retryable carrier failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CarrierClient:
    """Async HTTP client for the domestic carrier's tracking API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.carrier_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.carrier_api_key
        self.timeout = timeout or settings.carrier_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    @retry(
        retry=retry_if_exception_type(CarrierRequestError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=9),
        reraise=True,
    )
    async def _get(self, path: str) -> Dict[str, Any]:
        start = time.time()
        try:
            async with self._client() as client:
                response = await client.get(path)
        except httpx.HTTPError as e:
            metrics.record_upstream_call("carrier", "track", "error", time.time() - start)
            logger.warning("carrier_request_failed", path=path, error=str(e))
            raise CarrierRequestError(str(e)) from e

        duration = time.time() - start
        if response.status_code >= 500 or response.status_code == 429:
            metrics.record_upstream_call("carrier", "track", "error", duration)
            logger.warning("carrier_request_retryable", path=path, status_code=response.status_code)
            raise CarrierRequestError(
                f"Carrier returned {response.status_code}", response.status_code
            )
        if response.status_code >= 400:
            metrics.record_upstream_call("carrier", "track", "rejected", duration)
            raise UpstreamFailure(
                "carrier", f"Carrier rejected request with {response.status_code}"
            )

        body = response.json()
        metrics.record_upstream_call("carrier", "track", "ok", duration)
        logger.debug(
            "carrier_response",
            path=path,
            status_code=response.status_code,
            duration_seconds=duration,
            body=mask_sensitive(body),
        )
        return body

    async def track(self, awb: str) -> Optional[TrackingEvent]:
        """
        Fetch the latest tracking event for an AWB.

        Returns None when the carrier has no scans yet.

        Raises:
            UpstreamFailure: The carrier stayed unavailable after retries
        """
        try:
            body = await self._get(f"/shipments/track/{awb}")
        except CarrierRequestError as e:
            raise UpstreamFailure("carrier", str(e), awb=awb) from e

        data = body.get("data") or {}
        raw_status = data.get("status")
        if not body.get("status", True) or not raw_status:
            return None
        return TrackingEvent(
            awb=awb,
            raw_status=raw_status,
            location=data.get("location"),
            timestamp=data.get("timestamp"),
        )
