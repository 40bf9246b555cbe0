"""Object storage client for booking documents (prescriptions, invoices, IDs)."""
import time
from typing import Dict, Optional

import httpx
import structlog

from courierx.config import get_settings
from courierx.core.errors import UpstreamFailure
from courierx.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StorageClient:
    """
    Uploads files to the storage service.

    `upload(bucket, path, content)` returns `{"path", "url"}`.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.storage_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.storage_api_key
        self._transport = transport

    async def upload(
        self,
        bucket: str,
        path: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> Dict[str, str]:
        headers = {"Content-Type": content_type, "x-upsert": "false"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        start = time.time()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=30.0, transport=self._transport
            ) as client:
                response = await client.post(f"/object/{bucket}/{path}", content=content, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            metrics.record_upstream_call("storage", "upload", "error", time.time() - start)
            logger.error("storage_upload_failed", bucket=bucket, path=path, error=str(e))
            raise UpstreamFailure("storage", str(e), bucket=bucket, path=path) from e

        metrics.record_upstream_call("storage", "upload", "ok", time.time() - start)
        logger.info("storage_upload_completed", bucket=bucket, path=path, size=len(content))
        return {"path": path, "url": f"{self.base_url}/object/public/{bucket}/{path}"}
