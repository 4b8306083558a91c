"""Printer camera access.

The printer exposes an RTSP live stream authenticated with the LAN access
code, plus HTTP stream and still-image endpoints on port 6000.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

import aiohttp

from .. import constants
from ..config import PrinterConfig
from ..retry import RetryPolicy

LOGGER = logging.getLogger(__name__)


def camera_urls(printer: PrinterConfig) -> Dict[str, str]:
    """Return the stream and snapshot URLs for ``printer``."""

    http_base = f"http://{printer.host}:{constants.CAMERA_HTTP_PORT}"
    return {
        "rtsp": (
            f"rtsp://{constants.PRINTER_USERNAME}:{printer.access_code}"
            f"@{printer.host}/streaming/live/1"
        ),
        "http": f"{http_base}/stream",
        "snapshot": f"{http_base}/snapshot",
    }


@dataclass(slots=True)
class CaptureResult:
    """Outcome of one snapshot request."""

    success: bool
    image_data: Optional[bytes] = None
    content_type: Optional[str] = None
    captured_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class _ServerError(Exception):
    """A 5xx reply from the camera endpoint."""


class CameraClient:
    """Fetches still images from the printer's snapshot endpoint.

    Server errors, timeouts and client connection errors are retried with
    exponential backoff. Other failures are reported in the returned
    :class:`CaptureResult` instead of raised.
    """

    def __init__(
        self,
        snapshot_url: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 10.0,
    ) -> None:
        self.snapshot_url = snapshot_url
        self._session = session
        self._owns_session = session is None
        self._retry = retry_policy or RetryPolicy(
            max_retries=2, initial_delay=0.5, max_delay=4.0
        )
        self._timeout = timeout

    @classmethod
    def for_printer(cls, printer: PrinterConfig, **kwargs) -> "CameraClient":
        return cls(camera_urls(printer)["snapshot"], **kwargs)

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "CameraClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def capture(self) -> CaptureResult:
        session = await self._ensure_session()

        async def fetch() -> CaptureResult:
            async with session.get(self.snapshot_url) as response:
                if response.status >= 500:
                    raise _ServerError(f"Server error: {response.status}")
                if response.status == 404:
                    return CaptureResult(
                        success=False,
                        error_code="camera_not_found",
                        error_message=f"Camera endpoint not found: {self.snapshot_url}",
                    )
                if response.status != 200:
                    return CaptureResult(
                        success=False,
                        error_code="capture_failed",
                        error_message=f"HTTP {response.status} from camera",
                    )

                content_type = response.headers.get("Content-Type", "image/jpeg")
                if not content_type.startswith("image/"):
                    return CaptureResult(
                        success=False,
                        error_code="invalid_content_type",
                        error_message=f"Expected image, got {content_type}",
                    )

                image_data = await response.read()
                if not image_data:
                    return CaptureResult(
                        success=False,
                        error_code="empty_response",
                        error_message="Camera returned empty image data",
                    )

                LOGGER.debug("Captured %d bytes from camera (%s)", len(image_data), content_type)
                return CaptureResult(
                    success=True,
                    image_data=image_data,
                    content_type=content_type,
                    captured_at=datetime.now(timezone.utc),
                )

        try:
            return await self._retry.run_conditional(
                fetch,
                classify=lambda exc: isinstance(
                    exc, (_ServerError, aiohttp.ClientError, asyncio.TimeoutError)
                ),
            )
        except (_ServerError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return CaptureResult(
                success=False,
                error_code="capture_failed",
                error_message=(
                    f"Camera capture failed after {self._retry.max_retries + 1} "
                    f"attempts: {str(exc) or type(exc).__name__}"
                ),
            )
