"""Cloudflare Stream API client for clip derivatives.

Provides:
- Async API client for the Stream REST API (copy-by-URL upload, clip creation)
- Playback URL construction for cropped MP4 downloads
- A tenacity-backed retry helper for transient upstream failures

Usage:
    from clipforge.services.stream_client import get_stream_client

    client = get_stream_client()
    video_id = await client.upload_source("https://example.com/src.mp4")
    clip_id = await client.create_clip(video_id, 10.0, 25.0, meta={...})
    url = client.build_playback_url(clip_id, 1080, 1920)
"""

import json
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from clipforge.config import StreamConfig, settings
from clipforge.errors import (
    UpstreamRejected,
    UpstreamTransportError,
    UpstreamUnavailable,
    is_transient,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SOURCE_VIDEO_NAME = "Clip Source Video"


def _error_payload(data: Any) -> str:
    """Serialize a provider error body for diagnostics, preserving it verbatim."""
    if isinstance(data, dict) and data.get("errors"):
        return json.dumps(data["errors"])
    if isinstance(data, (dict, list)):
        return json.dumps(data)
    return str(data)


def _first_error_code(data: Any) -> Optional[int]:
    if isinstance(data, dict):
        errors = data.get("errors") or []
        if errors and isinstance(errors[0], dict):
            return errors[0].get("code")
    return None


# ---------------------------------------------------------------------------
# Cloudflare Stream API client
# ---------------------------------------------------------------------------

class StreamClient:
    """Async client for the Cloudflare Stream API.

    Credentials are checked lazily: a client without an account id or API
    token can be constructed, but any remote call raises
    UpstreamUnavailable. URL construction never needs the token.
    """

    def __init__(
        self,
        account_id: Optional[str],
        api_token: Optional[str],
        *,
        api_base: str = "https://api.cloudflare.com/client/v4",
        delivery_host_template: str = "customer-{account}.cloudflarestream.com",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_id = account_id
        self.api_token = api_token
        self.api_base = api_base.rstrip("/")
        self.delivery_host_template = delivery_host_template
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_config(
        cls,
        config: StreamConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "StreamClient":
        return cls(
            config.account_id,
            config.api_token,
            api_base=config.api_base,
            delivery_host_template=config.delivery_host_template,
            timeout=config.request_timeout,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.account_id and self.api_token)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.api_base,
                headers={"Authorization": f"Bearer {self.api_token}"},
                timeout=httpx.Timeout(self.timeout, connect=15.0),
                transport=self._transport,
            )
        return self._client

    def _require_credentials(self) -> None:
        if not self.is_configured:
            raise UpstreamUnavailable("Cloudflare credentials not configured")

    async def _post(self, path: str, body: dict, operation: str) -> dict:
        """POST to the Stream API and unwrap the ``{success, result}`` envelope.

        Raises:
            UpstreamTransportError: The request never produced a response.
            UpstreamRejected: Non-2xx status, non-JSON body or success=false.
        """
        logger.info("POST %s%s", self.api_base, path)
        try:
            response = await self.client.post(path, json=body)
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(
                f"{operation} request failed: {type(exc).__name__}: {exc}"
            ) from exc
        logger.info("  %s response: HTTP %d", operation, response.status_code)

        try:
            data = response.json()
        except ValueError:
            payload = response.text[:1000]
            logger.error("  %s returned non-JSON body: %s", operation, payload)
            raise UpstreamRejected(
                f"{operation} failed: HTTP {response.status_code} with non-JSON body",
                payload=payload,
                status_code=response.status_code,
            )

        if not response.is_success or not (isinstance(data, dict) and data.get("success")):
            payload = _error_payload(data)
            logger.error("  %s rejected: %s", operation, payload)
            raise UpstreamRejected(
                f"{operation} failed: {payload}",
                payload=payload,
                status_code=response.status_code,
                code=_first_error_code(data),
            )

        result = data.get("result") or {}
        uid = result.get("uid") if isinstance(result, dict) else None
        if not uid:
            payload = _error_payload(data)
            raise UpstreamRejected(
                f"{operation} failed: response has no result uid",
                payload=payload,
                status_code=response.status_code,
            )
        return result

    async def upload_source(self, source_url: str) -> str:
        """Ask Stream to copy the source video from a public URL.

        Returns the remote video uid shared by every derivative render.
        """
        self._require_credentials()
        result = await self._post(
            f"/accounts/{self.account_id}/stream/copy",
            {"url": source_url, "meta": {"name": SOURCE_VIDEO_NAME}},
            "Cloudflare upload",
        )
        logger.info("  remote video uid: %s", result["uid"])
        return result["uid"]

    async def create_clip(
        self,
        remote_video_id: str,
        start_time: float,
        end_time: float,
        *,
        meta: Optional[dict] = None,
    ) -> str:
        """Create a time-ranged clip of an uploaded video.

        Returns the remote clip uid.
        """
        self._require_credentials()
        result = await self._post(
            f"/accounts/{self.account_id}/stream/{remote_video_id}/clip",
            {
                "clippedFromVideoUID": remote_video_id,
                "startTimeSeconds": start_time,
                "endTimeSeconds": end_time,
                "allowedOrigins": ["*"],
                "requireSignedURLs": False,
                "meta": meta or {},
            },
            "Cloudflare clip API",
        )
        logger.info("  remote clip uid: %s", result["uid"])
        return result["uid"]

    def build_playback_url(self, remote_clip_id: str, width: int, height: int) -> str:
        """Download URL for a crop-fit MP4 rendition of a clip."""
        host = self.delivery_host_template.format(account=self.account_id)
        return (
            f"https://{host}/{remote_clip_id}/downloads/default.mp4"
            f"?width={width}&height={height}&fit=crop"
        )

    async def close(self):
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

async def call_with_retry(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int = 1,
    base_delay: float = 1.0,
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)``, retrying transient upstream errors.

    ``attempts=1`` calls exactly once. Non-transient errors (rejections with
    a 4xx status, missing credentials) are raised on the first failure.
    """
    @retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_delay, min=base_delay, max=30),
        retry=retry_if_exception(is_transient),
        reraise=True,
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )
    async def _call() -> T:
        return await fn(*args, **kwargs)

    return await _call()


# ---------------------------------------------------------------------------
# Module-level lazy singleton
# ---------------------------------------------------------------------------

_stream_client: Optional[StreamClient] = None


def get_stream_client(config: Optional[StreamConfig] = None) -> StreamClient:
    """Get or create a singleton StreamClient from settings.stream."""
    global _stream_client
    if _stream_client is None:
        _stream_client = StreamClient.from_config(config or settings.stream)
        if not _stream_client.is_configured:
            logger.warning(
                "Cloudflare Stream credentials not configured; uploads will fail"
            )
    return _stream_client


async def close_stream_client():
    """Close and drop the singleton client."""
    global _stream_client
    if _stream_client is not None:
        await _stream_client.close()
        _stream_client = None
