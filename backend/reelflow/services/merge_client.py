"""Client for the external video merge service."""

import logging
from typing import Optional

import httpx

from reelflow.config import settings
from reelflow.errors import MergeError

logger = logging.getLogger(__name__)


class MergeClient:
    """Posts an ordered list of clip URLs and returns the merged video URL."""

    def __init__(
        self,
        base_url: str,
        endpoint: str = "/api/merge-videos",
        timeout: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.endpoint = endpoint
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=30.0),
                transport=self._transport,
            )
        return self._client

    async def merge(self, urls: list[str]) -> str:
        """Merge clips in the given order.

        Raises:
            MergeError: no URLs, transport failure or unsuccessful response
        """
        if not urls:
            raise MergeError("No valid video URLs to merge")
        logger.info("POST %s%s: merging %d videos", self.base_url, self.endpoint, len(urls))
        try:
            response = await self.client.post(self.endpoint, json={"videoUrls": urls})
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MergeError(f"Failed to merge videos: {e}") from e

        if not isinstance(data, dict):
            raise MergeError(f"Malformed merge response: HTTP {response.status_code}")
        if response.is_error or not data.get("success"):
            raise MergeError(data.get("error") or "Failed to merge videos")
        merged_url = data.get("videoUrl")
        if not merged_url:
            raise MergeError("Merge service returned no video URL")
        return merged_url

    async def close(self):
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


_merge_client: Optional[MergeClient] = None


def get_merge_client() -> MergeClient:
    """Get or create the singleton MergeClient from settings."""
    global _merge_client
    if _merge_client is None:
        _merge_client = MergeClient(
            settings.merge.base_url,
            endpoint=settings.merge.endpoint,
            timeout=settings.merge.timeout,
        )
    return _merge_client


async def close_merge_client() -> None:
    """Close the singleton MergeClient (for app shutdown)."""
    global _merge_client
    if _merge_client is not None:
        await _merge_client.close()
        _merge_client = None
