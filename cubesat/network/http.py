"""HTTP client for a remote cubesat block server.

Handles transport with retry logic and exponential backoff.
"""

import asyncio
import logging
from typing import Any

import httpx

from ..errors import CorruptContent, NetworkUnavailable, NotFound
from ..hashing import content_hash, is_fingerprint
from .base import Network

logger = logging.getLogger(__name__)


class HTTPNetwork(Network):
    """Network backed by a block server (see ``cubesat.server``).

    Server errors, timeouts and refused connections are retried with
    exponential backoff; client errors are not retried.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the HTTP network.

        Args:
            url: Base URL of the block server (e.g., "http://peer:8765").
            timeout: Request timeout in seconds.
            max_retries: Maximum attempts per request.
            transport: Optional httpx transport (used to mount an app in-process).
        """
        self.url = url
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport
        self._consecutive_failures = 0

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
    ) -> httpx.Response:
        """Make HTTP request with exponential backoff retry.

        Args:
            method: HTTP method (GET, POST).
            path: URL path to append to the base URL.
            json_data: Optional JSON body.

        Returns:
            The first response that is not a server error.

        Raises:
            NetworkUnavailable: All attempts failed.
        """
        if not self.url:
            raise NetworkUnavailable("No network URL configured")

        url = f"{self.url.rstrip('/')}{path}"
        backoff = 1.0

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(self.max_retries):
                try:
                    if method == "GET":
                        response = await client.get(url)
                    elif method == "POST":
                        response = await client.post(url, json=json_data)
                    else:
                        raise ValueError(f"Unsupported method: {method}")

                    if response.status_code < 500:
                        self._consecutive_failures = 0
                        return response

                    logger.warning(
                        f"Server error {response.status_code}, "
                        f"attempt {attempt + 1}/{self.max_retries}"
                    )

                except httpx.ConnectError:
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.HTTPError as e:
                    self._consecutive_failures += 1
                    raise NetworkUnavailable(f"Request error: {e}") from e

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        raise NetworkUnavailable(
            f"{method} {url} failed: max retries ({self.max_retries}) exceeded"
        )

    async def put_block(self, block: dict[str, Any]) -> str:
        response = await self._request_with_retry("POST", "/api/blocks", block)
        if response.status_code != 200:
            raise NetworkUnavailable(f"HTTP {response.status_code}: {response.text}")

        fingerprint = response.json()["fingerprint"]
        if fingerprint != content_hash(block):
            raise CorruptContent(
                f"Server stored block as {fingerprint}, expected {content_hash(block)}"
            )
        return fingerprint

    async def get_block(self, fingerprint: str) -> dict[str, Any]:
        if not is_fingerprint(fingerprint):
            raise NotFound(f"Malformed fingerprint: {fingerprint!r}")

        response = await self._request_with_retry("GET", f"/api/blocks/{fingerprint}")
        if response.status_code == 404:
            raise NotFound(f"Block {fingerprint} not found.")
        if response.status_code != 200:
            raise NetworkUnavailable(f"HTTP {response.status_code}: {response.text}")
        return response.json()

    async def has_block(self, fingerprint: str) -> bool:
        response = await self._request_with_retry(
            "GET", f"/api/blocks/{fingerprint}/exists"
        )
        if response.status_code != 200:
            raise NetworkUnavailable(f"HTTP {response.status_code}: {response.text}")
        return bool(response.json().get("exists"))

    def get_status(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "consecutive_failures": self._consecutive_failures,
        }
