"""
Client for the Electrs-style indexing service.

One request per call: no caching and no retries. Every failure surfaces as
an UpstreamError carrying the failing path.
"""
import asyncio
import json
from typing import Any, Optional

import aiohttp
import structlog

from monitoring.metrics import UPSTREAM_ERRORS, endpoint_label
from error_handling.errors import UpstreamError

logger = structlog.get_logger()


class ElectrsClient:
    def __init__(self, base_url: str, timeout: float = 10.0):
        """Initialize the client with the service base URL and per-call timeout."""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        """Open the HTTP session."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            logger.info("upstream_session_opened", base_url=self.base_url)

    async def close(self) -> None:
        """Close the HTTP session."""
        if self.session is not None and not self.session.closed:
            await self.session.close()
            logger.info("upstream_session_closed", base_url=self.base_url)
        self.session = None

    async def fetch(self, path: str) -> Any:
        """
        GET a path from the indexing service.

        Args:
            path: Endpoint path starting with "/", e.g. "/blocks/tip/height"

        Returns:
            The decoded JSON body. Plain-text bodies that are not JSON
            (a block hash from /block-height/<n>) are returned as str.

        Raises:
            UpstreamError: on network error, timeout or non-2xx status
        """
        if self.session is None or self.session.closed:
            await self.connect()

        url = f"{self.base_url}{path}"
        try:
            async with self.session.get(url) as response:
                body = await response.text()
                if response.status >= 300:
                    raise UpstreamError(
                        path,
                        f"HTTP {response.status}: {body[:200]}",
                        status=response.status
                    )
        except UpstreamError as e:
            self._record_failure(e)
            raise
        except asyncio.TimeoutError:
            error = UpstreamError(path, f"timed out after {self.timeout}s")
            self._record_failure(error)
            raise error
        except aiohttp.ClientError as e:
            error = UpstreamError(path, str(e) or type(e).__name__)
            self._record_failure(error)
            raise error from e

        try:
            return json.loads(body)
        except ValueError:
            return body.strip()

    def _record_failure(self, error: UpstreamError) -> None:
        UPSTREAM_ERRORS.labels(endpoint=endpoint_label(error.path)).inc()
        logger.error("upstream_request_failed",
                     path=error.path,
                     status=error.status,
                     error=error.message)
