"""ArtifactFetcher — bounded download of a referenced artifact.

Bounds:
  - total wall time: ``timeout_s`` for the whole download (connect + body)
  - size: ``max_bytes``, checked against Content-Length up front and
    against the running total while streaming

Classification (``RelayFetchError.retryable``):
  transport errors, timeouts, 408/429/5xx  → retryable
  other 4xx (expired/unknown reference)    → terminal
  size limit exceeded                      → terminal
"""

from __future__ import annotations

import asyncio

import httpx

from scanrelay.constants import (
    RELAY_FETCH_TIMEOUT_S,
    RELAY_MAX_ARTIFACT_BYTES,
    RELAY_WORKERS,
    RETRYABLE_STATUSES,
)
from scanrelay.errors import RelayFetchError
from scanrelay.utils.logger import PerformanceLogger, get_logger, redact_url

logger = get_logger(__name__)


def create_fetch_client(workers: int = RELAY_WORKERS, timeout_s: float = RELAY_FETCH_TIMEOUT_S) -> httpx.AsyncClient:
    """Shared fetch client; its connection limit is the relay's only shared resource.

    One connection per worker: a worker never holds more than one download.
    """
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=workers,
            max_keepalive_connections=workers,
            keepalive_expiry=30.0,
        ),
        timeout=httpx.Timeout(timeout_s, connect=10.0),
        follow_redirects=True,
    )


class ArtifactFetcher:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        timeout_s: float = RELAY_FETCH_TIMEOUT_S,
        max_bytes: int = RELAY_MAX_ARTIFACT_BYTES,
    ) -> None:
        self._client = client
        self._timeout_s = timeout_s
        self._max_bytes = max_bytes

    async def fetch(self, url: str) -> bytes:
        """Download ``url`` and return its body.

        Raises:
            RelayFetchError: see module docstring for retryable classification.
        """
        try:
            with PerformanceLogger("artifact_fetch", logger=logger, warn_after_ms=self._timeout_s * 500):
                return await asyncio.wait_for(self._download(url), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            raise RelayFetchError(
                f"download of {redact_url(url)} exceeded {self._timeout_s}s",
                retryable=True,
            ) from None

    async def _download(self, url: str) -> bytes:
        try:
            async with self._client.stream("GET", url) as response:
                status = response.status_code
                if status >= 400:
                    raise RelayFetchError(
                        f"artifact GET {redact_url(url)} returned HTTP {status}",
                        retryable=status in RETRYABLE_STATUSES or status >= 500,
                        status_code=status,
                    )

                declared = response.headers.get("content-length")
                if declared is not None and declared.isdigit() and int(declared) > self._max_bytes:
                    raise RelayFetchError(
                        f"artifact is {declared} bytes; limit is {self._max_bytes}",
                        status_code=status,
                    )

                chunks: list[bytes] = []
                total = 0
                async for chunk in response.aiter_bytes():
                    total += len(chunk)
                    if total > self._max_bytes:
                        raise RelayFetchError(
                            f"artifact exceeded {self._max_bytes} bytes while streaming",
                            status_code=status,
                        )
                    chunks.append(chunk)
        except httpx.TimeoutException as exc:
            raise RelayFetchError(f"artifact GET timed out: {exc!r}", retryable=True) from exc
        except httpx.TransportError as exc:
            raise RelayFetchError(f"artifact host unreachable: {exc!r}", retryable=True) from exc

        logger.debug("artifact_fetched", url=redact_url(url), bytes=total)
        return b"".join(chunks)
