"""DownstreamImporter — client for the vulnerability-management "import scan" API.

Defaults match DefectDojo:

    POST {url}/api/v2/import-scan/
    Authorization: Token <api_token>

Two request shapes, selected by ``downstream.mode``:

  multipart  file bytes uploaded as ``file`` with ``scan_type`` and
             ``engagement`` form fields (DefectDojo's native shape)
  reference  JSON body ``{scan_type, engagement, file_url}``; the downstream
             system downloads the artifact itself

The importer makes exactly one call per ``import_scan()``. Retry policy lives
with the callers (relay workers, DIRECT dispatch); this module only
classifies failures via ``RelayImportError.retryable``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

import httpx

from scanrelay.constants import RETRYABLE_STATUSES
from scanrelay.errors import ConfigError, RelayImportError
from scanrelay.utils.logger import get_logger, redact_url

if TYPE_CHECKING:
    from scanrelay.config import DownstreamConfig

logger = get_logger(__name__)

# Characters of a downstream error body kept in the error message.
_ERROR_BODY_PREVIEW = 300


def create_downstream_client(config: "DownstreamConfig") -> httpx.AsyncClient:
    """Create the httpx.AsyncClient used for downstream imports.

    Created once by the owner (relay lifespan, dispatcher) and closed by it.
    """
    headers = {"Accept": "application/json"}
    if config.api_token:
        headers["Authorization"] = f"Token {config.api_token}"
    return httpx.AsyncClient(
        base_url=config.url,
        headers=headers,
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        timeout=httpx.Timeout(config.timeout_s, connect=10.0),
        follow_redirects=False,
    )


class DownstreamImporter:
    def __init__(self, config: "DownstreamConfig", client: Optional[httpx.AsyncClient] = None) -> None:
        if not config.url and client is None:
            raise ConfigError("downstream.url is required to import reports")
        self._config = config
        self._client = client or create_downstream_client(config)
        self._owns_client = client is None

    @property
    def mode(self) -> str:
        return self._config.mode

    @property
    def needs_content(self) -> bool:
        """True when import_scan() must be given the artifact bytes."""
        return self._config.mode == "multipart"

    async def import_scan(
        self,
        *,
        scan_type: str,
        engagement: str,
        file_url: Optional[str] = None,
        content: Optional[bytes] = None,
        filename: str = "report",
    ) -> dict[str, Any]:
        """Import one report. Returns the downstream JSON body (``{}`` if none).

        Raises:
            RelayImportError: transport failure or non-2xx response.
                ``retryable`` is True for transport errors, timeouts and
                408/429/5xx; False for every other status.
        """
        fields = {
            **self._config.extra_fields,
            "scan_type": scan_type,
            "engagement": engagement,
        }
        try:
            if self._config.mode == "multipart":
                if content is None:
                    raise ValueError("multipart import requires the report content")
                response = await self._client.post(
                    self._config.import_path,
                    data=fields,
                    files={"file": (filename, content)},
                )
            else:
                if not file_url:
                    raise ValueError("reference import requires file_url")
                response = await self._client.post(
                    self._config.import_path,
                    json={**fields, "file_url": file_url},
                )
        except httpx.TimeoutException as exc:
            raise RelayImportError(f"downstream import timed out: {exc!r}", retryable=True) from exc
        except httpx.TransportError as exc:
            raise RelayImportError(f"downstream unreachable: {exc!r}", retryable=True) from exc

        if response.is_success:
            logger.info(
                "downstream_import_ok",
                scan_type=scan_type,
                engagement=engagement,
                status=response.status_code,
                mode=self._config.mode,
                file_url=redact_url(file_url) if file_url else None,
            )
            return _json_or_empty(response)

        status = response.status_code
        preview = response.text[:_ERROR_BODY_PREVIEW]
        raise RelayImportError(
            f"downstream import returned HTTP {status}: {preview}",
            retryable=status in RETRYABLE_STATUSES or status >= 500,
            status_code=status,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"result": body}
