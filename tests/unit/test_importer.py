"""Unit tests for DownstreamImporter (httpx.MockTransport, no network)."""

from __future__ import annotations

import json

import httpx
import pytest

from scanrelay.config import DownstreamConfig
from scanrelay.downstream.importer import DownstreamImporter, create_downstream_client
from scanrelay.errors import ConfigError, RelayImportError


def _importer(handler, **config_kwargs) -> DownstreamImporter:
    config = DownstreamConfig(url="http://dojo.test", api_token="test-token", **config_kwargs)
    client = httpx.AsyncClient(
        base_url=config.url,
        headers={"Authorization": f"Token {config.api_token}"},
        transport=httpx.MockTransport(handler),
    )
    return DownstreamImporter(config, client=client)


class TestConstruction:
    def test_requires_url_without_client(self) -> None:
        with pytest.raises(ConfigError, match="downstream.url"):
            DownstreamImporter(DownstreamConfig())

    @pytest.mark.asyncio
    async def test_client_carries_token_and_base_url(self) -> None:
        client = create_downstream_client(DownstreamConfig(url="http://dojo.test", api_token="abc"))
        try:
            assert client.headers["Authorization"] == "Token abc"
            assert str(client.base_url) == "http://dojo.test"
        finally:
            await client.aclose()

    def test_needs_content_only_for_multipart(self) -> None:
        assert _importer(lambda r: httpx.Response(201)).needs_content is True
        assert _importer(lambda r: httpx.Response(201), mode="reference").needs_content is False


class TestMultipartImport:
    @pytest.mark.asyncio
    async def test_uploads_file_with_form_fields(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"test": 17, "scan_type": "Gitleaks Scan"})

        importer = _importer(handler, extra_fields={"active": "true"})
        body = await importer.import_scan(
            scan_type="Gitleaks Scan",
            engagement="42",
            content=b'[{"RuleID": "aws-access-token"}]',
            filename="gitleaks-report.json",
        )

        assert body["test"] == 17
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/api/v2/import-scan/"
        assert request.headers["Authorization"] == "Token test-token"
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        assert b'name="scan_type"' in request.content
        assert b"Gitleaks Scan" in request.content
        assert b'name="engagement"' in request.content
        assert b'name="active"' in request.content
        assert b'filename="gitleaks-report.json"' in request.content
        assert b"aws-access-token" in request.content

    @pytest.mark.asyncio
    async def test_multipart_without_content_is_rejected(self) -> None:
        importer = _importer(lambda r: httpx.Response(201))
        with pytest.raises(ValueError):
            await importer.import_scan(scan_type="ZAP Scan", engagement="42", file_url="http://x/a")


class TestReferenceImport:
    @pytest.mark.asyncio
    async def test_sends_file_url_as_json(self) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(201, json={"test": 3})

        importer = _importer(handler, mode="reference")
        await importer.import_scan(
            scan_type="Trivy Scan", engagement="42", file_url="https://s3.test/r.json?sig=x"
        )
        assert seen == [
            {"scan_type": "Trivy Scan", "engagement": "42", "file_url": "https://s3.test/r.json?sig=x"}
        ]

    @pytest.mark.asyncio
    async def test_non_json_success_body_returns_empty_dict(self) -> None:
        importer = _importer(lambda r: httpx.Response(204), mode="reference")
        assert await importer.import_scan(scan_type="s", engagement="1", file_url="http://x/a") == {}


class TestFailureClassification:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    async def test_transient_statuses_are_retryable(self, status: int) -> None:
        importer = _importer(lambda r: httpx.Response(status, text="busy"))
        with pytest.raises(RelayImportError) as exc_info:
            await importer.import_scan(scan_type="s", engagement="1", content=b"x")
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    async def test_client_errors_are_terminal(self, status: int) -> None:
        importer = _importer(lambda r: httpx.Response(status, json={"detail": "nope"}))
        with pytest.raises(RelayImportError) as exc_info:
            await importer.import_scan(scan_type="s", engagement="1", content=b"x")
        assert exc_info.value.retryable is False
        assert f"HTTP {status}" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        importer = _importer(handler)
        with pytest.raises(RelayImportError) as exc_info:
            await importer.import_scan(scan_type="s", engagement="1", content=b"x")
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        importer = _importer(handler)
        with pytest.raises(RelayImportError, match="timed out") as exc_info:
            await importer.import_scan(scan_type="s", engagement="1", content=b"x")
        assert exc_info.value.retryable is True


class TestClose:
    @pytest.mark.asyncio
    async def test_injected_client_left_open(self) -> None:
        importer = _importer(lambda r: httpx.Response(201))
        await importer.close()
        assert not importer._client.is_closed
        await importer._client.aclose()
