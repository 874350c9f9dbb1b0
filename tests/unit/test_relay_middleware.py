"""Unit tests for the relay intake body size cap.

BodySizeLimitMiddleware is exercised on a minimal Starlette app, so these
tests confirm behaviour without the worker pool or any route logic.
"""

from __future__ import annotations

import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.testclient import TestClient

from scanrelay.constants import MAX_INTAKE_BODY_BYTES
from scanrelay.relay.middleware import BodySizeLimitMiddleware


async def _echo_body(request: Request) -> Response:
    body = await request.body()
    return JSONResponse({"received_bytes": len(body)})


def _make_test_app(max_body_bytes: int = MAX_INTAKE_BODY_BYTES) -> Starlette:
    app = Starlette(routes=[Route("/import", _echo_body, methods=["POST"])])
    app.add_middleware(BodySizeLimitMiddleware, max_body_bytes=max_body_bytes)
    return app


@pytest.fixture()
def client() -> TestClient:
    return TestClient(_make_test_app(), raise_server_exceptions=True)


class TestContentLengthFastPath:
    def test_body_at_limit_is_accepted(self, client: TestClient) -> None:
        response = client.post("/import", content=b"x" * MAX_INTAKE_BODY_BYTES)
        assert response.status_code == 200
        assert response.json()["received_bytes"] == MAX_INTAKE_BODY_BYTES

    def test_one_byte_over_limit_is_rejected(self, client: TestClient) -> None:
        response = client.post("/import", content=b"x" * (MAX_INTAKE_BODY_BYTES + 1))
        assert response.status_code == 413
        assert response.json()["error"]["code"] == "PAYLOAD_TOO_LARGE"

    def test_invalid_content_length(self, client: TestClient) -> None:
        response = client.post(
            "/import",
            content=b"{}",
            headers={"content-length": "lots"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_JOB"


class TestChunkedBody:
    def test_small_chunked_body_is_readable_by_handler(self) -> None:
        client = TestClient(_make_test_app(max_body_bytes=100))

        def chunks():
            yield b"a" * 40
            yield b"b" * 40

        response = client.post("/import", content=chunks())
        assert response.status_code == 200
        assert response.json()["received_bytes"] == 80

    def test_chunked_body_over_limit_is_rejected(self) -> None:
        client = TestClient(_make_test_app(max_body_bytes=100))

        def chunks():
            for _ in range(5):
                yield b"x" * 40

        response = client.post("/import", content=chunks())
        assert response.status_code == 413
