"""Intake body size cap for the relay.

Delivery jobs are three short strings; anything over MAX_INTAKE_BODY_BYTES
is rejected with HTTP 413 before the route handler runs.
  1. Content-Length fast path: reject on the declared size, no body read.
  2. Chunked / no Content-Length: accumulate with a rolling cap.
"""

from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from scanrelay.constants import MAX_INTAKE_BODY_BYTES
from scanrelay.utils.logger import get_logger

logger = get_logger(__name__)

_PAYLOAD_TOO_LARGE_BODY: dict = {
    "error": {
        "code": "PAYLOAD_TOO_LARGE",
        "message": f"Request body too large. Maximum size: {MAX_INTAKE_BODY_BYTES} bytes",
    }
}

_INVALID_CONTENT_LENGTH_BODY: dict = {
    "error": {
        "code": "INVALID_JOB",
        "message": "Invalid Content-Length header",
    }
}


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Starlette middleware enforcing the intake body cap.

    Content-Length == limit is accepted; limit + 1 is rejected.
    """

    def __init__(self, app, max_body_bytes: int = MAX_INTAKE_BODY_BYTES) -> None:
        super().__init__(app)
        self._max_body_bytes = max_body_bytes

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        content_length_header = request.headers.get("content-length")

        if content_length_header is not None:
            try:
                declared_size = int(content_length_header)
            except ValueError:
                logger.warning("Invalid Content-Length header", value=content_length_header, path=request.url.path)
                return JSONResponse(status_code=400, content=_INVALID_CONTENT_LENGTH_BODY)

            if declared_size > self._max_body_bytes:
                logger.warning(
                    "Request body too large (Content-Length)",
                    declared_size=declared_size,
                    limit=self._max_body_bytes,
                    path=request.url.path,
                )
                return JSONResponse(status_code=413, content=_PAYLOAD_TOO_LARGE_BODY)
            return await call_next(request)

        body_chunks: list[bytes] = []
        total_size = 0
        async for chunk in request.stream():
            total_size += len(chunk)
            if total_size > self._max_body_bytes:
                logger.warning(
                    "Request body too large (chunked)",
                    accumulated_size=total_size,
                    limit=self._max_body_bytes,
                    path=request.url.path,
                )
                return JSONResponse(status_code=413, content=_PAYLOAD_TOO_LARGE_BODY)
            body_chunks.append(chunk)

        # Starlette's Request.body() returns request._body when set, so the
        # route handler can re-read the consumed stream.
        request._body = b"".join(body_chunks)  # type: ignore[attr-defined]
        return await call_next(request)
