"""Request size limits for write endpoints.

Telemetry messages are small, single JSON objects; anything far larger than a
message is rejected before JSON parsing to keep one request from spiking
CPU/memory in the ingest path.
"""

from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..observability import get_request_id


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject POST/PUT/PATCH bodies larger than `max_body_bytes` with a 413.

    Only paths starting with one of `paths` are checked (all paths when empty).
    """

    def __init__(self, app, *, max_body_bytes: int, paths: list[str] | None = None) -> None:
        super().__init__(app)
        self.max_body_bytes = int(max_body_bytes)
        self.paths = paths or []

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method.upper() not in {"POST", "PUT", "PATCH"}:
            return await call_next(request)

        if self.paths and not any(request.url.path.startswith(p) for p in self.paths):
            return await call_next(request)

        if self.max_body_bytes <= 0:
            return await call_next(request)

        cl = request.headers.get("content-length")
        if cl:
            try:
                if int(cl) > self.max_body_bytes:
                    return _payload_too_large(max_bytes=self.max_body_bytes)
            except ValueError:
                # Malformed header; fall back to reading the body.
                pass

        body = await request.body()
        if len(body) > self.max_body_bytes:
            return _payload_too_large(max_bytes=self.max_body_bytes)

        # Starlette caches request.body(); keep it so downstream can parse.
        request._body = body  # type: ignore[attr-defined]
        return await call_next(request)


def _payload_too_large(*, max_bytes: int) -> JSONResponse:
    rid = get_request_id() or "unknown"
    return JSONResponse(
        status_code=413,
        content={
            "error": {
                "code": "PAYLOAD_TOO_LARGE",
                "message": "Request body exceeds configured limit.",
                "max_request_body_bytes": max_bytes,
                "request_id": rid,
            }
        },
        headers={"X-Request-ID": rid},
    )
