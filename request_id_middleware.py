"""Middleware that gives every request a correlation id.

An inbound ``X-Request-ID`` is reused when present (e.g. set by the frontend
or a proxy), otherwise a new one is generated. The id, method and path are
bound into structlog contextvars so every log line of the request carries
them, and the id is echoed back in the response header.
"""
from __future__ import annotations

import re
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from structlog.contextvars import bind_contextvars, clear_contextvars

# Accept only short opaque ids from clients
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


class RequestIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "X-Request-ID") -> None:  # type: ignore[override]
        super().__init__(app)
        self.header_name = header_name

    def _request_id_for(self, request: Request) -> str:
        inbound = request.headers.get(self.header_name)
        if inbound and _VALID_REQUEST_ID.match(inbound):
            return inbound
        return uuid.uuid4().hex

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:  # type: ignore[override]
        request_id = self._request_id_for(request)
        clear_contextvars()
        bind_contextvars(request_id=request_id, method=request.method, path=request.url.path)
        request.state.request_id = request_id

        try:
            response: Response = await call_next(request)
        finally:
            clear_contextvars()

        response.headers[self.header_name] = request_id
        return response
