from __future__ import annotations

import logging
import time
from typing import Callable, Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

log = logging.getLogger("evault.api")

REQUEST_ID_HEADER = "X-Request-ID"


def _accept_request_id(value: Optional[str], max_len: int) -> str:
    if value and len(value) <= max_len and value.isprintable():
        return value
    return uuid4().hex


class VaultRequestMiddleware(BaseHTTPMiddleware):
    """Per-request bookkeeping for the vault API.

    - tags request and response with X-Request-ID
    - marks every response `Cache-Control: no-store`
    - emits one `api_request` log line

    Security notes:
    - A client-supplied request id survives only if short and printable,
      so it can't be used for log injection.
    - Responses may describe evidence (metadata, custody details); they
      must never sit in an HTTP cache.
    - Bodies, query strings and upload names are never logged.

    """

    def __init__(self, app, *, max_request_id_len: int = 128):
        super().__init__(app)
        self._max_len = max_request_id_len

    async def dispatch(self, request: Request, call_next: Callable):
        request.state.request_id = _accept_request_id(
            request.headers.get(REQUEST_ID_HEADER), self._max_len
        )
        start = time.monotonic()
        response: Optional[Response] = None
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request.state.request_id
            response.headers["Cache-Control"] = "no-store"
            return response
        finally:
            log.info(
                "api_request",
                extra={
                    "request_id": request.state.request_id,
                    "caller_id": getattr(request.state, "caller_id", None),
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": getattr(response, "status_code", None),
                    "duration_ms": int((time.monotonic() - start) * 1000),
                },
            )
