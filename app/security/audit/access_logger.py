from __future__ import annotations

import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.utils.logger import add_request_context, get_logger

logger = get_logger(__name__)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Gives every request an id in ``request.state.request_id``.

    An incoming ``X-Request-ID`` is reused, otherwise one is generated; the
    id is echoed on the response.
    """

    header_name = "X-Request-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or uuid.uuid4().hex
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault(self.header_name, request_id)
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # client_ip is masked by the logging pipeline
        client_ip = request.client.host if request.client else None
        context = add_request_context(request)
        started = time.perf_counter()
        logger.info(
            "access_start",
            client_ip=client_ip,
            ua=request.headers.get("user-agent"),
            **context,
        )
        resp = await call_next(request)
        logger.info(
            "access_end",
            status_code=resp.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            client_ip=client_ip,
            **context,
        )
        return resp
