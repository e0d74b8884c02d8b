"""
Request context for the API: request id, latency and the log context
"""

import time
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from core.config import settings
from core.logging import request_id_var
import logging

logger = logging.getLogger(__name__)


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Per request:
    - request_id on request.state and in the log context (an incoming
      X-Request-ID from a proxy is reused)
    - X-Request-ID and X-API-Latency-ms response headers
    - a warning for requests slower than SLOW_REQUEST_MS
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or new_request_id()
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        start_time = time.perf_counter()

        try:
            response: Response = await call_next(request)
        finally:
            request_id_var.reset(token)

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-API-Latency-ms"] = str(latency_ms)

        if latency_ms > settings.SLOW_REQUEST_MS:
            logger.warning(
                f"[{request_id}] {request.method} {request.url.path} -> "
                f"{response.status_code} took {latency_ms} ms"
            )

        return response
