# app/transport/middleware.py
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.infra.logging_config import LogContext, get_logger
from app.infra.metrics import inc_counter, observe_histogram

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's X-Request-ID or mint one, and echo it back"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request.state.request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line and one counter per request"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        log = LogContext(logger, request_id=_request_id(request))
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            log.error("%s raised %s after %.1fms", route, exc.__class__.__name__,
                      (time.perf_counter() - started) * 1000, exc_info=True)
            raise

        elapsed = time.perf_counter() - started
        # Dashboards and trackers poll; successful reads stay at debug
        quiet = request.method == "GET" and response.status_code < 400
        (log.debug if quiet else log.info)(
            "%s -> %d in %.1fms", route, response.status_code, elapsed * 1000,
            extra={"status_code": response.status_code, "duration_ms": elapsed * 1000},
        )
        inc_counter("http_requests_total", method=request.method, status=str(response.status_code))
        observe_histogram("http_request_duration_seconds", elapsed, method=request.method)
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Last-resort 500 that never leaks exception text to the caller"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = _request_id(request)
            logger.error("Unhandled %s: %s", exc.__class__.__name__, exc,
                         extra={"request_id": request_id}, exc_info=True)
            inc_counter("http_unhandled_errors_total", error_type=exc.__class__.__name__)
            return JSONResponse(
                status_code=500,
                content={"error": "internal_error", "message": "Internal server error", "request_id": request_id},
            )
