"""
Request logging middleware: binds the caller and the trip / day being edited
to every structlog line emitted while a request is handled.
"""
import re
import time
import uuid
from typing import Callable, Dict, Optional
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
import structlog


logger = structlog.get_logger(__name__)

_RESOURCE_PATTERNS = {
    "trip_id": re.compile(r"/trips/(\d+)"),
    "day_id": re.compile(r"/days/(\d+)"),
    "day_poi_id": re.compile(r"/day-pois/(\d+)"),
}


def resource_ids(path: str) -> Dict[str, int]:
    """Numeric trip / day / day-POI ids found in a request path"""
    found = {}
    for key, pattern in _RESOURCE_PATTERNS.items():
        match = pattern.search(path)
        if match:
            found[key] = int(match.group(1))
    return found


def caller_id(request: Request) -> Optional[str]:
    return request.headers.get("X-User-Id") or request.query_params.get("user_id")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Correlates logs per request. An inbound X-Request-ID is reused so a
    frontend retry can be traced across attempts; otherwise one is generated.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        path = request.url.path

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=path,
            user_id=caller_id(request),
            **resource_ids(path),
        )

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "http_request_failed",
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers["X-Request-ID"] = request_id

        # SSE bodies are still being produced here; only time-to-headers is known
        if response.headers.get("content-type", "").startswith("text/event-stream"):
            logger.info("http_stream_opened", status_code=response.status_code, duration_ms=elapsed_ms)
        elif response.status_code >= 500:
            logger.warning("http_request_completed", status_code=response.status_code, duration_ms=elapsed_ms)
        else:
            logger.info("http_request_completed", status_code=response.status_code, duration_ms=elapsed_ms)

        return response
