import time
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request, Response
from ulid import ULID

from settlement_service.infrastructure.metrics import HTTP_REQUEST_DURATION, HTTP_REQUESTS_TOTAL


logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"


async def request_context_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    """Bind a correlation id to every log line of the request and record HTTP metrics."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(ULID())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    start_time = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
    finally:
        duration = time.perf_counter() - start_time
        route = request.scope.get("route")
        route_path = getattr(route, "path", "unmatched")
        HTTP_REQUEST_DURATION.labels(
            method=request.method,
            route=route_path,
            status_code=str(status_code),
        ).observe(duration)
        HTTP_REQUESTS_TOTAL.labels(
            method=request.method,
            route=route_path,
            status_code=str(status_code),
        ).inc()
        logger.info("request_completed", status_code=status_code, duration_ms=round(duration * 1000, 2))
        structlog.contextvars.clear_contextvars()
