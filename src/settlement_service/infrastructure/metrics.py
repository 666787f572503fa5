import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Histogram


SETTLEMENT_REQUESTS_TOTAL = Counter(
    "settlement_requests_total",
    "Total number of payment verification requests by outcome",
    ["outcome"],
)

RATE_LIMIT_EXCEEDED_TOTAL = Counter(
    "rate_limit_exceeded_total",
    "Total number of rate limited requests",
    ["backend"],
)

GATEWAY_REQUESTS_TOTAL = Counter(
    "gateway_requests_total",
    "Total number of payment gateway calls",
    ["endpoint", "result"],
)

GATEWAY_TOKEN_EXCHANGES_TOTAL = Counter(
    "gateway_token_exchanges_total",
    "Total number of client-credentials token exchanges",
)

LEDGER_CONFLICT_RETRIES_TOTAL = Counter(
    "ledger_conflict_retries_total",
    "Total settlement transactions retried after an optimistic lock conflict",
)

NOTIFICATIONS_TOTAL = Counter(
    "sale_notifications_total",
    "Total sale notifications dispatched",
    ["result"],
)

SETTLEMENT_DURATION_SECONDS = Histogram(
    "settlement_duration_seconds",
    "Payment verification and settlement duration",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0],
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    ["method", "route", "status_code"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "route", "status_code"],
)


P = ParamSpec("P")
R = TypeVar("R")


def track_settlement_duration(
    func: Callable[P, Awaitable[R]],
) -> Callable[P, Awaitable[R]]:
    @wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        start = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            duration = time.perf_counter() - start
            SETTLEMENT_DURATION_SECONDS.observe(duration)

    return wrapper
