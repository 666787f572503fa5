from collections.abc import Awaitable, Callable, Mapping
from contextlib import AbstractAsyncContextManager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from settlement_service.api.middleware import request_context_middleware
from settlement_service.application.services import (
    PipelineState,
    SettlementPipeline,
    VerifyPaymentCommand,
    VerifyPaymentResult,
)
from settlement_service.domain.exceptions import (
    ClientError,
    RateLimitError,
    ReconciliationError,
    SettlementError,
)


logger = structlog.get_logger()

ReadinessCheck = Callable[[], Awaitable[bool]]

HTTP_ERROR_CODES = {
    404: "not_found",
    405: "method_not_allowed",
}


def _bearer_token(header: str | None) -> str | None:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _field(body: Mapping[str, Any], *names: str) -> str | None:
    for name in names:
        value = body.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


async def _read_body(request: Request) -> Mapping[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _success_body(result: VerifyPaymentResult) -> dict[str, Any]:
    if result.state == PipelineState.ALREADY_SETTLED:
        return {
            "success": True,
            "alreadySettled": True,
            "orderId": result.order_id,
            "settlementId": result.settlement_id,
        }
    return {
        "success": True,
        "orderId": result.order_id,
        "amount": result.amount,
        "currency": result.currency,
        "sellerCredit": result.seller_credit,
        "buyer": {"name": result.buyer_name, "email": result.buyer_email},
        "settlementId": result.settlement_id,
    }


def error_response(error: SettlementError) -> JSONResponse:
    """Render a pipeline failure without leaking upstream or internal details."""
    content: dict[str, Any] = {"error": error.error_code}
    headers: dict[str, str] = {}

    if isinstance(error, ClientError | ReconciliationError) and error.detail:
        content["detail"] = error.detail
    if isinstance(error, ReconciliationError) and error.observed_status:
        content["status"] = error.observed_status
    if isinstance(error, RateLimitError):
        headers["Retry-After"] = str(error.retry_after)

    return JSONResponse(status_code=error.http_status, content=content, headers=headers or None)


def create_app(
    pipeline: SettlementPipeline,
    readiness_checks: Mapping[str, ReadinessCheck] | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[None]] | None = None,
) -> FastAPI:
    """Create the public payment verification API."""
    app = FastAPI(
        title="Settlement Service",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.middleware("http")(request_context_middleware)
    checks = dict(readiness_checks or {})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        code = HTTP_ERROR_CODES.get(exc.status_code, "bad_request" if exc.status_code < 500 else "internal_error")
        return JSONResponse(status_code=exc.status_code, content={"error": code}, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_exception", error=str(exc), exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "internal_error"})

    @app.post("/api/verify-payment")
    async def verify_payment(request: Request) -> JSONResponse:
        """Verify a gateway order and settle it to the seller's balance."""
        body = await _read_body(request)
        cmd = VerifyPaymentCommand(
            bearer_token=_bearer_token(request.headers.get("authorization")),
            order_id=_field(body, "orderId", "orderID"),
            product_id=_field(body, "productId"),
        )
        try:
            result = await pipeline.verify_payment(cmd)
        except SettlementError as e:
            if e.http_status >= 500:
                logger.error("verification_failed", error_code=e.error_code, error=str(e))
            return error_response(e)
        return JSONResponse(status_code=200, content=_success_body(result))

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready() -> JSONResponse:
        results: dict[str, str] = {}
        for name, check in checks.items():
            try:
                ok = await check()
            except Exception as e:
                logger.warning("readiness_check_failed", check=name, error=str(e))
                ok = False
            results[name] = "ok" if ok else "unavailable"
        ready_ = all(value == "ok" for value in results.values())
        return JSONResponse(
            status_code=200 if ready_ else 503,
            content={"status": "ready" if ready_ else "not_ready", "checks": results},
        )

    return app
