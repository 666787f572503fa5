import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from settlement_service.api.http_app import ReadinessCheck, create_app
from settlement_service.api.servers import BackgroundServer, create_metrics_app
from settlement_service.application.ledger import SettlementLedger
from settlement_service.application.price_oracle import CatalogPriceOracle
from settlement_service.application.services import SettlementPipeline, SettlementPolicy
from settlement_service.config import Settings, settings
from settlement_service.domain.models import OrderStatus
from settlement_service.infrastructure.auth import JwtAuthenticator
from settlement_service.infrastructure.database import Database
from settlement_service.infrastructure.gateway import PayPalGatewayClient
from settlement_service.infrastructure.notifier import (
    EmailJsNotifier,
    LoggingNotifier,
    NotificationDispatcher,
    Notifier,
)
from settlement_service.infrastructure.rate_limiter import (
    InMemorySlidingWindowRateLimiter,
    RateLimiter,
    RedisSlidingWindowRateLimiter,
)
from settlement_service.infrastructure.redis_client import RedisClient
from settlement_service.logging import configure_logging


logger = structlog.get_logger()


def build_app(config: Settings) -> FastAPI:
    database = Database(config.database_url)
    redis_client = RedisClient(config.redis_url) if config.rate_limit_backend == "redis" else None

    gateway = PayPalGatewayClient(
        base_url=config.resolved_gateway_base_url,
        client_id=config.gateway_client_id,
        client_secret=config.gateway_client_secret.get_secret_value(),
        timeout_seconds=config.gateway_timeout_seconds,
        retry_backoff_seconds=config.gateway_retry_backoff_seconds,
        token_expiry_margin_seconds=config.gateway_token_expiry_margin_seconds,
    )

    notifier: Notifier
    service_id, template_id, user_id = config.emailjs_service_id, config.emailjs_template_id, config.emailjs_user_id
    if service_id and template_id and user_id:
        notifier = EmailJsNotifier(
            api_url=config.emailjs_api_url,
            service_id=service_id,
            template_id=template_id,
            user_id=user_id,
            timeout_seconds=config.notification_timeout_seconds,
        )
    else:
        notifier = LoggingNotifier()
    dispatcher = NotificationDispatcher(notifier) if config.notifications_enabled else None

    rate_limiter: RateLimiter | None = None
    if config.rate_limit_enabled and redis_client is None:
        rate_limiter = InMemorySlidingWindowRateLimiter(
            max_requests=config.rate_limit_max_requests,
            window_seconds=config.rate_limit_window_seconds,
        )

    pipeline = SettlementPipeline(
        authenticator=JwtAuthenticator(
            secret=config.auth_jwt_secret.get_secret_value(),
            algorithms=config.auth_jwt_algorithms,
            audience=config.auth_jwt_audience,
            issuer=config.auth_jwt_issuer,
        ),
        rate_limiter=rate_limiter,
        price_oracle=CatalogPriceOracle(database, default_currency=config.default_currency),
        gateway=gateway,
        ledger=SettlementLedger(
            database,
            max_retries=config.settlement_max_retries,
            base_delay=config.settlement_base_delay_seconds,
            max_delay=config.settlement_max_delay_seconds,
        ),
        dispatcher=dispatcher,
        policy=SettlementPolicy(
            commission_rate=config.commission_rate,
            accepted_statuses=frozenset(OrderStatus(status) for status in config.accepted_order_statuses),
        ),
    )

    readiness_checks: dict[str, ReadinessCheck] = {"database": database.ping}
    if redis_client is not None:
        readiness_checks["redis"] = redis_client.health_check

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        metrics_server: BackgroundServer | None = None
        if config.metrics_enabled:
            metrics_server = BackgroundServer(
                create_metrics_app(),
                name="metrics",
                host=config.metrics_host,
                port=config.metrics_port,
            )
            await metrics_server.start()

        if redis_client is not None:
            await redis_client.connect()
            if config.rate_limit_enabled:
                pipeline.use_rate_limiter(
                    RedisSlidingWindowRateLimiter(
                        redis_client=redis_client.client,
                        max_requests=config.rate_limit_max_requests,
                        window_seconds=config.rate_limit_window_seconds,
                    )
                )

        logger.info(
            "settlement_service_ready",
            gateway_env=config.gateway_env,
            rate_limit_backend=config.rate_limit_backend if config.rate_limit_enabled else None,
            accepted_statuses=config.accepted_order_statuses,
            commission_rate=str(config.commission_rate),
        )
        try:
            yield
        finally:
            logger.info("shutting_down")
            if dispatcher is not None:
                await dispatcher.drain()
            await gateway.close()
            if isinstance(notifier, EmailJsNotifier):
                await notifier.close()
            if metrics_server is not None:
                await metrics_server.stop()
            if redis_client is not None:
                await redis_client.close()
            await database.close()

    return create_app(pipeline, readiness_checks=readiness_checks, lifespan=lifespan)


async def main() -> None:
    configure_logging(
        level=settings.log_level,
        log_format=settings.log_format,
    )

    logger.info(
        "starting_settlement_service",
        http_port=settings.http_port,
        metrics_port=settings.metrics_port,
        log_level=settings.log_level,
        gateway_env=settings.gateway_env,
        metrics_enabled=settings.metrics_enabled,
    )

    app = build_app(settings)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=settings.http_host,
            port=settings.http_port,
            log_config=None,
            access_log=False,
            lifespan="on",
        )
    )
    await server.serve()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
