import asyncio
import contextlib
from typing import Protocol

import httpx
import structlog

from settlement_service.domain.models import SaleNotice
from settlement_service.infrastructure.metrics import NOTIFICATIONS_TOTAL


logger = structlog.get_logger()


class Notifier(Protocol):
    async def send_sale_notice(self, notice: SaleNotice) -> None: ...


class LoggingNotifier:
    """Records sale notices in the log when no delivery channel is configured."""

    async def send_sale_notice(self, notice: SaleNotice) -> None:
        logger.info(
            "sale_notice",
            settlement_id=notice.settlement_id,
            order_id=notice.gateway_order_id,
            product_id=notice.product_id,
            seller_id=notice.seller_id,
            amount=notice.amount,
            currency=notice.currency,
        )


class EmailJsNotifier:
    """Sends buyer/seller sale emails through an EmailJS-compatible HTTP endpoint."""

    def __init__(
        self,
        api_url: str,
        service_id: str,
        template_id: str,
        user_id: str,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_url = api_url
        self._service_id = service_id
        self._template_id = template_id
        self._user_id = user_id
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def send_sale_notice(self, notice: SaleNotice) -> None:
        response = await self._http.post(
            self._api_url,
            json={
                "service_id": self._service_id,
                "template_id": self._template_id,
                "user_id": self._user_id,
                "template_params": {
                    "buyer_name": notice.buyer_name or "",
                    "buyer_email": notice.buyer_email or "",
                    "product_id": notice.product_id,
                    "seller_id": notice.seller_id,
                    "order_id": notice.gateway_order_id,
                    "amount": notice.amount,
                    "currency": notice.currency,
                },
            },
        )
        if not response.is_success:
            logger.error(
                "sale_notice_rejected",
                settlement_id=notice.settlement_id,
                status_code=response.status_code,
                body=response.text[:500],
            )
            response.raise_for_status()


class NotificationDispatcher:
    """
    Fire-and-forget delivery of sale notices.

    Each notice is sent from its own task; failures are logged and counted but
    never propagate to the request that scheduled them.
    """

    def __init__(self, notifier: Notifier) -> None:
        self._notifier = notifier
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, notice: SaleNotice) -> None:
        task = asyncio.create_task(self._deliver(notice))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, notice: SaleNotice) -> None:
        try:
            await self._notifier.send_sale_notice(notice)
        except Exception as e:
            NOTIFICATIONS_TOTAL.labels(result="failed").inc()
            logger.error(
                "sale_notice_failed",
                settlement_id=notice.settlement_id,
                order_id=notice.gateway_order_id,
                error=str(e),
                exc_info=True,
            )
            return
        NOTIFICATIONS_TOTAL.labels(result="sent").inc()
        logger.info("sale_notice_sent", settlement_id=notice.settlement_id)

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight notices, cancelling whatever is left after ``timeout``."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if pending:
            logger.warning("sale_notices_cancelled", count=len(pending))
