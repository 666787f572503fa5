from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

import structlog

from settlement_service.application.ledger import SettlementLedger
from settlement_service.application.price_oracle import PriceOracle
from settlement_service.domain.exceptions import (
    MissingFieldsError,
    RateLimitError,
    ReconciliationError,
    SettlementError,
)
from settlement_service.domain.models import (
    Money,
    Order,
    OrderStatus,
    ProductExpectation,
    SaleNotice,
    SettlementOutcome,
    SettlementRecord,
)
from settlement_service.infrastructure.auth import Authenticator
from settlement_service.infrastructure.gateway import GatewayClient
from settlement_service.infrastructure.metrics import (
    RATE_LIMIT_EXCEEDED_TOTAL,
    SETTLEMENT_REQUESTS_TOTAL,
    track_settlement_duration,
)
from settlement_service.infrastructure.notifier import NotificationDispatcher
from settlement_service.infrastructure.rate_limiter import RateLimiter


logger = structlog.get_logger()


class PipelineState(Enum):
    SETTLED = "SETTLED"
    ALREADY_SETTLED = "ALREADY_SETTLED"


@dataclass(frozen=True)
class SettlementPolicy:
    commission_rate: Decimal = Decimal("0.30")
    accepted_statuses: frozenset[OrderStatus] = field(default_factory=lambda: frozenset({OrderStatus.COMPLETED}))


@dataclass
class VerifyPaymentCommand:
    bearer_token: str | None
    order_id: str | None
    product_id: str | None


@dataclass
class VerifyPaymentResult:
    state: PipelineState
    order_id: str
    settlement_id: str
    amount: str | None = None
    currency: str | None = None
    seller_credit: str | None = None
    buyer_name: str | None = None
    buyer_email: str | None = None


def reconcile(order: Order, expectation: ProductExpectation, accepted_statuses: frozenset[OrderStatus]) -> Money:
    """Check a gateway order against the expected sale and return the verified paid amount."""
    if order.status not in accepted_statuses:
        raise ReconciliationError("order not completed", observed_status=order.raw_status)
    if order.amount is None:
        raise ReconciliationError("paid amount missing", observed_status=order.raw_status)
    if order.amount.currency != expectation.expected_currency:
        raise ReconciliationError("currency does not match product", observed_status=order.raw_status)
    if order.amount.amount_cents != expectation.expected_amount.amount_cents:
        raise ReconciliationError("paid amount does not match product price", observed_status=order.raw_status)
    return order.amount


class SettlementPipeline:
    def __init__(
        self,
        authenticator: Authenticator,
        rate_limiter: RateLimiter | None,
        price_oracle: PriceOracle,
        gateway: GatewayClient,
        ledger: SettlementLedger,
        dispatcher: NotificationDispatcher | None = None,
        policy: SettlementPolicy | None = None,
    ) -> None:
        self._authenticator = authenticator
        self._rate_limiter = rate_limiter
        self._price_oracle = price_oracle
        self._gateway = gateway
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._policy = policy or SettlementPolicy()

    def use_rate_limiter(self, rate_limiter: RateLimiter | None) -> None:
        """Swap the admission gate, e.g. once a shared backend is connected."""
        self._rate_limiter = rate_limiter

    @track_settlement_duration
    async def verify_payment(self, cmd: VerifyPaymentCommand) -> VerifyPaymentResult:
        try:
            result = await self._run(cmd)
        except SettlementError as e:
            SETTLEMENT_REQUESTS_TOTAL.labels(outcome=e.error_code).inc()
            raise
        except Exception as e:
            SETTLEMENT_REQUESTS_TOTAL.labels(outcome="internal_error").inc()
            logger.exception("settlement_unexpected_error", order_id=cmd.order_id, product_id=cmd.product_id)
            raise SettlementError("Payment verification failed") from e

        SETTLEMENT_REQUESTS_TOTAL.labels(outcome=result.state.value.lower()).inc()
        return result

    async def _run(self, cmd: VerifyPaymentCommand) -> VerifyPaymentResult:
        user_id = await self._authenticator.verify(cmd.bearer_token or "")
        log = logger.bind(user_id=user_id)

        if self._rate_limiter is not None:
            decision = await self._rate_limiter.admit(user_id)
            if not decision.allowed:
                RATE_LIMIT_EXCEEDED_TOTAL.labels(backend=getattr(self._rate_limiter, "backend", "custom")).inc()
                raise RateLimitError(user_id, decision.retry_after_seconds)

        order_id, product_id = cmd.order_id, cmd.product_id
        if not order_id or not product_id:
            missing = [name for name, value in (("orderId", order_id), ("productId", product_id)) if not value]
            log.info("verification_rejected", reason="missing_fields", fields=missing)
            raise MissingFieldsError(missing)

        log = log.bind(order_id=order_id, product_id=product_id)
        log.info("verification_started", step="1/6")

        existing = await self._ledger.get_settlement(order_id)
        if existing is not None:
            log.info("order_already_settled", step="2/6", settlement_id=existing.id)
            return self._already_settled(existing)

        expectation = await self._price_oracle.resolve_expectation(product_id)
        log.info(
            "expectation_resolved",
            step="3/6",
            expected_amount=expectation.expected_amount.format(),
            expected_currency=expectation.expected_currency,
            seller_id=expectation.seller_id,
        )

        order = await self._gateway.fetch_order(order_id)
        log.info("order_fetched", step="4/6", status=order.raw_status)

        try:
            paid = reconcile(order, expectation, self._policy.accepted_statuses)
        except ReconciliationError as e:
            log.warning(
                "reconciliation_failed",
                reason=e.reason,
                observed_status=order.raw_status,
                paid_amount=order.amount.format() if order.amount else None,
                paid_currency=order.amount.currency if order.amount else None,
            )
            raise
        log.info("order_reconciled", step="5/6")

        ledger_result = await self._ledger.settle(
            order_id=order_id,
            buyer_id=user_id,
            product_id=product_id,
            amount=paid,
            seller_id=expectation.seller_id,
            commission_rate=self._policy.commission_rate,
        )
        record = ledger_result.record

        if ledger_result.outcome == SettlementOutcome.ALREADY_EXISTS:
            log.info("order_already_settled", step="6/6", settlement_id=record.id)
            return self._already_settled(record)

        log.info("order_settled", step="6/6", settlement_id=record.id, seller_credit_cents=record.seller_credit_cents)

        if self._dispatcher is not None:
            self._dispatcher.dispatch(
                SaleNotice(
                    settlement_id=record.id,
                    gateway_order_id=record.gateway_order_id,
                    product_id=record.product_id,
                    seller_id=record.seller_id,
                    amount=record.amount.format(),
                    currency=record.currency,
                    buyer_name=order.payer_name,
                    buyer_email=order.payer_email,
                )
            )

        return VerifyPaymentResult(
            state=PipelineState.SETTLED,
            order_id=record.gateway_order_id,
            settlement_id=record.id,
            amount=record.amount.format(),
            currency=record.currency,
            seller_credit=record.seller_credit.format(),
            buyer_name=order.payer_name,
            buyer_email=order.payer_email,
        )

    @staticmethod
    def _already_settled(record: SettlementRecord) -> VerifyPaymentResult:
        return VerifyPaymentResult(
            state=PipelineState.ALREADY_SETTLED,
            order_id=record.gateway_order_id,
            settlement_id=record.id,
        )
