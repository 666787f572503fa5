import asyncio
from collections.abc import Callable
from decimal import Decimal

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_service.application.unit_of_work import UnitOfWork
from settlement_service.domain.exceptions import (
    CurrencyMismatchError,
    OptimisticLockError,
    SellerNotFoundError,
    TransactionConflictError,
)
from settlement_service.domain.models import (
    LedgerResult,
    Money,
    SellerBalance,
    SettlementOutcome,
    SettlementRecord,
)
from settlement_service.infrastructure.backoff import backoff_delay
from settlement_service.infrastructure.database import Database
from settlement_service.infrastructure.metrics import LEDGER_CONFLICT_RETRIES_TOTAL


logger = structlog.get_logger()


class SettlementLedger:
    """
    Transactional store of settlement records and seller balances.

    ``settle`` writes the settlement record and the credited balance in one
    transaction. A second settlement for the same order id is reported as
    ``ALREADY_EXISTS`` and writes nothing. Optimistic-lock conflicts on the
    seller balance restart the whole transaction, up to ``max_retries`` times.
    """

    def __init__(
        self,
        database: Database,
        max_retries: int = 3,
        base_delay: float = 0.05,
        max_delay: float = 1.0,
        uow_factory: Callable[[AsyncSession], UnitOfWork] = UnitOfWork,
    ) -> None:
        self._database = database
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._uow_factory = uow_factory

    async def get_settlement(self, order_id: str) -> SettlementRecord | None:
        async with self._database.session() as session:
            uow = self._uow_factory(session)
            return await uow.settlements.get_by_order_id(order_id)

    async def get_seller_balance(self, seller_id: str) -> SellerBalance | None:
        async with self._database.session() as session:
            uow = self._uow_factory(session)
            return await uow.balances.get(seller_id)

    async def settle(
        self,
        order_id: str,
        buyer_id: str,
        product_id: str,
        amount: Money,
        seller_id: str,
        commission_rate: Decimal,
    ) -> LedgerResult:
        log = logger.bind(order_id=order_id, seller_id=seller_id, amount_cents=amount.amount_cents)
        attempts = self._max_retries + 1

        for attempt in range(attempts):
            try:
                return await self._settle_once(
                    order_id=order_id,
                    buyer_id=buyer_id,
                    product_id=product_id,
                    amount=amount,
                    seller_id=seller_id,
                    commission_rate=commission_rate,
                    log=log,
                )
            except OptimisticLockError:
                if attempt + 1 >= attempts:
                    break
                LEDGER_CONFLICT_RETRIES_TOTAL.inc()
                delay = backoff_delay(attempt, self._base_delay, self._max_delay)
                log.warning("settlement_conflict_retry", attempt=attempt + 1, next_delay_seconds=delay)
                await asyncio.sleep(delay)

        log.error("settlement_conflict_exhausted", attempts=attempts)
        raise TransactionConflictError(order_id, attempts)

    async def _settle_once(
        self,
        order_id: str,
        buyer_id: str,
        product_id: str,
        amount: Money,
        seller_id: str,
        commission_rate: Decimal,
        log: structlog.stdlib.BoundLogger,
    ) -> LedgerResult:
        async with self._database.session() as session:
            uow = self._uow_factory(session)
            async with uow:
                existing = await uow.settlements.get_by_order_id(order_id)
                if existing:
                    log.info("settlement_already_exists", settlement_id=existing.id)
                    return LedgerResult(SettlementOutcome.ALREADY_EXISTS, existing)

                balance = await uow.balances.get(seller_id)
                if balance is None:
                    raise SellerNotFoundError(seller_id)
                if balance.currency != amount.currency:
                    raise CurrencyMismatchError(balance.currency, amount.currency)

                record = SettlementRecord.create(
                    gateway_order_id=order_id,
                    buyer_id=buyer_id,
                    product_id=product_id,
                    seller_id=seller_id,
                    amount=amount,
                    commission_rate=commission_rate,
                )
                new_balance = balance.balance_cents + record.seller_credit_cents

                try:
                    await uow.settlements.add(record)
                    await uow.balances.update(seller_id, new_balance, balance.version)
                    await uow.commit()
                except IntegrityError:
                    # Lost the race against a concurrent settlement of the same order.
                    await uow.rollback()
                    existing = await uow.settlements.get_by_order_id(order_id)
                    if existing is None:
                        raise
                    log.info("settlement_race_lost", settlement_id=existing.id)
                    return LedgerResult(SettlementOutcome.ALREADY_EXISTS, existing)

                log.info(
                    "settlement_committed",
                    settlement_id=record.id,
                    seller_credit_cents=record.seller_credit_cents,
                    commission_cents=record.commission_cents,
                    balance_before_cents=balance.balance_cents,
                    balance_after_cents=new_balance,
                )
                return LedgerResult(SettlementOutcome.CREATED, record)
