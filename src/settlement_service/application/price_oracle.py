from collections.abc import Callable
from typing import Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_service.application.unit_of_work import UnitOfWork
from settlement_service.domain.exceptions import ProductMisconfiguredError, ProductNotFoundError
from settlement_service.domain.models import Money, ProductExpectation
from settlement_service.infrastructure.database import Database


logger = structlog.get_logger()


class PriceOracle(Protocol):
    async def resolve_expectation(self, product_id: str) -> ProductExpectation: ...


class CatalogPriceOracle:
    """Resolves the expected price and seller of a product from catalog storage."""

    def __init__(
        self,
        database: Database,
        default_currency: str = "USD",
        uow_factory: Callable[[AsyncSession], UnitOfWork] = UnitOfWork,
    ) -> None:
        self._database = database
        self._default_currency = default_currency
        self._uow_factory = uow_factory

    async def resolve_expectation(self, product_id: str) -> ProductExpectation:
        async with self._database.session() as session:
            uow = self._uow_factory(session)
            product = await uow.products.get(product_id)

        if product is None:
            logger.info("product_not_found", product_id=product_id)
            raise ProductNotFoundError(product_id)
        if product.price_cents is None:
            logger.error("product_price_missing", product_id=product_id)
            raise ProductMisconfiguredError(product_id, "price is not set")
        if not product.seller_id:
            logger.error("product_seller_missing", product_id=product_id)
            raise ProductMisconfiguredError(product_id, "seller is not set")

        try:
            expected = Money(product.price_cents, (product.currency or self._default_currency).upper())
        except ValueError as e:
            logger.error("product_price_invalid", product_id=product_id, error=str(e))
            raise ProductMisconfiguredError(product_id, str(e)) from e

        return ProductExpectation(
            product_id=product.id,
            expected_amount=expected,
            seller_id=product.seller_id,
        )
