from types import TracebackType
from typing import Self

from sqlalchemy.ext.asyncio import AsyncSession

from settlement_service.infrastructure.repositories import (
    ProductRepository,
    SellerBalanceRepository,
    SettlementRepository,
)


class UnitOfWork:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self.products = ProductRepository(session)
        self.balances = SellerBalanceRepository(session)
        self.settlements = SettlementRepository(session)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            await self.rollback()

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()
