from datetime import UTC, datetime
from typing import Any, cast

from sqlalchemy import CursorResult, text
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_service.domain.exceptions import OptimisticLockError
from settlement_service.domain.models import SellerBalance


class SellerBalanceRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, seller_id: str) -> SellerBalance | None:
        result = await self._session.execute(
            text("""
                SELECT seller_id, balance_cents, currency, version, updated_at
                FROM seller_balances
                WHERE seller_id = :seller_id
            """),
            {"seller_id": seller_id},
        )
        row = result.fetchone()
        if not row:
            return None
        return SellerBalance(
            seller_id=row.seller_id,
            balance_cents=row.balance_cents,
            currency=row.currency,
            version=row.version,
            updated_at=row.updated_at,
        )

    async def add(self, balance: SellerBalance) -> None:
        await self._session.execute(
            text("""
                INSERT INTO seller_balances
                    (seller_id, balance_cents, currency, version, updated_at)
                VALUES
                    (:seller_id, :balance_cents, :currency, :version, :updated_at)
            """),
            {
                "seller_id": balance.seller_id,
                "balance_cents": balance.balance_cents,
                "currency": balance.currency,
                "version": balance.version,
                "updated_at": balance.updated_at,
            },
        )

    async def update(
        self,
        seller_id: str,
        new_balance_cents: int,
        expected_version: int,
    ) -> None:
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    UPDATE seller_balances
                    SET balance_cents = :new_balance,
                        version = version + 1,
                        updated_at = :updated_at
                    WHERE seller_id = :seller_id AND version = :expected_version
                """),
                {
                    "seller_id": seller_id,
                    "new_balance": new_balance_cents,
                    "expected_version": expected_version,
                    "updated_at": datetime.now(UTC),
                },
            ),
        )
        if (result.rowcount or 0) == 0:
            raise OptimisticLockError("SellerBalance", seller_id)
