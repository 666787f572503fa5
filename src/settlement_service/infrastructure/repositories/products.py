from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


@dataclass(frozen=True)
class ProductRow:
    id: str
    price_cents: int | None
    currency: str | None
    seller_id: str | None


class ProductRepository:
    """Read-only access to catalog rows owned by the catalog service."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, product_id: str) -> ProductRow | None:
        result = await self._session.execute(
            text("""
                SELECT id, price_cents, currency, seller_id
                FROM products
                WHERE id = :id
            """),
            {"id": product_id},
        )
        row = result.fetchone()
        if not row:
            return None
        return ProductRow(
            id=row.id,
            price_cents=row.price_cents,
            currency=row.currency,
            seller_id=row.seller_id,
        )
