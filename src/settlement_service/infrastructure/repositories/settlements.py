from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_service.domain.models import SettlementRecord


class SettlementRepository:
    """Write-once settlement records keyed by gateway order id.

    The UNIQUE constraint on ``gateway_order_id`` is what makes a second insert
    for the same order fail with ``IntegrityError``.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_order_id(self, gateway_order_id: str) -> SettlementRecord | None:
        result = await self._session.execute(
            text("""
                SELECT id, gateway_order_id, buyer_id, product_id, seller_id,
                       amount_cents, seller_credit_cents, commission_cents,
                       currency, settled_at
                FROM settlements
                WHERE gateway_order_id = :gateway_order_id
            """),
            {"gateway_order_id": gateway_order_id},
        )
        row = result.fetchone()
        if not row:
            return None
        return SettlementRecord(
            id=row.id,
            gateway_order_id=row.gateway_order_id,
            buyer_id=row.buyer_id,
            product_id=row.product_id,
            seller_id=row.seller_id,
            amount_cents=row.amount_cents,
            seller_credit_cents=row.seller_credit_cents,
            commission_cents=row.commission_cents,
            currency=row.currency,
            settled_at=row.settled_at,
        )

    async def add(self, record: SettlementRecord) -> None:
        await self._session.execute(
            text("""
                INSERT INTO settlements
                    (id, gateway_order_id, buyer_id, product_id, seller_id,
                     amount_cents, seller_credit_cents, commission_cents,
                     currency, settled_at)
                VALUES
                    (:id, :gateway_order_id, :buyer_id, :product_id, :seller_id,
                     :amount_cents, :seller_credit_cents, :commission_cents,
                     :currency, :settled_at)
            """),
            {
                "id": record.id,
                "gateway_order_id": record.gateway_order_id,
                "buyer_id": record.buyer_id,
                "product_id": record.product_id,
                "seller_id": record.seller_id,
                "amount_cents": record.amount_cents,
                "seller_credit_cents": record.seller_credit_cents,
                "commission_cents": record.commission_cents,
                "currency": record.currency,
                "settled_at": record.settled_at,
            },
        )
