"""Integration tests for the settlement ledger with real PostgreSQL."""

import asyncio
from collections.abc import AsyncGenerator
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import text

from settlement_service.application.ledger import SettlementLedger
from settlement_service.domain.models import Money, SettlementOutcome
from settlement_service.infrastructure.database import Database
from tests.conftest import CATALOG_SEED, ledger_schema


pytestmark = pytest.mark.integration


@pytest.fixture
async def database(postgres_url: str) -> AsyncGenerator[Database, None]:
    """Create a database with a fresh schema and one seller."""
    db = Database(postgres_url)
    async with db.engine.begin() as conn:
        await conn.execute(text("DROP TABLE IF EXISTS settlements, seller_balances, products CASCADE"))
        for statement in ledger_schema("TIMESTAMP WITH TIME ZONE") + CATALOG_SEED:
            await conn.execute(text(statement))
    yield db
    await db.close()


def settle_kwargs(order_id: str) -> dict[str, Any]:
    return {
        "order_id": order_id,
        "buyer_id": "buyer-001",
        "product_id": "product-001",
        "amount": Money(10000, "USD"),
        "seller_id": "seller-001",
        "commission_rate": Decimal("0.30"),
    }


class TestSettlementLedgerPostgres:
    """Concurrency guarantees of SettlementLedger on PostgreSQL."""

    async def test_concurrent_duplicates_credit_once(self, database: Database) -> None:
        """Ten racing settlements of one order produce one record and one credit."""
        ledger = SettlementLedger(database, max_retries=10, base_delay=0.01, max_delay=0.1)

        results = await asyncio.gather(*(ledger.settle(**settle_kwargs("ORDER-001")) for _ in range(10)))

        outcomes = [result.outcome for result in results]
        assert outcomes.count(SettlementOutcome.CREATED) == 1
        assert outcomes.count(SettlementOutcome.ALREADY_EXISTS) == 9

        balance = await ledger.get_seller_balance("seller-001")
        assert balance is not None
        assert balance.balance_cents == 7000
        async with database.session() as session:
            count = (await session.execute(text("SELECT COUNT(*) FROM settlements"))).scalar_one()
        assert count == 1

    async def test_concurrent_orders_for_one_seller_are_all_credited(self, database: Database) -> None:
        """Optimistic-lock conflicts are retried, so no credit is lost."""
        ledger = SettlementLedger(database, max_retries=20, base_delay=0.01, max_delay=0.1)

        results = await asyncio.gather(*(ledger.settle(**settle_kwargs(f"ORDER-{i}")) for i in range(5)))

        assert all(result.outcome == SettlementOutcome.CREATED for result in results)
        balance = await ledger.get_seller_balance("seller-001")
        assert balance is not None
        assert balance.balance_cents == 5 * 7000
        assert balance.version == 6

    async def test_settlement_record_round_trip(self, database: Database) -> None:
        ledger = SettlementLedger(database)

        created = await ledger.settle(**settle_kwargs("ORDER-XYZ"))
        stored = await ledger.get_settlement("ORDER-XYZ")

        assert created.record is not None
        assert stored is not None
        assert stored.id == created.record.id
        assert stored.amount == Money(10000, "USD")
        assert stored.seller_credit == Money(7000, "USD")
        assert stored.settled_at.tzinfo is not None
