"""Shared pytest fixtures for settlement service tests."""

import asyncio
import dataclasses
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from jose import jwt
from sqlalchemy.exc import IntegrityError

from settlement_service.application.unit_of_work import UnitOfWork
from settlement_service.domain.exceptions import OptimisticLockError
from settlement_service.domain.models import (
    Money,
    Order,
    OrderStatus,
    ProductExpectation,
    SellerBalance,
    SettlementRecord,
)
from settlement_service.infrastructure.repositories import ProductRow


JWT_SECRET = "test-identity-secret"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDatabase:
    """Stands in for ``Database``; sessions are opaque mocks."""

    def __init__(self) -> None:
        self.sessions_opened = 0

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[MagicMock, None]:
        self.sessions_opened += 1
        yield MagicMock()

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryLedgerStore:
    """Shared committed state for ``FakeUnitOfWork`` instances.

    Reads yield to the event loop so concurrent settlements interleave the way
    they would against a real database.
    """

    def __init__(self) -> None:
        self.products: dict[str, ProductRow] = {}
        self.balances: dict[str, SellerBalance] = {}
        self.settlements: dict[str, SettlementRecord] = {}
        self.commits = 0

    def add_seller(self, seller_id: str, balance_cents: int = 0, currency: str = "USD") -> None:
        self.balances[seller_id] = SellerBalance(seller_id=seller_id, balance_cents=balance_cents, currency=currency)

    def add_product(
        self,
        product_id: str,
        price_cents: int | None,
        seller_id: str | None,
        currency: str | None = "USD",
    ) -> None:
        self.products[product_id] = ProductRow(
            id=product_id,
            price_cents=price_cents,
            currency=currency,
            seller_id=seller_id,
        )


class _FakeProducts:
    def __init__(self, store: InMemoryLedgerStore) -> None:
        self._store = store

    async def get(self, product_id: str) -> ProductRow | None:
        await asyncio.sleep(0)
        return self._store.products.get(product_id)


class _FakeBalances:
    def __init__(self, uow: "FakeUnitOfWork") -> None:
        self._uow = uow

    async def get(self, seller_id: str) -> SellerBalance | None:
        await asyncio.sleep(0)
        balance = self._uow.store.balances.get(seller_id)
        return dataclasses.replace(balance) if balance else None

    async def add(self, balance: SellerBalance) -> None:
        self._uow.store.balances[balance.seller_id] = balance

    async def update(self, seller_id: str, new_balance_cents: int, expected_version: int) -> None:
        self._uow.pending_updates.append((seller_id, new_balance_cents, expected_version))


class _FakeSettlements:
    def __init__(self, uow: "FakeUnitOfWork") -> None:
        self._uow = uow

    async def get_by_order_id(self, gateway_order_id: str) -> SettlementRecord | None:
        await asyncio.sleep(0)
        return self._uow.store.settlements.get(gateway_order_id)

    async def add(self, record: SettlementRecord) -> None:
        self._uow.pending_settlements.append(record)


class FakeUnitOfWork:
    """Buffers writes and applies them atomically on commit.

    Commit enforces the same guarantees as the database: a duplicate gateway
    order id fails with ``IntegrityError`` and a stale balance version with
    ``OptimisticLockError``. Either failure discards the whole transaction.
    """

    def __init__(self, store: InMemoryLedgerStore) -> None:
        self.store = store
        self.pending_settlements: list[SettlementRecord] = []
        self.pending_updates: list[tuple[str, int, int]] = []
        self.products = _FakeProducts(store)
        self.balances = _FakeBalances(self)
        self.settlements = _FakeSettlements(self)
        self.rollbacks = 0

    async def __aenter__(self) -> "FakeUnitOfWork":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is not None:
            await self.rollback()

    async def commit(self) -> None:
        await asyncio.sleep(0)
        for record in self.pending_settlements:
            if record.gateway_order_id in self.store.settlements:
                self._discard()
                raise IntegrityError("INSERT INTO settlements", {}, Exception("duplicate gateway_order_id"))
        for seller_id, _, expected_version in self.pending_updates:
            current = self.store.balances.get(seller_id)
            if current is None or current.version != expected_version:
                self._discard()
                raise OptimisticLockError("SellerBalance", seller_id)

        for record in self.pending_settlements:
            self.store.settlements[record.gateway_order_id] = record
        for seller_id, new_balance_cents, expected_version in self.pending_updates:
            current = self.store.balances[seller_id]
            self.store.balances[seller_id] = SellerBalance(
                seller_id=seller_id,
                balance_cents=new_balance_cents,
                currency=current.currency,
                version=expected_version + 1,
                updated_at=datetime.now(UTC),
            )
        self.store.commits += 1
        self._discard()

    async def rollback(self) -> None:
        self.rollbacks += 1
        self._discard()

    def _discard(self) -> None:
        self.pending_settlements = []
        self.pending_updates = []


@pytest.fixture
def fake_database() -> FakeDatabase:
    """Create a database stand-in whose sessions are never touched."""
    return FakeDatabase()


@pytest.fixture
def ledger_store() -> InMemoryLedgerStore:
    """Create an in-memory store with one seller and one product."""
    store = InMemoryLedgerStore()
    store.add_seller("seller-001", balance_cents=0)
    store.add_product("product-001", price_cents=10000, seller_id="seller-001")
    return store


@pytest.fixture
def fake_uow_factory(ledger_store: InMemoryLedgerStore) -> Any:
    """Create a UoW factory bound to the in-memory store."""

    def factory(session: Any) -> FakeUnitOfWork:
        return FakeUnitOfWork(ledger_store)

    return factory


@pytest.fixture
def mock_product_repository() -> AsyncMock:
    """Create mock ProductRepository."""
    repo = AsyncMock()
    repo.get = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_balance_repository() -> AsyncMock:
    """Create mock SellerBalanceRepository."""
    repo = AsyncMock()
    repo.get = AsyncMock(return_value=None)
    repo.add = AsyncMock(return_value=None)
    repo.update = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_settlement_repository() -> AsyncMock:
    """Create mock SettlementRepository."""
    repo = AsyncMock()
    repo.get_by_order_id = AsyncMock(return_value=None)
    repo.exists = AsyncMock(return_value=False)
    repo.add = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_uow(
    mock_product_repository: AsyncMock,
    mock_balance_repository: AsyncMock,
    mock_settlement_repository: AsyncMock,
) -> AsyncMock:
    """Create mock Unit of Work with all repositories."""
    uow = AsyncMock(spec=UnitOfWork)
    uow.products = mock_product_repository
    uow.balances = mock_balance_repository
    uow.settlements = mock_settlement_repository
    uow.commit = AsyncMock(return_value=None)
    uow.rollback = AsyncMock(return_value=None)

    # Configure async context manager
    uow.__aenter__ = AsyncMock(return_value=uow)
    uow.__aexit__ = AsyncMock(return_value=None)

    return uow


@pytest.fixture
def sample_expectation() -> ProductExpectation:
    """Create expectation for a $100.00 product."""
    return ProductExpectation(
        product_id="product-001",
        expected_amount=Money(amount_cents=10000, currency="USD"),
        seller_id="seller-001",
    )


@pytest.fixture
def sample_order() -> Order:
    """Create a completed $100.00 gateway order."""
    return create_order()


@pytest.fixture
def identity_token() -> str:
    """Create a valid identity token for buyer-001."""
    return create_identity_token("buyer-001")


def create_order(
    order_id: str = "ORDER-001",
    status: str = "COMPLETED",
    value: str | None = "100.00",
    currency: str = "USD",
) -> Order:
    """Helper to create a gateway Order with custom values."""
    return Order(
        gateway_order_id=order_id,
        status=OrderStatus.parse(status),
        raw_status=status,
        amount=Money.parse(value, currency) if value is not None else None,
        payer_email="buyer@example.com",
        payer_name="Jane Buyer",
    )


def create_settlement_record(
    order_id: str = "ORDER-001",
    amount_cents: int = 10000,
    seller_id: str = "seller-001",
    commission_rate: Decimal = Decimal("0.30"),
) -> SettlementRecord:
    """Helper to create a SettlementRecord with custom values."""
    return SettlementRecord.create(
        gateway_order_id=order_id,
        buyer_id="buyer-001",
        product_id="product-001",
        seller_id=seller_id,
        amount=Money(amount_cents, "USD"),
        commission_rate=commission_rate,
    )


def create_identity_token(subject: str | None, secret: str = JWT_SECRET, **claims: Any) -> str:
    """Helper to sign an HS256 identity token."""
    payload: dict[str, Any] = dict(claims)
    if subject is not None:
        payload["sub"] = subject
    return jwt.encode(payload, secret, algorithm="HS256")


def paypal_order_payload(
    order_id: str = "ORDER-001",
    status: str = "COMPLETED",
    value: str = "100.00",
    currency: str = "USD",
) -> dict[str, Any]:
    """Helper to build a checkout order body as the gateway returns it."""
    return {
        "id": order_id,
        "status": status,
        "purchase_units": [
            {
                "reference_id": "default",
                "amount": {"currency_code": currency, "value": value},
            }
        ],
        "payer": {
            "payer_id": "PAYER-001",
            "email_address": "buyer@example.com",
            "name": {"given_name": "Jane", "surname": "Buyer"},
        },
    }


def ledger_schema(timestamp_type: str = "TIMESTAMP") -> list[str]:
    """DDL matching the migration, portable between SQLite and PostgreSQL."""
    return [
        f"""
        CREATE TABLE products (
            id VARCHAR(128) PRIMARY KEY,
            price_cents BIGINT,
            currency VARCHAR(3),
            seller_id VARCHAR(128),
            created_at {timestamp_type} DEFAULT CURRENT_TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE seller_balances (
            seller_id VARCHAR(128) PRIMARY KEY,
            balance_cents BIGINT NOT NULL DEFAULT 0 CHECK (balance_cents >= 0),
            currency VARCHAR(3) NOT NULL DEFAULT 'USD',
            version BIGINT NOT NULL DEFAULT 1,
            updated_at {timestamp_type} DEFAULT CURRENT_TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE settlements (
            id VARCHAR(26) PRIMARY KEY,
            gateway_order_id VARCHAR(128) NOT NULL UNIQUE,
            buyer_id VARCHAR(128) NOT NULL,
            product_id VARCHAR(128) NOT NULL,
            seller_id VARCHAR(128) NOT NULL REFERENCES seller_balances (seller_id),
            amount_cents BIGINT NOT NULL,
            seller_credit_cents BIGINT NOT NULL,
            commission_cents BIGINT NOT NULL,
            currency VARCHAR(3) NOT NULL,
            settled_at {timestamp_type} DEFAULT CURRENT_TIMESTAMP
        )
        """,
    ]


CATALOG_SEED = [
    "INSERT INTO seller_balances (seller_id, balance_cents, currency, version) VALUES ('seller-001', 0, 'USD', 1)",
    "INSERT INTO products (id, price_cents, currency, seller_id) VALUES ('product-001', 10000, 'USD', 'seller-001')",
    "INSERT INTO products (id, price_cents, currency, seller_id) VALUES ('product-unpriced', NULL, 'USD', 'seller-001')",
]
