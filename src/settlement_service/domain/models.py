from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

from ulid import ULID


CENT = Decimal("0.01")


class OrderStatus(Enum):
    CREATED = "CREATED"
    APPROVED = "APPROVED"
    COMPLETED = "COMPLETED"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, raw: str | None) -> "OrderStatus":
        try:
            return cls((raw or "").upper())
        except ValueError:
            return cls.OTHER


class SettlementOutcome(Enum):
    CREATED = "CREATED"
    ALREADY_EXISTS = "ALREADY_EXISTS"


@dataclass(frozen=True)
class Money:
    """Amount in minor units (cents) plus an ISO 4217 currency code."""

    amount_cents: int
    currency: str = "USD"

    def __post_init__(self) -> None:
        if self.amount_cents < 0:
            raise ValueError("Amount cannot be negative")
        if len(self.currency) != 3:
            raise ValueError("Currency must be ISO 4217 code (3 characters)")

    @classmethod
    def parse(cls, value: str | int | Decimal, currency: str) -> "Money":
        """Parse a decimal amount such as ``"19.99"`` without going through floats.

        Amounts carrying non-zero digits beyond the second fractional place are
        rejected rather than rounded.
        """
        if isinstance(value, float):
            raise TypeError("Money cannot be parsed from float")
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ValueError(f"Invalid amount {value!r}") from e
        if not amount.is_finite():
            raise ValueError(f"Invalid amount {value!r}")
        try:
            quantized = amount.quantize(CENT)
        except InvalidOperation as e:
            raise ValueError(f"Amount {value!r} is out of range") from e
        if amount != quantized:
            raise ValueError(f"Amount {value!r} has more than two fractional digits")
        return cls(int(quantized * 100), currency.upper())

    @property
    def amount(self) -> Decimal:
        return (Decimal(self.amount_cents) / 100).quantize(CENT)

    def format(self) -> str:
        return f"{self.amount:.2f}"

    def split(self, commission_rate: Decimal) -> tuple["Money", "Money"]:
        """Return ``(seller_share, commission)`` for the given commission rate.

        The seller share is rounded half-up to the cent and the commission takes
        the remainder, so both always add up to the original amount.
        """
        seller_cents = int(
            (Decimal(self.amount_cents) * (Decimal("1") - commission_rate)).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP
            )
        )
        return (
            Money(seller_cents, self.currency),
            Money(self.amount_cents - seller_cents, self.currency),
        )


@dataclass(frozen=True)
class Order:
    """Payment order as reported by the gateway. Never persisted."""

    gateway_order_id: str
    status: OrderStatus
    raw_status: str
    amount: Money | None
    payer_email: str | None = None
    payer_name: str | None = None


@dataclass(frozen=True)
class ProductExpectation:
    product_id: str
    expected_amount: Money
    seller_id: str

    @property
    def expected_currency(self) -> str:
        return self.expected_amount.currency


@dataclass
class SellerBalance:
    seller_id: str
    balance_cents: int
    currency: str
    version: int = 1
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class SettlementRecord:
    id: str
    gateway_order_id: str
    buyer_id: str
    product_id: str
    seller_id: str
    amount_cents: int
    seller_credit_cents: int
    commission_cents: int
    currency: str
    settled_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def create(
        cls,
        gateway_order_id: str,
        buyer_id: str,
        product_id: str,
        seller_id: str,
        amount: Money,
        commission_rate: Decimal,
    ) -> "SettlementRecord":
        seller_share, commission = amount.split(commission_rate)
        return cls(
            id=str(ULID()),
            gateway_order_id=gateway_order_id,
            buyer_id=buyer_id,
            product_id=product_id,
            seller_id=seller_id,
            amount_cents=amount.amount_cents,
            seller_credit_cents=seller_share.amount_cents,
            commission_cents=commission.amount_cents,
            currency=amount.currency,
        )

    @property
    def amount(self) -> Money:
        return Money(self.amount_cents, self.currency)

    @property
    def seller_credit(self) -> Money:
        return Money(self.seller_credit_cents, self.currency)


@dataclass(frozen=True)
class LedgerResult:
    outcome: SettlementOutcome
    record: SettlementRecord


@dataclass(frozen=True)
class SaleNotice:
    settlement_id: str
    gateway_order_id: str
    product_id: str
    seller_id: str
    amount: str
    currency: str
    buyer_name: str | None
    buyer_email: str | None
