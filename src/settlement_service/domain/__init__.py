"""Domain layer - settlement entities and failure taxonomy."""

from settlement_service.domain.exceptions import (
    AuthError,
    ClientError,
    ConflictError,
    CurrencyMismatchError,
    GatewayAuthError,
    GatewayError,
    GatewayUnavailableError,
    MissingFieldsError,
    NotFoundError,
    OptimisticLockError,
    OrderNotFoundError,
    ProductMisconfiguredError,
    ProductNotFoundError,
    RateLimitError,
    ReconciliationError,
    SellerNotFoundError,
    SettlementError,
    TransactionConflictError,
)
from settlement_service.domain.models import (
    LedgerResult,
    Money,
    Order,
    OrderStatus,
    ProductExpectation,
    SaleNotice,
    SellerBalance,
    SettlementOutcome,
    SettlementRecord,
)


__all__ = [
    "AuthError",
    "ClientError",
    "ConflictError",
    "CurrencyMismatchError",
    "GatewayAuthError",
    "GatewayError",
    "GatewayUnavailableError",
    "LedgerResult",
    "MissingFieldsError",
    "Money",
    "NotFoundError",
    "OptimisticLockError",
    "Order",
    "OrderNotFoundError",
    "OrderStatus",
    "ProductExpectation",
    "ProductMisconfiguredError",
    "ProductNotFoundError",
    "RateLimitError",
    "ReconciliationError",
    "SaleNotice",
    "SellerBalance",
    "SellerNotFoundError",
    "SettlementError",
    "SettlementOutcome",
    "SettlementRecord",
    "TransactionConflictError",
]
