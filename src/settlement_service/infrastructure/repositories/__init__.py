"""Repository implementations."""

from settlement_service.infrastructure.repositories.balances import SellerBalanceRepository
from settlement_service.infrastructure.repositories.products import ProductRepository, ProductRow
from settlement_service.infrastructure.repositories.settlements import SettlementRepository


__all__ = [
    "ProductRepository",
    "ProductRow",
    "SellerBalanceRepository",
    "SettlementRepository",
]
