"""Application layer - settlement pipeline and its transactional collaborators."""

from settlement_service.application.ledger import SettlementLedger
from settlement_service.application.price_oracle import CatalogPriceOracle, PriceOracle
from settlement_service.application.services import (
    PipelineState,
    SettlementPipeline,
    SettlementPolicy,
    VerifyPaymentCommand,
    VerifyPaymentResult,
    reconcile,
)
from settlement_service.application.unit_of_work import UnitOfWork


__all__ = [
    "CatalogPriceOracle",
    "PipelineState",
    "PriceOracle",
    "SettlementLedger",
    "SettlementPipeline",
    "SettlementPolicy",
    "UnitOfWork",
    "VerifyPaymentCommand",
    "VerifyPaymentResult",
    "reconcile",
]
