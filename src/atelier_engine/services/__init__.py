"""Application services — use case orchestration."""

from atelier_engine.services.factory import (
    AtelierServices,
    build_services,
    get_services,
    reset_services,
)
from atelier_engine.services.order_service import ActionResult, OrderService
from atelier_engine.services.payment_service import PaymentVerifier
from atelier_engine.services.quota_service import QuotaMeter
from atelier_engine.services.settlement_service import (
    SettlementExecutor,
    SettlementOutcome,
    SettlementReconciler,
)

__all__ = [
    "ActionResult",
    "AtelierServices",
    "OrderService",
    "PaymentVerifier",
    "QuotaMeter",
    "SettlementExecutor",
    "SettlementOutcome",
    "SettlementReconciler",
    "build_services",
    "get_services",
    "reset_services",
]
