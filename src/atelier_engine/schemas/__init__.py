"""Pydantic API schemas."""

from atelier_engine.schemas.orders import (
    ActionResponse,
    ActorRequest,
    CancelRequest,
    CreateOrderRequest,
    DeliverableResponse,
    DeliverRequest,
    DisputeRequest,
    GenerateRequest,
    HealthResponse,
    OrderEventResponse,
    OrderResponse,
    OrderStatusResponse,
    PayRequest,
    QuoteRequest,
    ReconcileResponse,
    RetryFulfillmentRequest,
    SettlementRecordResponse,
    SettlementResponse,
)

__all__ = [
    "ActionResponse",
    "ActorRequest",
    "CancelRequest",
    "CreateOrderRequest",
    "DeliverRequest",
    "DeliverableResponse",
    "DisputeRequest",
    "GenerateRequest",
    "HealthResponse",
    "OrderEventResponse",
    "OrderResponse",
    "OrderStatusResponse",
    "PayRequest",
    "QuoteRequest",
    "ReconcileResponse",
    "RetryFulfillmentRequest",
    "SettlementRecordResponse",
    "SettlementResponse",
]
