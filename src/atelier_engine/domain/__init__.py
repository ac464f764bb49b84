"""Domain layer — pure business logic with zero framework dependencies."""

from atelier_engine.domain.chain_protocol import ChainGateway, OnChainTransfer
from atelier_engine.domain.enums import (
    DeliverableStatus,
    EventType,
    OrderStatus,
    SettlementKind,
    SettlementStatus,
)
from atelier_engine.domain.exceptions import (
    AtelierError,
    ConcurrentStateChangeError,
    InvalidStateTransitionError,
    OrderNotFoundError,
)
from atelier_engine.domain.provider_protocol import (
    GenerationProvider,
    GenerationRequest,
    GenerationResult,
)
from atelier_engine.domain.state_machine import (
    OrderStateMachine,
    validate_transition,
)

__all__ = [
    "AtelierError",
    "ChainGateway",
    "ConcurrentStateChangeError",
    "DeliverableStatus",
    "EventType",
    "GenerationProvider",
    "GenerationRequest",
    "GenerationResult",
    "InvalidStateTransitionError",
    "OnChainTransfer",
    "OrderNotFoundError",
    "OrderStateMachine",
    "OrderStatus",
    "SettlementKind",
    "SettlementStatus",
    "validate_transition",
]
