"""Database infrastructure — engine, ORM models, and repositories."""

from atelier_engine.infrastructure.database.engine import (
    close_db,
    get_async_session,
    init_db,
)
from atelier_engine.infrastructure.database.orm_models import (
    Base,
    Order,
    OrderDeliverable,
    OrderEvent,
    ProviderAgent,
    Service,
    Settlement,
)
from atelier_engine.infrastructure.database.repositories import (
    AgentRepository,
    DeliverableRepository,
    EventRepository,
    OrderRepository,
    ServiceRepository,
    SettlementRepository,
)

__all__ = [
    "AgentRepository",
    "Base",
    "DeliverableRepository",
    "EventRepository",
    "Order",
    "OrderDeliverable",
    "OrderEvent",
    "OrderRepository",
    "ProviderAgent",
    "Service",
    "ServiceRepository",
    "Settlement",
    "SettlementRepository",
    "close_db",
    "get_async_session",
    "init_db",
]
