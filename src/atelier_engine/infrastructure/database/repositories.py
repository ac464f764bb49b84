"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Every order status write goes through OrderRepository.transition_status,
a single conditional UPDATE:

    UPDATE orders SET status = :new, ... WHERE id = :id AND status = :expected

The affected row count tells the caller whether it won. Two requests that
both read "delivered" cannot both complete the order.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update

from atelier_engine.domain.enums import (
    DeliverableStatus,
    OrderStatus,
    SettlementStatus,
)
from atelier_engine.infrastructure.database.orm_models import (
    Order,
    OrderDeliverable,
    OrderEvent,
    ProviderAgent,
    Service,
    Settlement,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from atelier_engine.domain.enums import EventType

DEFAULT_REVIEW_WINDOW = timedelta(hours=48)


class AgentRepository:
    """Data access for provider agents."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, agent: ProviderAgent) -> ProviderAgent:
        self._session.add(agent)
        await self._session.flush()
        return agent

    async def get_by_id(self, agent_id: uuid.UUID) -> ProviderAgent | None:
        return await self._session.get(ProviderAgent, agent_id)


class ServiceRepository:
    """Data access for services."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, service: Service) -> Service:
        self._session.add(service)
        await self._session.flush()
        return service

    async def get_by_id(self, service_id: uuid.UUID) -> Service | None:
        result = await self._session.execute(
            select(Service).where(Service.id == service_id)
        )
        return result.scalar_one_or_none()


class OrderRepository:
    """Data access for orders, including every conditional write."""

    def __init__(
        self,
        session: AsyncSession,
        review_window: timedelta = DEFAULT_REVIEW_WINDOW,
    ) -> None:
        self._session = session
        self._review_window = review_window

    async def create(self, order: Order) -> Order:
        """Insert a new order."""
        self._session.add(order)
        await self._session.flush()
        return order

    async def get_by_id(self, order_id: uuid.UUID) -> Order | None:
        """Fetch an order, always reloading columns from the database.

        Conditional updates bypass the identity map, so a cached instance
        may be stale.
        """
        result = await self._session.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_escrow_tx_hash(self, tx_hash: str) -> Order | None:
        """Return the order already funded by this transaction, if any."""
        result = await self._session.execute(
            select(Order).where(Order.escrow_tx_hash == tx_hash)
        )
        return result.scalar_one_or_none()

    async def transition_status(
        self,
        order_id: uuid.UUID,
        expected: OrderStatus,
        new: OrderStatus,
        **values: Any,
    ) -> bool:
        """Move an order from `expected` to `new` if nobody else moved it first.

        Extra column values are written in the same statement. Entering
        delivered stamps delivered_at and the review deadline; entering
        completed stamps completed_at.

        Returns:
            True if this call performed the transition, False if the order
            was not in `expected` any more.
        """
        now = datetime.now(UTC)
        values.setdefault("updated_at", now)
        if new == OrderStatus.DELIVERED:
            values.setdefault("delivered_at", now)
            values.setdefault("review_deadline", now + self._review_window)
        elif new == OrderStatus.COMPLETED:
            values.setdefault("completed_at", now)

        result = await self._session.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == expected.value)
            .values(status=new.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def open_quota_window(
        self,
        order_id: uuid.UUID,
        quota_total: int,
        expires_at: datetime,
    ) -> bool:
        """Set the quota and expiry of a workspace order, once."""
        result = await self._session.execute(
            update(Order)
            .where(Order.id == order_id, Order.quota_total == 0)
            .values(
                quota_total=quota_total,
                quota_used=0,
                workspace_expires_at=expires_at,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def increment_quota_used(self, order_id: uuid.UUID) -> bool:
        """Consume one generation if any remain and the workspace is open."""
        result = await self._session.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.quota_used < Order.quota_total,
                Order.status == OrderStatus.IN_PROGRESS.value,
            )
            .values(quota_used=Order.quota_used + 1, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def attach_payout_tx_hash(self, order_id: uuid.UUID, tx_hash: str) -> bool:
        """Record the payout/refund transaction. Never overwrites an existing one."""
        result = await self._session.execute(
            update(Order)
            .where(Order.id == order_id, Order.payout_tx_hash.is_(None))
            .values(payout_tx_hash=tx_hash, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class DeliverableRepository:
    """Data access for workspace generations."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, order_id: uuid.UUID, prompt: str) -> OrderDeliverable:
        """Insert a pending deliverable."""
        deliverable = OrderDeliverable(
            order_id=order_id,
            prompt=prompt,
            status=DeliverableStatus.PENDING.value,
        )
        self._session.add(deliverable)
        await self._session.flush()
        return deliverable

    async def get_by_id(self, deliverable_id: uuid.UUID) -> OrderDeliverable | None:
        return await self._session.get(OrderDeliverable, deliverable_id)

    async def get_by_order(self, order_id: uuid.UUID) -> list[OrderDeliverable]:
        """All deliverables for an order, oldest first."""
        result = await self._session.execute(
            select(OrderDeliverable)
            .where(OrderDeliverable.order_id == order_id)
            .order_by(OrderDeliverable.created_at.asc())
        )
        return list(result.scalars().all())

    async def completed_prompts(self, order_id: uuid.UUID) -> list[str]:
        """Prompts of successful generations, oldest first."""
        result = await self._session.execute(
            select(OrderDeliverable.prompt)
            .where(
                OrderDeliverable.order_id == order_id,
                OrderDeliverable.status == DeliverableStatus.COMPLETED.value,
            )
            .order_by(OrderDeliverable.created_at.asc())
        )
        return list(result.scalars().all())

    async def set_status(
        self,
        deliverable_id: uuid.UUID,
        status: DeliverableStatus,
        **values: Any,
    ) -> None:
        await self._session.execute(
            update(OrderDeliverable)
            .where(OrderDeliverable.id == deliverable_id)
            .values(status=status.value, **values)
            .execution_options(synchronize_session=False)
        )


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        order_id: uuid.UUID,
        event_type: EventType,
        old_status: OrderStatus | None,
        new_status: OrderStatus,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> OrderEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = OrderEvent(
            order_id=order_id,
            event_type=event_type.value,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_order(self, order_id: uuid.UUID) -> list[OrderEvent]:
        """Fetch all events for an order in chronological order."""
        result = await self._session.execute(
            select(OrderEvent)
            .where(OrderEvent.order_id == order_id)
            .order_by(OrderEvent.created_at.asc())
        )
        return list(result.scalars().all())


class SettlementRepository:
    """Data access for the settlement outbox."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, settlement: Settlement) -> Settlement:
        self._session.add(settlement)
        await self._session.flush()
        return settlement

    async def get_by_id(self, settlement_id: uuid.UUID) -> Settlement | None:
        result = await self._session.execute(
            select(Settlement)
            .where(Settlement.id == settlement_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_order(self, order_id: uuid.UUID) -> list[Settlement]:
        result = await self._session.execute(
            select(Settlement)
            .where(Settlement.order_id == order_id)
            .order_by(Settlement.created_at.asc())
        )
        return list(result.scalars().all())

    async def get_by_status(self, *statuses: SettlementStatus) -> list[Settlement]:
        result = await self._session.execute(
            select(Settlement)
            .where(Settlement.status.in_([s.value for s in statuses]))
            .order_by(Settlement.created_at.asc())
        )
        return list(result.scalars().all())

    async def update_outcome(
        self,
        settlement_id: uuid.UUID,
        expected: SettlementStatus,
        new: SettlementStatus,
        **values: Any,
    ) -> bool:
        """Conditionally move a settlement row from one status to another."""
        if new == SettlementStatus.CONFIRMED:
            values.setdefault("settled_at", datetime.now(UTC))
        result = await self._session.execute(
            update(Settlement)
            .where(Settlement.id == settlement_id, Settlement.status == expected.value)
            .values(status=new.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
