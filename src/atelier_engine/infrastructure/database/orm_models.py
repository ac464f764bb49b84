"""SQLAlchemy 2.0 ORM models for the Atelier settlement engine.

Six tables:
    1. provider_agents     — The agents selling services (payout and webhook targets).
    2. services            — What an agent sells: price, quota, generation back-end.
    3. orders              — One purchase of a service, driven by OrderStateMachine.
    4. order_deliverables  — Individual generations inside a workspace order.
    5. order_events        — Append-only audit log of every state change.
    6. settlements         — Outbox of every payout / refund attempt.

Design decisions:
    - UUIDs as primary keys (agent-friendly, no sequential leakage).
    - Decimal for USD / USDC amounts (no floating point rounding errors).
    - escrow_tx_hash is unique among non-null values, so a transaction
      can fund at most one order even if two requests race past the
      application check.
    - Portable column types (Uuid, JSON with a JSONB variant, tz-aware
      timestamps) so the same models run on PostgreSQL and SQLite.
    - order_events is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always comes back in UTC.

    SQLite drops tzinfo on the way out; PostgreSQL keeps it.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # noqa: ANN001, ANN201
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value

    def process_result_value(self, value, dialect):  # noqa: ANN001, ANN201
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. provider_agents
# ---------------------------------------------------------------------------
class ProviderAgent(Base):
    """An agent that sells services. Registration itself happens elsewhere."""

    __tablename__ = "provider_agents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    owner_wallet: Mapped[str | None] = mapped_column(
        String(42),
        nullable=True,
        comment="Wallet of the agent's owner (fallback payout destination)",
    )
    payout_wallet: Mapped[str | None] = mapped_column(
        String(42),
        nullable=True,
        comment="Preferred payout destination",
    )
    endpoint_url: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Webhook target for order lifecycle notifications",
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    @property
    def payout_destination(self) -> str | None:
        return self.payout_wallet or self.owner_wallet

    def __repr__(self) -> str:
        return f"<ProviderAgent id={self.id} name={self.name}>"


# ---------------------------------------------------------------------------
# 2. services
# ---------------------------------------------------------------------------
class Service(Base):
    """A purchasable offering of a provider agent."""

    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("provider_agents.id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)

    # --- Pricing ---
    price_usd: Mapped[Decimal | None] = mapped_column(
        Numeric(18, 2),
        nullable=True,
        comment="List price; null for quote-priced services",
    )
    price_type: Mapped[str] = mapped_column(String(10), nullable=False, default="fixed")
    quota_limit: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Generations included per order; > 0 marks a workspace product",
    )
    billing_period: Mapped[str] = mapped_column(
        String(10), nullable=False, default="one_time"
    )

    # --- Generation back-end ---
    provider_key: Mapped[str | None] = mapped_column(String(20), nullable=True)
    provider_model: Mapped[str | None] = mapped_column(String(50), nullable=True)
    system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    agent: Mapped[ProviderAgent] = relationship("ProviderAgent", lazy="selectin")

    __table_args__ = (
        CheckConstraint("quota_limit >= 0", name="ck_service_quota_nonnegative"),
        CheckConstraint(
            "price_type IN ('fixed', 'quote')", name="ck_service_valid_price_type"
        ),
        Index("idx_service_agent", "agent_id"),
    )

    @property
    def is_workspace(self) -> bool:
        return self.quota_limit > 0

    def __repr__(self) -> str:
        return f"<Service id={self.id} title={self.title!r} price={self.price_usd}>"


# ---------------------------------------------------------------------------
# 3. orders
# ---------------------------------------------------------------------------
class Order(Base):
    """A client's purchase of a service."""

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # --- Participants ---
    service_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("services.id"), nullable=False
    )
    provider_agent_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("provider_agents.id"), nullable=False
    )
    client_agent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    client_wallet: Mapped[str | None] = mapped_column(
        String(42),
        nullable=True,
        comment="Wallet the client pays from and receives refunds to",
    )

    # --- Request ---
    brief: Mapped[str] = mapped_column(Text, nullable=False)
    reference_urls: Mapped[list | None] = mapped_column(JSONType, nullable=True)

    # --- Financials ---
    quoted_price_usd: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    platform_fee_usd: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    escrow_tx_hash: Mapped[str | None] = mapped_column(
        String(66),
        nullable=True,
        comment="Client payment transaction; unique, written once",
    )
    payout_tx_hash: Mapped[str | None] = mapped_column(
        String(66),
        nullable=True,
        comment="Payout or refund transaction; written only by settlement",
    )

    # --- Status (guarded by OrderStateMachine) ---
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending_quote")

    # --- Simple deliverable ---
    deliverable_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    deliverable_media_type: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # --- Workspace quota ---
    quota_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quota_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    workspace_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # --- Automatic fulfillment bookkeeping ---
    fulfillment_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fulfillment_started_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    last_fulfillment_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    review_deadline: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    service: Mapped[Service] = relationship("Service", lazy="selectin")
    provider_agent: Mapped[ProviderAgent] = relationship("ProviderAgent", lazy="selectin")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_quote', 'quoted', 'accepted', 'paid', 'in_progress', "
            "'delivered', 'completed', 'cancelled', 'disputed')",
            name="ck_order_valid_status",
        ),
        CheckConstraint(
            "quota_used >= 0 AND quota_used <= quota_total",
            name="ck_order_quota_bounds",
        ),
        CheckConstraint("fulfillment_attempts >= 0", name="ck_order_attempts_nonnegative"),
        Index(
            "uq_orders_escrow_tx_hash",
            "escrow_tx_hash",
            unique=True,
            postgresql_where=text("escrow_tx_hash IS NOT NULL"),
            sqlite_where=text("escrow_tx_hash IS NOT NULL"),
        ),
        Index("idx_order_status", "status"),
        Index("idx_order_client_wallet", "client_wallet"),
        Index("idx_order_provider", "provider_agent_id"),
        Index("idx_order_created_at", "created_at"),
    )

    @property
    def is_workspace(self) -> bool:
        return self.quota_total > 0

    @property
    def amount_due(self) -> Decimal | None:
        if self.quoted_price_usd is None:
            return None
        return self.quoted_price_usd + (self.platform_fee_usd or 0)

    def __repr__(self) -> str:
        return f"<Order id={self.id} status={self.status} price={self.quoted_price_usd}>"


# ---------------------------------------------------------------------------
# 4. order_deliverables
# ---------------------------------------------------------------------------
class OrderDeliverable(Base):
    """One generation attempt inside a workspace order."""

    __tablename__ = "order_deliverables"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    deliverable_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    deliverable_media_type: Mapped[str | None] = mapped_column(String(10), nullable=True)
    status: Mapped[str] = mapped_column(String(12), nullable=False, default="pending")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'generating', 'completed', 'failed')",
            name="ck_deliverable_valid_status",
        ),
        Index("idx_deliverable_order", "order_id"),
    )

    def __repr__(self) -> str:
        return f"<OrderDeliverable id={self.id} order={self.order_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 5. order_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class OrderEvent(Base):
    """Immutable audit record of an order state change or settlement outcome.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "order_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="Who triggered this event (wallet, agent id or SYSTEM)",
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_event_order", "order_id"),
        Index("idx_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<OrderEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# 6. settlements (Outbox)
# ---------------------------------------------------------------------------
class Settlement(Base):
    """A payout or refund attempt.

    Rows are never deleted. The only mutations are attaching a transaction
    hash, a confirmation, or a failure reason.
    """

    __tablename__ = "settlements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    recipient_wallet: Mapped[str] = mapped_column(String(42), nullable=False)
    amount_usdc: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    status: Mapped[str] = mapped_column(String(12), nullable=False, default="pending")
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True, unique=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    settled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("kind IN ('payout', 'refund')", name="ck_settlement_valid_kind"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'unconfirmed', 'failed')",
            name="ck_settlement_valid_status",
        ),
        CheckConstraint("amount_usdc > 0", name="ck_settlement_positive_amount"),
        Index("idx_settlement_order", "order_id"),
        Index("idx_settlement_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Settlement id={self.id} {self.kind} {self.amount_usdc} USDC "
            f"status={self.status}>"
        )
