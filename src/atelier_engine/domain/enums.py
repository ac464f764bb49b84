"""Domain enumerations for the Atelier settlement engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum
from datetime import timedelta


class OrderStatus(enum.StrEnum):
    """Lifecycle states of a service order.

    State transitions are enforced by the OrderStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    PENDING_QUOTE = "pending_quote"
    QUOTED = "quoted"
    ACCEPTED = "accepted"
    PAID = "paid"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


CANCELLABLE_STATUSES = frozenset(
    {
        OrderStatus.PENDING_QUOTE,
        OrderStatus.QUOTED,
        OrderStatus.ACCEPTED,
        OrderStatus.PAID,
    }
)


class EventType(enum.StrEnum):
    """Types of audit events recorded in the order_events table.

    Every state change produces exactly one event. Settlement outcomes are
    recorded as events too, even though they do not move the order status.
    """

    ORDER_CREATED = "ORDER_CREATED"
    ORDER_QUOTED = "ORDER_QUOTED"
    QUOTE_ACCEPTED = "QUOTE_ACCEPTED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    WORKSPACE_OPENED = "WORKSPACE_OPENED"

    FULFILLMENT_STARTED = "FULFILLMENT_STARTED"
    FULFILLMENT_FAILED = "FULFILLMENT_FAILED"
    FULFILLMENT_STALLED = "FULFILLMENT_STALLED"
    WORK_DELIVERED = "WORK_DELIVERED"
    WORKSPACE_CLOSED = "WORKSPACE_CLOSED"

    ORDER_COMPLETED = "ORDER_COMPLETED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_DISPUTED = "ORDER_DISPUTED"

    PAYOUT_SENT = "PAYOUT_SENT"
    REFUND_SENT = "REFUND_SENT"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"


class PriceType(enum.StrEnum):
    """How a service is priced."""

    FIXED = "fixed"
    QUOTE = "quote"


class BillingPeriod(enum.StrEnum):
    """Length of the usage window opened when a workspace order is paid."""

    ONE_TIME = "one_time"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def horizon(self) -> timedelta:
        return _BILLING_HORIZONS[self]


_BILLING_HORIZONS = {
    BillingPeriod.ONE_TIME: timedelta(hours=24),
    BillingPeriod.WEEKLY: timedelta(days=7),
    BillingPeriod.MONTHLY: timedelta(days=30),
}


class MediaType(enum.StrEnum):
    IMAGE = "image"
    VIDEO = "video"


class DeliverableStatus(enum.StrEnum):
    """Lifecycle of a single generation inside a workspace order."""

    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class SettlementKind(enum.StrEnum):
    PAYOUT = "payout"
    REFUND = "refund"


class SettlementStatus(enum.StrEnum):
    """Outcome of a settlement attempt.

    UNCONFIRMED means a transfer was submitted but its confirmation was not
    observed; such rows are resolved by the reconciler, never resent.
    FAILED means no transfer was submitted and a retry is safe.
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"
    FAILED = "failed"


class PaymentMethod(enum.StrEnum):
    USDC_BASE = "usdc_base"


class ProviderKey(enum.StrEnum):
    """Generation back-ends a service can be wired to."""

    GROK = "grok"
    RUNWAY = "runway"
    LUMA = "luma"
    HIGGSFIELD = "higgsfield"
    MINIMAX = "minimax"
    MOCK = "mock"


class WebhookEvent(enum.StrEnum):
    """Lifecycle notifications sent to the provider agent's endpoint."""

    ORDER_CREATED = "order.created"
    ORDER_QUOTED = "order.quoted"
    ORDER_PAID = "order.paid"
    ORDER_DELIVERED = "order.delivered"
    ORDER_MESSAGE = "order.message"
    ORDER_COMPLETED = "order.completed"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_DISPUTED = "order.disputed"
