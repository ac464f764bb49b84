"""Pydantic schemas for the Order API.

These schemas define the request/response shapes for the REST API and
MCP tools. They are separate from the ORM models to maintain clean
boundaries between the API and database layers.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

WALLET_FIELD = Field(
    ...,
    min_length=42,
    max_length=42,
    pattern=r"^0x[0-9a-fA-F]{40}$",
    description="EVM wallet address (0x-prefixed, 42 chars)",
    examples=["0x742d35Cc6634C0532925a3b844Bc9e7595f2bD18"],
)

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateOrderRequest(BaseModel):
    """Request body for ordering a service."""

    service_id: uuid.UUID
    brief: str = Field(
        ...,
        min_length=10,
        max_length=1000,
        description="What the client wants produced",
        examples=["A 5 second clip of a paper boat drifting down a rainy street"],
    )
    client_wallet: str | None = Field(
        default=None,
        min_length=42,
        max_length=42,
        pattern=r"^0x[0-9a-fA-F]{40}$",
        description="Wallet the client pays from and receives refunds to",
    )
    client_agent_id: str | None = Field(default=None, max_length=64)
    reference_urls: list[str] = Field(default_factory=list, max_length=5)
    idempotency_key: str | None = Field(
        default=None,
        max_length=128,
        description="Optional idempotency key to prevent duplicate order creation",
    )


class ActorRequest(BaseModel):
    """Body for actions that only need to know who is acting."""

    actor: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Client wallet / agent id, or provider agent id",
    )


class QuoteRequest(ActorRequest):
    price_usd: Decimal = Field(..., gt=0, decimal_places=2, examples=[10.0])


class PayRequest(ActorRequest):
    tx_hash: str = Field(
        ...,
        min_length=66,
        max_length=66,
        description="Hash of the USDC transfer to the platform treasury",
    )
    payer_wallet: str | None = Field(
        default=None,
        description="Sending wallet, when the order was placed by agent id only",
    )


class GenerateRequest(ActorRequest):
    prompt: str = Field(..., min_length=1, max_length=2000)
    image_url: str | None = Field(
        default=None, description="Source image for image-to-video models"
    )


class DeliverRequest(ActorRequest):
    deliverable_url: str = Field(..., min_length=8, max_length=2000)
    media_type: Literal["image", "video"]


class DisputeRequest(ActorRequest):
    reason: str = Field(..., min_length=1, max_length=1000)


class CancelRequest(ActorRequest):
    reason: str | None = Field(default=None, max_length=1000)


class RetryFulfillmentRequest(BaseModel):
    actor: str | None = Field(
        default=None,
        max_length=64,
        description="Provider agent id; omit for operator retries",
    )


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class OrderResponse(BaseModel):
    """Full order representation."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    service_id: uuid.UUID
    provider_agent_id: uuid.UUID
    client_agent_id: str | None
    client_wallet: str | None
    brief: str
    reference_urls: list[str] | None
    status: str
    quoted_price_usd: Decimal | None
    platform_fee_usd: Decimal | None
    amount_due: Decimal | None
    payment_method: str | None
    escrow_tx_hash: str | None
    payout_tx_hash: str | None
    deliverable_url: str | None
    deliverable_media_type: str | None
    quota_total: int
    quota_used: int
    workspace_expires_at: datetime | None
    fulfillment_attempts: int
    last_fulfillment_error: str | None
    created_at: datetime
    updated_at: datetime
    paid_at: datetime | None
    delivered_at: datetime | None
    review_deadline: datetime | None
    completed_at: datetime | None


class DeliverableResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    prompt: str
    deliverable_url: str | None
    deliverable_media_type: str | None
    status: str
    error: str | None
    created_at: datetime


class SettlementResponse(BaseModel):
    """A payout or refund attempt from the settlement outbox."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID = Field(validation_alias=AliasChoices("settlement_id", "id"))
    kind: str
    status: str
    recipient_wallet: str = Field(validation_alias=AliasChoices("recipient", "recipient_wallet"))
    amount_usdc: Decimal = Field(validation_alias=AliasChoices("amount", "amount_usdc"))
    tx_hash: str | None = None


class SettlementRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    kind: str
    recipient_wallet: str
    amount_usdc: Decimal
    status: str
    tx_hash: str | None
    error: str | None
    attempts: int
    created_at: datetime
    settled_at: datetime | None


class ActionResponse(BaseModel):
    """Result of an order action, with any settlement warnings."""

    order: OrderResponse
    warnings: list[str] = Field(default_factory=list)
    reconciliation_required: bool = False
    deliverable: DeliverableResponse | None = None
    settlement: SettlementResponse | None = None


class OrderEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(
        default=None, validation_alias=AliasChoices("metadata_json", "metadata")
    )
    created_at: datetime


class OrderStatusResponse(BaseModel):
    """Lightweight status check response."""

    order_id: uuid.UUID
    status: str
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )
    is_workspace: bool
    quota_total: int
    quota_used: int
    quota_remaining: int
    workspace_expires_at: datetime | None
    review_deadline: datetime | None
    deliverable_url: str | None
    amount_due_usd: Decimal | None


class ReconcileResponse(BaseModel):
    confirmed: int
    failed: int
    still_unconfirmed: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    chain: str = "unknown"
    treasury_balance_usdc: Decimal | None = None
    settlements_needing_review: int | None = None
