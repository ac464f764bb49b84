"""Order REST API routes.

These endpoints provide the HTTP interface for the whole order lifecycle.
The MCP tools in mcp_server/tools.py call the same OrderService, ensuring
consistency.

Routes:
    POST   /api/v1/orders                          — Create an order
    GET    /api/v1/orders/{id}                     — Get order details
    GET    /api/v1/orders/{id}/status              — Lightweight status check
    GET    /api/v1/orders/{id}/deliverables        — Workspace generations
    GET    /api/v1/orders/{id}/events              — Audit trail
    POST   /api/v1/orders/{id}/quote               — Provider quotes a price
    POST   /api/v1/orders/{id}/accept              — Client accepts the quote
    POST   /api/v1/orders/{id}/pay                 — Record on-chain payment
    POST   /api/v1/orders/{id}/generate            — One workspace generation
    POST   /api/v1/orders/{id}/deliver             — Provider delivers manually
    POST   /api/v1/orders/{id}/retry-fulfillment   — Re-run automated fulfillment
    POST   /api/v1/orders/{id}/approve             — Client approves, provider paid
    POST   /api/v1/orders/{id}/dispute             — Client disputes delivery
    POST   /api/v1/orders/{id}/cancel              — Cancel, refunding if paid
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Response

from atelier_engine.api.deps import get_order_service, get_redis_client
from atelier_engine.domain.exceptions import DuplicateOperationError
from atelier_engine.infrastructure.redis_client import (
    claim_idempotency_key,
    release_idempotency_key,
    remember_result,
)
from atelier_engine.logging_config import get_logger
from atelier_engine.schemas.orders import (
    ActionResponse,
    ActorRequest,
    CancelRequest,
    CreateOrderRequest,
    DeliverableResponse,
    DeliverRequest,
    DisputeRequest,
    GenerateRequest,
    OrderEventResponse,
    OrderResponse,
    OrderStatusResponse,
    PayRequest,
    QuoteRequest,
    RetryFulfillmentRequest,
    SettlementResponse,
)
from atelier_engine.services.order_service import OrderService

if TYPE_CHECKING:
    from atelier_engine.services.order_service import ActionResult

router = APIRouter(prefix="/api/v1/orders", tags=["Orders"])
logger = get_logger(__name__)


def _action_response(result: ActionResult) -> ActionResponse:
    return ActionResponse(
        order=OrderResponse.model_validate(result.order),
        warnings=result.warnings,
        reconciliation_required=result.reconciliation_required,
        deliverable=(
            DeliverableResponse.model_validate(result.deliverable)
            if result.deliverable is not None
            else None
        ),
        settlement=(
            SettlementResponse.model_validate(result.settlement)
            if result.settlement is not None
            else None
        ),
    )


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=OrderResponse,
    status_code=201,
    summary="Create an order",
)
async def create_order(
    request: CreateOrderRequest,
    response: Response,
    svc: OrderService = Depends(get_order_service),
    redis: aioredis.Redis | None = Depends(get_redis_client),
) -> OrderResponse:
    """Create an order. Fixed-price services start quoted, others pending_quote.

    With an idempotency_key, a repeated request returns the order created by
    the first one.
    """
    key = request.idempotency_key
    if key and redis is not None:
        if not await claim_idempotency_key(redis, key):
            existing = await redis.get(f"idempotency:{key}")
            if existing and existing != "1":
                logger.info("order.idempotent_replay", idempotency_key=key, order_id=existing)
                response.status_code = 200
                return OrderResponse.model_validate(await svc.get_order(uuid.UUID(existing)))
            raise DuplicateOperationError(key)

    try:
        order = await svc.create_order(
            service_id=request.service_id,
            brief=request.brief,
            client_wallet=request.client_wallet,
            client_agent_id=request.client_agent_id,
            reference_urls=request.reference_urls,
        )
    except Exception:
        if key and redis is not None:
            await release_idempotency_key(redis, key)
        raise

    if key and redis is not None:
        await remember_result(redis, key, str(order.id))
    return OrderResponse.model_validate(order)


# ---------------------------------------------------------------------------
# Pricing and payment
# ---------------------------------------------------------------------------


@router.post("/{order_id}/quote", response_model=ActionResponse, summary="Quote a price")
async def quote_order(
    order_id: uuid.UUID,
    request: QuoteRequest,
    svc: OrderService = Depends(get_order_service),
) -> ActionResponse:
    """Provider prices the order. pending_quote -> quoted."""
    return _action_response(await svc.quote(order_id, request.actor, request.price_usd))


@router.post("/{order_id}/accept", response_model=ActionResponse, summary="Accept the quote")
async def accept_order(
    order_id: uuid.UUID,
    request: ActorRequest,
    svc: OrderService = Depends(get_order_service),
) -> ActionResponse:
    """Client accepts the quote. quoted -> accepted."""
    return _action_response(await svc.accept_quote(order_id, request.actor))


@router.post("/{order_id}/pay", response_model=ActionResponse, summary="Record payment")
async def pay_order(
    order_id: uuid.UUID,
    request: PayRequest,
    svc: OrderService = Depends(get_order_service),
) -> ActionResponse:
    """Verify the USDC transfer on chain and mark the order paid.

    Workspace orders open their quota window; automated services are
    fulfilled before the response returns.
    """
    result = await svc.pay(
        order_id, request.actor, request.tx_hash, payer_wallet=request.payer_wallet
    )
    return _action_response(result)


# ---------------------------------------------------------------------------
# Fulfillment
# ---------------------------------------------------------------------------


@router.post("/{order_id}/generate", response_model=ActionResponse, summary="Generate in a workspace")
async def generate_asset(
    order_id: uuid.UUID,
    request: GenerateRequest,
    svc: OrderService = Depends(get_order_service),
) -> ActionResponse:
    """Run one generation against the workspace quota."""
    result = await svc.generate(order_id, request.actor, request.prompt, request.image_url)
    return _action_response(result)


@router.post("/{order_id}/deliver", response_model=ActionResponse, summary="Deliver manually")
async def deliver_order(
    order_id: uuid.UUID,
    request: DeliverRequest,
    svc: OrderService = Depends(get_order_service),
) -> ActionResponse:
    result = await svc.deliver(
        order_id, request.actor, request.deliverable_url, request.media_type
    )
    return _action_response(result)


@router.post(
    "/{order_id}/retry-fulfillment",
    response_model=ActionResponse,
    summary="Retry automated fulfillment",
)
async def retry_fulfillment(
    order_id: uuid.UUID,
    request: RetryFulfillmentRequest,
    svc: OrderService = Depends(get_order_service),
) -> ActionResponse:
    return _action_response(await svc.retry_fulfillment(order_id, request.actor))


# ---------------------------------------------------------------------------
# Review and cancellation
# ---------------------------------------------------------------------------


@router.post("/{order_id}/approve", response_model=ActionResponse, summary="Approve delivery")
async def approve_order(
    order_id: uuid.UUID,
    request: ActorRequest,
    svc: OrderService = Depends(get_order_service),
) -> ActionResponse:
    """Complete the order and pay the provider. Payout problems come back as warnings."""
    return _action_response(await svc.approve(order_id, request.actor))


@router.post("/{order_id}/dispute", response_model=ActionResponse, summary="Dispute delivery")
async def dispute_order(
    order_id: uuid.UUID,
    request: DisputeRequest,
    svc: OrderService = Depends(get_order_service),
) -> ActionResponse:
    return _action_response(await svc.dispute(order_id, request.actor, request.reason))


@router.post("/{order_id}/cancel", response_model=ActionResponse, summary="Cancel an order")
async def cancel_order(
    order_id: uuid.UUID,
    request: CancelRequest,
    svc: OrderService = Depends(get_order_service),
) -> ActionResponse:
    """Cancel before work starts. A paid order is refunded price plus fee."""
    return _action_response(await svc.cancel(order_id, request.actor, request.reason))


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order details")
async def get_order(
    order_id: uuid.UUID,
    svc: OrderService = Depends(get_order_service),
) -> OrderResponse:
    """Fetch an order by its UUID."""
    return OrderResponse.model_validate(await svc.get_order(order_id))


@router.get("/{order_id}/status", response_model=OrderStatusResponse, summary="Check status")
async def get_order_status(
    order_id: uuid.UUID,
    svc: OrderService = Depends(get_order_service),
) -> OrderStatusResponse:
    return OrderStatusResponse(**await svc.get_status(order_id))


@router.get(
    "/{order_id}/deliverables",
    response_model=list[DeliverableResponse],
    summary="List workspace generations",
)
async def get_deliverables(
    order_id: uuid.UUID,
    svc: OrderService = Depends(get_order_service),
) -> list[DeliverableResponse]:
    deliverables = await svc.get_deliverables(order_id)
    return [DeliverableResponse.model_validate(d) for d in deliverables]


@router.get(
    "/{order_id}/events",
    response_model=list[OrderEventResponse],
    summary="Get audit trail",
)
async def get_order_events(
    order_id: uuid.UUID,
    svc: OrderService = Depends(get_order_service),
) -> list[OrderEventResponse]:
    """All events for an order in chronological order."""
    events = await svc.get_events(order_id)
    return [OrderEventResponse.model_validate(e) for e in events]
