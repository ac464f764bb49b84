"""MCP Tool definitions for the Atelier engine.

These tools expose the order lifecycle via the Model Context Protocol,
allowing AI agents to discover and call them programmatically.

Tools:
    - create_order: Order a service from a provider agent
    - check_order: Check status, quota and deliverable of an order
    - pay_order: Record the USDC payment for an order
    - generate_asset: Run one generation inside a workspace order
    - approve_order: Approve a delivery and release the provider payout
    - cancel_order: Cancel an order, refunding it if it was paid

The MCP server is mounted into FastAPI at /mcp via app.mount().
Every tool calls the same OrderService as the REST routes; errors come back
as {"error": ..., "code": ...} instead of exceptions.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from mcp.server.fastmcp import FastMCP

from atelier_engine.domain.exceptions import AtelierError
from atelier_engine.logging_config import get_logger

if TYPE_CHECKING:
    from atelier_engine.infrastructure.database.orm_models import Order
    from atelier_engine.services.order_service import ActionResult, OrderService

logger = get_logger(__name__)

# Initialize the MCP server
# This will be mounted into the FastAPI app in main.py
mcp = FastMCP(
    "Atelier",
    json_response=True,
)


def _order_service() -> OrderService:
    from atelier_engine.services.factory import get_services

    return get_services().orders


def _summary(order: Order) -> dict[str, Any]:
    return {
        "order_id": str(order.id),
        "status": order.status,
        "quoted_price_usd": str(order.quoted_price_usd) if order.quoted_price_usd is not None else None,
        "platform_fee_usd": str(order.platform_fee_usd) if order.platform_fee_usd is not None else None,
        "amount_due_usd": str(order.amount_due) if order.amount_due is not None else None,
        "deliverable_url": order.deliverable_url,
        "quota_total": order.quota_total,
        "quota_used": order.quota_used,
    }


def _result(result: ActionResult, message: str) -> dict[str, Any]:
    body = _summary(result.order)
    body["message"] = message
    if result.warnings:
        body["warnings"] = result.warnings
        body["reconciliation_required"] = result.reconciliation_required
    if result.settlement is not None:
        body["settlement_tx_hash"] = result.settlement.tx_hash
    return body


def _error(tool: str, exc: Exception) -> dict[str, Any]:
    if isinstance(exc, AtelierError):
        logger.warning(f"mcp.{tool}.rejected", code=exc.code, error=exc.message)
        return {"error": exc.message, "code": exc.code}
    logger.exception(f"mcp.{tool}.error")
    return {"error": str(exc)}


@mcp.tool()
async def create_order(
    service_id: str,
    brief: str,
    client_wallet: str = "",
    client_agent_id: str = "",
    reference_urls: list[str] | None = None,
) -> dict:
    """Order a service from a provider agent.

    Args:
        service_id: UUID of the service to buy.
        brief: What you want produced (10-1000 characters).
        client_wallet: Your EVM wallet; payments must come from it.
        client_agent_id: Your agent id, if you have one.
        reference_urls: Up to 5 reference images or clips.

    Returns:
        Order details including the order_id and the amount due if priced.
    """
    try:
        order = await _order_service().create_order(
            service_id=uuid.UUID(service_id),
            brief=brief,
            client_wallet=client_wallet or None,
            client_agent_id=client_agent_id or None,
            reference_urls=reference_urls,
        )
    except Exception as exc:
        return _error("create_order", exc)

    body = _summary(order)
    body["message"] = (
        "Order created. Next step: pay amount_due_usd in USDC to the treasury."
        if order.status == "quoted"
        else "Order created. Waiting for the provider's quote."
    )
    return body


@mcp.tool()
async def check_order(order_id: str) -> dict:
    """Check the current status of an order.

    Args:
        order_id: UUID of the order.

    Returns:
        Status, allowed next events, quota usage and deliverable.
    """
    try:
        status = await _order_service().get_status(uuid.UUID(order_id))
    except Exception as exc:
        return _error("check_order", exc)

    body = dict(status)
    for key in ("workspace_expires_at", "review_deadline"):
        if body[key] is not None:
            body[key] = body[key].isoformat()
    if body["amount_due_usd"] is not None:
        body["amount_due_usd"] = str(body["amount_due_usd"])
    return body


@mcp.tool()
async def pay_order(order_id: str, payer: str, tx_hash: str) -> dict:
    """Record the USDC payment for a quoted order.

    Args:
        order_id: UUID of the order.
        payer: Your client wallet or agent id.
        tx_hash: Hash of your USDC transfer to the platform treasury.

    Returns:
        The paid order; automated services come back already delivered.
    """
    try:
        result = await _order_service().pay(uuid.UUID(order_id), payer, tx_hash)
    except Exception as exc:
        return _error("pay_order", exc)
    return _result(result, f"Payment confirmed. Order is {result.order.status}.")


@mcp.tool()
async def generate_asset(
    order_id: str,
    client: str,
    prompt: str,
    image_url: str = "",
) -> dict:
    """Run one generation inside a workspace order.

    Args:
        order_id: UUID of the workspace order.
        client: Your client wallet or agent id.
        prompt: What to generate next.
        image_url: Optional source image for image-to-video models.

    Returns:
        The generated asset URL and remaining quota.
    """
    try:
        result = await _order_service().generate(
            uuid.UUID(order_id), client, prompt, image_url or None
        )
    except Exception as exc:
        return _error("generate_asset", exc)

    body = _result(result, "Generation complete.")
    body["asset_url"] = result.deliverable.deliverable_url
    body["media_type"] = result.deliverable.deliverable_media_type
    body["quota_remaining"] = max(result.order.quota_total - result.order.quota_used, 0)
    return body


@mcp.tool()
async def approve_order(order_id: str, client: str) -> dict:
    """Approve a delivered order and release payment to the provider.

    Args:
        order_id: UUID of the order.
        client: Your client wallet or agent id.
    """
    try:
        result = await _order_service().approve(uuid.UUID(order_id), client)
    except Exception as exc:
        return _error("approve_order", exc)
    return _result(result, "Order completed.")


@mcp.tool()
async def cancel_order(order_id: str, actor: str, reason: str = "") -> dict:
    """Cancel an order before work starts. Paid orders are refunded in full.

    Args:
        order_id: UUID of the order.
        actor: Your client wallet / agent id, or the provider agent id.
        reason: Optional reason recorded in the audit trail.
    """
    try:
        result = await _order_service().cancel(uuid.UUID(order_id), actor, reason or None)
    except Exception as exc:
        return _error("cancel_order", exc)
    return _result(result, "Order cancelled.")
