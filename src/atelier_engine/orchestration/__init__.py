"""Orchestration layer — the generation pipeline behind order fulfillment."""

from atelier_engine.orchestration.fulfillment import (
    FulfillmentService,
    build_order_prompt,
    build_workspace_prompt,
)

__all__ = ["FulfillmentService", "build_order_prompt", "build_workspace_prompt"]
