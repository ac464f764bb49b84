"""Quota Meter — usage accounting for workspace orders.

A workspace order buys `quota_limit` generations inside a time window
(24h, 7 days or 30 days depending on the service's billing period). The
meter is the only writer of quota_total, quota_used and workspace_expires_at,
and every write is conditional so concurrent generations cannot overspend.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from atelier_engine.domain.enums import BillingPeriod
from atelier_engine.infrastructure.database.repositories import OrderRepository
from atelier_engine.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from atelier_engine.infrastructure.database.orm_models import Order, Service

logger = get_logger(__name__)


class QuotaMeter:
    """Opens, consumes and inspects workspace quota windows."""

    async def open_window(
        self,
        session: AsyncSession,
        order: Order,
        service: Service,
        now: datetime | None = None,
    ) -> datetime | None:
        """Start the usage window for a freshly paid workspace order.

        Returns:
            The window's expiry, or None if a window was already open.
        """
        now = now or datetime.now(UTC)
        expires_at = now + BillingPeriod(service.billing_period).horizon
        opened = await OrderRepository(session).open_quota_window(
            order.id, service.quota_limit, expires_at
        )
        if not opened:
            logger.warning("quota.window_already_open", order_id=str(order.id))
            return None
        logger.info(
            "quota.window_opened",
            order_id=str(order.id),
            quota_total=service.quota_limit,
            expires_at=expires_at.isoformat(),
        )
        return expires_at

    async def consume(self, session: AsyncSession, order_id) -> bool:  # noqa: ANN001
        """Use one generation. False if the quota was already spent."""
        consumed = await OrderRepository(session).increment_quota_used(order_id)
        if not consumed:
            logger.warning("quota.consume_rejected", order_id=str(order_id))
        return consumed

    @staticmethod
    def is_exhausted(order: Order) -> bool:
        return order.quota_used >= order.quota_total

    @staticmethod
    def is_expired(order: Order, now: datetime | None = None) -> bool:
        if order.workspace_expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= order.workspace_expires_at

    @staticmethod
    def remaining(order: Order) -> int:
        return max(order.quota_total - order.quota_used, 0)
