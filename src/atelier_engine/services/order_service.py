"""Order Service — core business logic for the order lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Repositories (conditional writes, audit trail)
    - Payment verification and treasury settlement
    - The fulfillment pipeline and quota meter
    - Provider-agent webhooks

Both REST routes and MCP tools call into this service, ensuring a single
source of truth for all business rules.

Every step runs as a short unit of work (one session, one transaction).
Chain lookups, transfers and provider calls happen between units of work,
never inside one. Every status write is a compare-and-swap on the status the
step observed, so of N racing callers exactly one wins and money moves at
most once.
"""

from __future__ import annotations

import re
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError

from atelier_engine.domain.enums import (
    DeliverableStatus,
    EventType,
    MediaType,
    OrderStatus,
    PaymentMethod,
    PriceType,
    WebhookEvent,
)
from atelier_engine.domain.exceptions import (
    AtelierError,
    ConcurrentStateChangeError,
    FulfillmentAttemptsExhaustedError,
    InvalidStateTransitionError,
    NotAWorkspaceOrderError,
    NotOrderPartyError,
    OrderNotFoundError,
    ProviderNotConfiguredError,
    QuotaExhaustedError,
    ServiceNotFoundError,
    SettlementError,
    TransactionAlreadyUsedError,
    ValidationError,
    WorkspaceExpiredError,
)
from atelier_engine.domain.pricing import DEFAULT_FEE_RATE, platform_fee, to_cents
from atelier_engine.domain.state_machine import OrderStateMachine
from atelier_engine.infrastructure.database.orm_models import Order
from atelier_engine.infrastructure.database.repositories import (
    DeliverableRepository,
    EventRepository,
    OrderRepository,
    ServiceRepository,
)
from atelier_engine.logging_config import get_logger
from atelier_engine.orchestration.fulfillment import (
    build_order_prompt,
    build_workspace_prompt,
)
from atelier_engine.services.quota_service import QuotaMeter

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from atelier_engine.config import Settings
    from atelier_engine.infrastructure.database.orm_models import (
        OrderDeliverable,
        OrderEvent,
    )
    from atelier_engine.infrastructure.webhooks import WebhookNotifier
    from atelier_engine.orchestration.fulfillment import FulfillmentService
    from atelier_engine.services.payment_service import PaymentVerifier
    from atelier_engine.services.settlement_service import (
        SettlementExecutor,
        SettlementOutcome,
    )

logger = get_logger(__name__)

BRIEF_MIN_CHARS = 10
BRIEF_MAX_CHARS = 1000
PROMPT_MAX_CHARS = 2000
MAX_REFERENCE_URLS = 5
TX_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")
SYSTEM_ACTOR = "SYSTEM"


@dataclass
class ActionResult:
    """Outcome of an order action.

    Settlement problems never fail an action: the state change stands and
    the caller is told through `warnings` and `reconciliation_required`.
    """

    order: Order
    warnings: list[str] = field(default_factory=list)
    reconciliation_required: bool = False
    deliverable: OrderDeliverable | None = None
    settlement: SettlementOutcome | None = None


@dataclass
class _UnitOfWork:
    session: AsyncSession
    orders: OrderRepository
    deliverables: DeliverableRepository
    events: EventRepository
    services: ServiceRepository


def _same_party(a: str | None, b: str | None) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def _order_payload(order: Order) -> dict[str, Any]:
    return {
        "order_id": str(order.id),
        "service_id": str(order.service_id),
        "status": order.status,
        "client_agent_id": order.client_agent_id,
        "client_wallet": order.client_wallet,
        "quoted_price_usd": str(order.quoted_price_usd) if order.quoted_price_usd is not None else None,
        "deliverable_url": order.deliverable_url,
    }


class OrderService:
    """Manages the order lifecycle from creation to settlement."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        payment_verifier: PaymentVerifier,
        settlement: SettlementExecutor,
        fulfillment: FulfillmentService,
        quota: QuotaMeter | None = None,
        notifier: WebhookNotifier | None = None,
        fee_rate: Decimal = DEFAULT_FEE_RATE,
        max_fulfillment_attempts: int = 3,
        fulfillment_stall: timedelta = timedelta(minutes=10),
        review_window: timedelta = timedelta(hours=48),
    ) -> None:
        self._session_factory = session_factory
        self._payments = payment_verifier
        self._settlement = settlement
        self._fulfillment = fulfillment
        self._quota = quota or QuotaMeter()
        self._notifier = notifier
        self._fee_rate = fee_rate
        self._max_attempts = max_fulfillment_attempts
        self._stall = fulfillment_stall
        self._review_window = review_window

    @classmethod
    def from_settings(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        **collaborators: Any,
    ) -> OrderService:
        """Build a service with the order limits taken from Settings."""
        return cls(
            session_factory,
            fee_rate=settings.platform_fee_rate,
            max_fulfillment_attempts=settings.max_fulfillment_attempts,
            fulfillment_stall=timedelta(minutes=settings.fulfillment_stall_minutes),
            review_window=timedelta(hours=settings.review_window_hours),
            **collaborators,
        )

    # ------------------------------------------------------------------
    # Order Creation
    # ------------------------------------------------------------------

    async def create_order(
        self,
        service_id: uuid.UUID,
        brief: str,
        client_wallet: str | None = None,
        client_agent_id: str | None = None,
        reference_urls: list[str] | None = None,
    ) -> Order:
        """Create an order for a service.

        Fixed-price services start quoted with the platform fee already
        derived; quote-priced services wait for the provider in pending_quote.
        """
        brief = (brief or "").strip()
        if not BRIEF_MIN_CHARS <= len(brief) <= BRIEF_MAX_CHARS:
            raise ValidationError(
                f"Brief must be between {BRIEF_MIN_CHARS} and {BRIEF_MAX_CHARS} characters"
            )
        reference_urls = list(reference_urls or [])
        if len(reference_urls) > MAX_REFERENCE_URLS:
            raise ValidationError(f"At most {MAX_REFERENCE_URLS} reference URLs are allowed")
        if not client_wallet and not client_agent_id:
            raise ValidationError("Either client_wallet or client_agent_id is required")

        async with self._unit_of_work() as uow:
            service = await uow.services.get_by_id(service_id)
            if service is None or not service.active:
                raise ServiceNotFoundError(str(service_id))

            order = Order(
                service_id=service.id,
                provider_agent_id=service.agent_id,
                client_wallet=client_wallet,
                client_agent_id=client_agent_id,
                brief=brief,
                reference_urls=reference_urls or None,
                status=OrderStatus.PENDING_QUOTE.value,
            )
            if service.price_type == PriceType.FIXED and service.price_usd and service.price_usd > 0:
                price = to_cents(service.price_usd)
                order.quoted_price_usd = price
                order.platform_fee_usd = platform_fee(price, self._fee_rate)
                order.status = OrderStatus.QUOTED.value

            order = await uow.orders.create(order)
            await uow.events.record(
                order_id=order.id,
                event_type=EventType.ORDER_CREATED,
                old_status=None,
                new_status=OrderStatus(order.status),
                actor=(client_agent_id or client_wallet)[:64],
                metadata={"service_id": str(service.id), "brief_chars": len(brief)},
            )
            order_id = order.id

        order = await self._reload(order_id)
        logger.info(
            "order.created",
            order_id=str(order.id),
            service_id=str(service_id),
            status=order.status,
        )
        self._notify(order, WebhookEvent.ORDER_CREATED, {"brief": brief})
        return order

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    async def quote(self, order_id: uuid.UUID, actor: str, price_usd: Decimal) -> ActionResult:
        """Provider prices a pending order."""
        price = to_cents(Decimal(price_usd))
        if price <= 0:
            raise ValidationError("Quoted price must be greater than zero")
        fee = platform_fee(price, self._fee_rate)

        async with self._unit_of_work() as uow:
            order = await self._load(uow, order_id)
            self._require_provider(order, actor)
            await self._cas(
                uow,
                order,
                "provider_quotes",
                EventType.ORDER_QUOTED,
                actor,
                metadata={"price_usd": str(price), "platform_fee_usd": str(fee)},
                quoted_price_usd=price,
                platform_fee_usd=fee,
            )

        order = await self._reload(order_id)
        logger.info("order.quoted", order_id=str(order_id), price=str(price), fee=str(fee))
        self._notify(order, WebhookEvent.ORDER_QUOTED, {"quoted_price_usd": str(price)})
        return ActionResult(order=order)

    async def accept_quote(self, order_id: uuid.UUID, actor: str) -> ActionResult:
        """Client accepts the provider's quote."""
        async with self._unit_of_work() as uow:
            order = await self._load(uow, order_id)
            self._require_client(order, actor)
            await self._cas(uow, order, "client_accepts", EventType.QUOTE_ACCEPTED, actor)

        logger.info("order.accepted", order_id=str(order_id))
        return ActionResult(order=await self._reload(order_id))

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    async def pay(
        self,
        order_id: uuid.UUID,
        actor: str,
        tx_hash: str,
        payer_wallet: str | None = None,
    ) -> ActionResult:
        """Record a verified client payment and start fulfillment.

        The expected sender is the client wallet of record, else
        `payer_wallet`, else the actor itself.

        Metered services open their quota window and go straight to
        in_progress. Services with an automated provider are fulfilled
        synchronously; a fulfillment failure leaves the order paid and is
        reported as a warning.

        Raises:
            TransactionAlreadyUsedError: The transaction funds another order.
            PaymentVerificationError: The chain does not show a valid payment.
        """
        tx_hash = (tx_hash or "").strip().lower()
        if not TX_HASH_RE.match(tx_hash):
            raise ValidationError("tx_hash must be a 0x-prefixed 32-byte hex string")

        # --- 1. Guard and anti-replay check ---
        async with self._unit_of_work() as uow:
            order = await self._load(uow, order_id)
            self._require_client(order, actor)
            observed = OrderStatus(order.status)
            self._guard(observed, "payment_confirmed")
            if await uow.orders.find_by_escrow_tx_hash(tx_hash) is not None:
                raise TransactionAlreadyUsedError(tx_hash)
            payer = order.client_wallet or payer_wallet or actor
            amount_due = order.amount_due

        # --- 2. On-chain verification (outside any transaction) ---
        await self._payments.verify(tx_hash, payer, amount_due)

        # --- 3. Single conditional write ---
        now = datetime.now(UTC)
        try:
            async with self._unit_of_work() as uow:
                order = await self._load(uow, order_id)
                await self._cas(
                    uow,
                    order,
                    "payment_confirmed",
                    EventType.PAYMENT_CONFIRMED,
                    actor,
                    expected=observed,
                    metadata={"tx_hash": tx_hash, "amount_usdc": str(amount_due)},
                    escrow_tx_hash=tx_hash,
                    payment_method=PaymentMethod.USDC_BASE.value,
                    paid_at=now,
                    client_wallet=payer,
                )
        except IntegrityError as exc:
            raise TransactionAlreadyUsedError(tx_hash) from exc

        order = await self._reload(order_id)
        logger.info("order.paid", order_id=str(order_id), tx_hash=tx_hash, amount=str(amount_due))
        self._notify(order, WebhookEvent.ORDER_PAID, {"tx_hash": tx_hash})

        # --- 4. Kick off fulfillment ---
        service = order.service
        warnings: list[str] = []
        if service.is_workspace:
            await self._open_workspace(order_id)
        elif service.provider_key:
            warnings = await self._run_fulfillment(order_id, SYSTEM_ACTOR)

        return ActionResult(order=await self._reload(order_id), warnings=warnings)

    async def _open_workspace(self, order_id: uuid.UUID) -> None:
        async with self._unit_of_work() as uow:
            order = await self._load(uow, order_id)
            expires_at = await self._quota.open_window(uow.session, order, order.service)
            await self._cas(
                uow,
                order,
                "fulfillment_started",
                EventType.WORKSPACE_OPENED,
                SYSTEM_ACTOR,
                metadata={
                    "quota_total": order.service.quota_limit,
                    "expires_at": expires_at.isoformat() if expires_at else None,
                },
                fulfillment_started_at=datetime.now(UTC),
            )
        logger.info("order.workspace_opened", order_id=str(order_id))

    # ------------------------------------------------------------------
    # Automated fulfillment (single orders)
    # ------------------------------------------------------------------

    async def retry_fulfillment(self, order_id: uuid.UUID, actor: str | None = None) -> ActionResult:
        """Run automated fulfillment again for a paid order.

        `actor` is the provider agent; None means an operator.
        """
        async with self._unit_of_work() as uow:
            order = await self._load(uow, order_id)
            if actor is not None:
                self._require_provider(order, actor)
            if order.service.is_workspace:
                raise ValidationError("Workspace orders are fulfilled through generate")
            if not order.service.provider_key:
                raise ProviderNotConfiguredError(order.service.provider_key)
            self._guard(OrderStatus(order.status), "fulfillment_started")

        warnings = await self._run_fulfillment(order_id, actor or SYSTEM_ACTOR)
        return ActionResult(order=await self._reload(order_id), warnings=warnings)

    async def _run_fulfillment(self, order_id: uuid.UUID, actor: str) -> list[str]:
        """paid -> in_progress -> delivered, or back to paid on failure."""
        async with self._unit_of_work() as uow:
            order = await self._load(uow, order_id)
            if order.fulfillment_attempts >= self._max_attempts:
                raise FulfillmentAttemptsExhaustedError(order.fulfillment_attempts)
            attempt = order.fulfillment_attempts + 1
            await self._cas(
                uow,
                order,
                "fulfillment_started",
                EventType.FULFILLMENT_STARTED,
                actor,
                metadata={"attempt": attempt},
                fulfillment_attempts=Order.fulfillment_attempts + 1,
                fulfillment_started_at=datetime.now(UTC),
                last_fulfillment_error=None,
            )
            service = order.service
            prompt = build_order_prompt(service.system_prompt, order.brief)
            agent_id = str(order.provider_agent_id)
            image_url = (order.reference_urls or [None])[0]

        log = logger.bind(order_id=str(order_id), attempt=attempt)
        log.info("fulfillment.started", provider=service.provider_key)

        try:
            asset = await self._fulfillment.produce(
                service, prompt, agent_id=agent_id, image_url=image_url
            )
        except Exception as exc:
            reason = getattr(exc, "message", None) or str(exc) or type(exc).__name__
            log.error("fulfillment.failed", error=reason)
            async with self._unit_of_work() as uow:
                await self._revert_to_paid(
                    uow,
                    order_id,
                    EventType.FULFILLMENT_FAILED,
                    reason,
                    {"attempt": attempt, "error": reason[:500]},
                )
            return [
                f"Automatic fulfillment failed: {reason}. "
                "The order remains paid; retry fulfillment or deliver manually."
            ]

        async with self._unit_of_work() as uow:
            order = await self._load(uow, order_id)
            await self._cas(
                uow,
                order,
                "work_delivered",
                EventType.WORK_DELIVERED,
                SYSTEM_ACTOR,
                metadata={"deliverable_url": asset.url, "media_type": asset.media_type, "model": asset.model},
                deliverable_url=asset.url,
                deliverable_media_type=str(asset.media_type),
            )

        log.info("fulfillment.delivered", media_type=asset.media_type)
        self._notify(
            await self._reload(order_id),
            WebhookEvent.ORDER_DELIVERED,
            {"deliverable_url": asset.url, "media_type": str(asset.media_type)},
        )
        return []

    # ------------------------------------------------------------------
    # Workspace generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        order_id: uuid.UUID,
        actor: str,
        prompt: str,
        image_url: str | None = None,
    ) -> ActionResult:
        """Run one generation inside a workspace order.

        Raises:
            NotAWorkspaceOrderError: The order has no quota.
            WorkspaceExpiredError / QuotaExhaustedError: The window is over;
                the order is advanced to delivered and nothing is generated.
            ProviderError: The generation failed; the deliverable is marked
                failed and quota is untouched.
        """
        prompt = (prompt or "").strip()
        if not prompt or len(prompt) > PROMPT_MAX_CHARS:
            raise ValidationError(f"Prompt must be between 1 and {PROMPT_MAX_CHARS} characters")

        closing: Exception | None = None
        async with self._unit_of_work() as uow:
            order = await self._load(uow, order_id)
            self._require_client(order, actor)
            if not order.is_workspace:
                raise NotAWorkspaceOrderError(str(order_id))
            if order.status != OrderStatus.IN_PROGRESS:
                raise InvalidStateTransitionError(order.status, "generate")

            if self._quota.is_expired(order):
                closing = WorkspaceExpiredError(str(order_id))
                reason = "expired"
            elif self._quota.is_exhausted(order):
                closing = QuotaExhaustedError(order.quota_used, order.quota_total)
                reason = "quota_reached"

            if closing is not None:
                await self._close_workspace(uow, order_id, reason)
            else:
                deliverable = await uow.deliverables.create(order_id, prompt)
                deliverable_id = deliverable.id
                previous = await uow.deliverables.completed_prompts(order_id)
                service = order.service
                full_prompt = build_workspace_prompt(
                    service.system_prompt, order.brief, previous, prompt
                )
                agent_id = str(order.provider_agent_id)

        if closing is not None:
            logger.info("order.workspace_closed", order_id=str(order_id), reason=reason)
            self._notify(await self._reload(order_id), WebhookEvent.ORDER_DELIVERED, {"reason": reason})
            raise closing

        async with self._unit_of_work() as uow:
            await uow.deliverables.set_status(deliverable_id, DeliverableStatus.GENERATING)

        log = logger.bind(order_id=str(order_id), deliverable_id=str(deliverable_id))
        log.info("workspace.generating", previous_generations=len(previous))

        try:
            asset = await self._fulfillment.produce(
                service, full_prompt, agent_id=agent_id, image_url=image_url
            )
        except Exception as exc:
            reason = getattr(exc, "message", None) or str(exc) or type(exc).__name__
            async with self._unit_of_work() as uow:
                await uow.deliverables.set_status(
                    deliverable_id, DeliverableStatus.FAILED, error=reason[:2000]
                )
            log.error("workspace.generation_failed", error=reason)
            raise

        lost: AtelierError | None = None
        async with self._unit_of_work() as uow:
            consumed = await self._quota.consume(uow.session, order_id)
            order = await self._load(uow, order_id)
            if consumed:
                await uow.deliverables.set_status(
                    deliverable_id,
                    DeliverableStatus.COMPLETED,
                    deliverable_url=asset.url,
                    deliverable_media_type=str(asset.media_type),
                )
            else:
                # the window closed while the provider was working
                if self._quota.is_exhausted(order):
                    lost = QuotaExhaustedError(order.quota_used, order.quota_total)
                else:
                    lost = WorkspaceExpiredError(str(order_id))
                await uow.deliverables.set_status(
                    deliverable_id, DeliverableStatus.FAILED, error=lost.message
                )
            reached = consumed and self._quota.is_exhausted(order)
            if reached:
                await self._close_workspace(uow, order_id, "quota_reached")

        order = await self._reload(order_id)
        if lost is not None:
            log.warning("workspace.generation_discarded", reason=lost.code)
            raise lost

        log.info("workspace.generated", quota_used=order.quota_used, quota_total=order.quota_total)
        if reached:
            self._notify(order, WebhookEvent.ORDER_DELIVERED, {"reason": "quota_reached"})

        async with self._unit_of_work() as uow:
            deliverable = await uow.deliverables.get_by_id(deliverable_id)
        return ActionResult(order=order, deliverable=deliverable)

    async def _close_workspace(self, uow: _UnitOfWork, order_id: uuid.UUID, reason: str) -> bool:
        new_status = self._guard(OrderStatus.IN_PROGRESS, "work_delivered")
        closed = await uow.orders.transition_status(order_id, OrderStatus.IN_PROGRESS, new_status)
        if closed:
            await uow.events.record(
                order_id=order_id,
                event_type=EventType.WORKSPACE_CLOSED,
                old_status=OrderStatus.IN_PROGRESS,
                new_status=new_status,
                actor=SYSTEM_ACTOR,
                metadata={"reason": reason},
            )
        return closed

    # ------------------------------------------------------------------
    # Manual delivery
    # ------------------------------------------------------------------

    async def deliver(
        self,
        order_id: uuid.UUID,
        actor: str,
        deliverable_url: str,
        media_type: str,
    ) -> ActionResult:
        """Provider delivers work by hand; a paid order passes through in_progress."""
        if not deliverable_url or not deliverable_url.startswith(("http://", "https://")):
            raise ValidationError("deliverable_url must be an http(s) URL")
        try:
            media = MediaType(media_type)
        except ValueError as exc:
            raise ValidationError("media_type must be 'image' or 'video'") from exc

        async with self._unit_of_work() as uow:
            order = await self._load(uow, order_id)
            self._require_provider(order, actor)
            if order.status == OrderStatus.PAID:
                await self._cas(
                    uow,
                    order,
                    "fulfillment_started",
                    EventType.FULFILLMENT_STARTED,
                    actor,
                    metadata={"manual": True},
                    fulfillment_started_at=datetime.now(UTC),
                )
            await self._cas(
                uow,
                order,
                "work_delivered",
                EventType.WORK_DELIVERED,
                actor,
                expected=OrderStatus.IN_PROGRESS if order.status == OrderStatus.PAID else None,
                metadata={"deliverable_url": deliverable_url, "media_type": media.value},
                deliverable_url=deliverable_url,
                deliverable_media_type=media.value,
            )

        order = await self._reload(order_id)
        logger.info("order.delivered", order_id=str(order_id), manual=True)
        self._notify(
            order,
            WebhookEvent.ORDER_DELIVERED,
            {"deliverable_url": deliverable_url, "media_type": media.value},
        )
        return ActionResult(order=order)

    # ------------------------------------------------------------------
    # Review and settlement
    # ------------------------------------------------------------------

    async def approve(self, order_id: uuid.UUID, actor: str) -> ActionResult:
        """Client approves the delivery; the provider is paid the quoted price.

        The completion is committed first. A payout failure does not undo it;
        the result carries a reconciliation warning instead.
        """
        async with self._unit_of_work() as uow:
            order = await self._load(uow, order_id)
            self._require_client(order, actor)
            await self._cas(uow, order, "client_approves", EventType.ORDER_COMPLETED, actor)
            price = order.quoted_price_usd or Decimal("0")
            destination = order.provider_agent.payout_destination

        order = await self._reload(order_id)
        logger.info("order.completed", order_id=str(order_id))
        self._notify(order, WebhookEvent.ORDER_COMPLETED, {})

        result = ActionResult(order=order)
        if price <= 0:
            return result
        if not destination:
            result.warnings.append(
                "Provider agent has no payout wallet; the payout needs manual reconciliation"
            )
            result.reconciliation_required = True
            logger.error("order.payout_no_destination", order_id=str(order_id))
            return result

        try:
            result.settlement = await self._settlement.payout(order_id, destination, price)
        except SettlementError as exc:
            logger.error("order.payout_failed", order_id=str(order_id), error=exc.message)
            result.warnings.append(f"Payout failed: {exc.message}")
            result.reconciliation_required = True

        result.order = await self._reload(order_id)
        return result

    async def dispute(self, order_id: uuid.UUID, actor: str, reason: str) -> ActionResult:
        """Client disputes the delivery. No funds move."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A dispute reason is required")

        async with self._unit_of_work() as uow:
            order = await self._load(uow, order_id)
            self._require_client(order, actor)
            await self._cas(
                uow,
                order,
                "client_disputes",
                EventType.ORDER_DISPUTED,
                actor,
                metadata={"reason": reason[:1000]},
            )

        order = await self._reload(order_id)
        logger.info("order.disputed", order_id=str(order_id))
        self._notify(order, WebhookEvent.ORDER_DISPUTED, {"reason": reason})
        return ActionResult(order=order)

    async def cancel(
        self,
        order_id: uuid.UUID,
        actor: str,
        reason: str | None = None,
    ) -> ActionResult:
        """Cancel an order before work starts; a paid order is refunded in full."""
        async with self._unit_of_work() as uow:
            order = await self._load(uow, order_id)
            if not (self._is_client(order, actor) or self._is_provider(order, actor)):
                raise NotOrderPartyError(str(order_id), "client or provider")
            was_paid = order.status == OrderStatus.PAID
            await self._cas(
                uow,
                order,
                "order_cancelled",
                EventType.ORDER_CANCELLED,
                actor,
                metadata={"reason": reason, "refund_due": was_paid},
            )
            refund_amount = order.amount_due
            refund_to = order.client_wallet

        order = await self._reload(order_id)
        logger.info("order.cancelled", order_id=str(order_id), refund_due=was_paid)
        self._notify(order, WebhookEvent.ORDER_CANCELLED, {"reason": reason})

        result = ActionResult(order=order)
        if not was_paid or not refund_amount:
            return result

        try:
            result.settlement = await self._settlement.refund(order_id, refund_to, refund_amount)
        except SettlementError as exc:
            logger.error("order.refund_failed", order_id=str(order_id), error=exc.message)
            result.warnings.append(f"Refund failed: {exc.message}")
            result.reconciliation_required = True

        result.order = await self._reload(order_id)
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: uuid.UUID) -> Order:
        """Fetch an order, applying any time-based transition that is due.

        - A workspace past its expiry closes to delivered.
        - A single order stuck in_progress without a deliverable for longer
          than the stall window reverts to paid.
        """
        now = datetime.now(UTC)
        async with self._unit_of_work() as uow:
            order = await self._load(uow, order_id)
            if order.status == OrderStatus.IN_PROGRESS:
                if order.is_workspace and self._quota.is_expired(order, now):
                    if await self._close_workspace(uow, order_id, "expired"):
                        logger.info("order.workspace_expired", order_id=str(order_id))
                elif (
                    not order.is_workspace
                    and order.deliverable_url is None
                    and order.fulfillment_started_at is not None
                    and now - order.fulfillment_started_at > self._stall
                ):
                    if await self._revert_to_paid(
                        uow,
                        order_id,
                        EventType.FULFILLMENT_STALLED,
                        "Fulfillment stalled",
                        {"started_at": order.fulfillment_started_at.isoformat()},
                    ):
                        logger.warning("order.fulfillment_stalled", order_id=str(order_id))
        return await self._reload(order_id)

    async def get_status(self, order_id: uuid.UUID) -> dict[str, Any]:
        """Compact status view with the actions currently allowed."""
        order = await self.get_order(order_id)
        return {
            "order_id": str(order.id),
            "status": order.status,
            "allowed_events": OrderStateMachine(order.status).get_allowed_events(),
            "is_workspace": order.is_workspace,
            "quota_total": order.quota_total,
            "quota_used": order.quota_used,
            "quota_remaining": self._quota.remaining(order),
            "workspace_expires_at": order.workspace_expires_at,
            "review_deadline": order.review_deadline,
            "deliverable_url": order.deliverable_url,
            "amount_due_usd": order.amount_due,
        }

    async def get_deliverables(self, order_id: uuid.UUID) -> list[OrderDeliverable]:
        async with self._unit_of_work() as uow:
            await self._load(uow, order_id)
            return await uow.deliverables.get_by_order(order_id)

    async def get_events(self, order_id: uuid.UUID) -> list[OrderEvent]:
        async with self._unit_of_work() as uow:
            await self._load(uow, order_id)
            return await uow.events.get_by_order(order_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[_UnitOfWork]:
        async with self._session_factory() as session, session.begin():
            yield _UnitOfWork(
                session=session,
                orders=OrderRepository(session, review_window=self._review_window),
                deliverables=DeliverableRepository(session),
                events=EventRepository(session),
                services=ServiceRepository(session),
            )

    async def _reload(self, order_id: uuid.UUID) -> Order:
        async with self._session_factory() as session:
            order = await OrderRepository(session).get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(str(order_id))
        return order

    @staticmethod
    async def _load(uow: _UnitOfWork, order_id: uuid.UUID) -> Order:
        order = await uow.orders.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(str(order_id))
        return order

    @staticmethod
    def _guard(current: OrderStatus, event_name: str) -> OrderStatus:
        """Validate a transition with the state machine and return the target.

        Raises InvalidStateTransitionError if the transition is illegal.
        """
        from statemachine.exceptions import TransitionNotAllowed

        sm = OrderStateMachine(current_status=current.value)
        event_method = getattr(sm, event_name, None)
        if event_method is None:
            raise InvalidStateTransitionError(current.value, event_name)
        try:
            event_method()
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(current.value, event_name) from err
        return OrderStatus(sm.status)

    async def _cas(
        self,
        uow: _UnitOfWork,
        order: Order,
        event_name: str,
        event_type: EventType,
        actor: str,
        *,
        expected: OrderStatus | None = None,
        metadata: dict | None = None,
        **values: Any,
    ) -> OrderStatus:
        """Guard, compare-and-swap and audit one transition.

        `expected` defaults to the status on the loaded order.

        Raises:
            InvalidStateTransitionError: Illegal from the expected status.
            ConcurrentStateChangeError: Someone else moved the order first.
        """
        current = expected or OrderStatus(order.status)
        new_status = self._guard(current, event_name)
        moved = await uow.orders.transition_status(order.id, current, new_status, **values)
        if not moved:
            logger.warning(
                "order.concurrent_change",
                order_id=str(order.id),
                expected=current.value,
                attempted_event=event_name,
            )
            raise ConcurrentStateChangeError(str(order.id), current.value)
        await uow.events.record(
            order_id=order.id,
            event_type=event_type,
            old_status=current,
            new_status=new_status,
            actor=(actor or SYSTEM_ACTOR)[:64],
            metadata=metadata,
        )
        return new_status

    async def _revert_to_paid(
        self,
        uow: _UnitOfWork,
        order_id: uuid.UUID,
        event_type: EventType,
        reason: str,
        metadata: dict,
    ) -> bool:
        """Hand an in_progress order back to paid. Returns False if it already moved on."""
        new_status = self._guard(OrderStatus.IN_PROGRESS, "fulfillment_reverted")
        reverted = await uow.orders.transition_status(
            order_id,
            OrderStatus.IN_PROGRESS,
            new_status,
            last_fulfillment_error=reason[:2000],
        )
        if reverted:
            await uow.events.record(
                order_id=order_id,
                event_type=event_type,
                old_status=OrderStatus.IN_PROGRESS,
                new_status=new_status,
                actor=SYSTEM_ACTOR,
                metadata=metadata,
            )
        return reverted

    @staticmethod
    def _is_client(order: Order, actor: str | None) -> bool:
        return _same_party(actor, order.client_wallet) or (
            bool(actor) and actor == order.client_agent_id
        )

    @staticmethod
    def _is_provider(order: Order, actor: str | None) -> bool:
        if not actor:
            return False
        if actor == str(order.provider_agent_id):
            return True
        agent = order.provider_agent
        return _same_party(actor, agent.owner_wallet)

    def _require_client(self, order: Order, actor: str | None) -> None:
        if not self._is_client(order, actor):
            raise NotOrderPartyError(str(order.id), "client")

    def _require_provider(self, order: Order, actor: str | None) -> None:
        if not self._is_provider(order, actor):
            raise NotOrderPartyError(str(order.id), "provider")

    def _notify(self, order: Order, event: WebhookEvent, extra: dict[str, Any]) -> None:
        if self._notifier is None:
            return
        agent = order.provider_agent
        self._notifier.notify(
            agent.endpoint_url,
            str(agent.id),
            event,
            {**_order_payload(order), **extra},
        )
