"""End-to-end tests of the order lifecycle through OrderService.

Runs against a real SQLite database, the simulated chain and the mock
provider, so every conditional write, audit event and settlement row is the
one production would produce.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import call, patch

import pytest
from sqlalchemy import update

from atelier_engine.domain.enums import OrderStatus, SettlementKind, SettlementStatus
from atelier_engine.domain.exceptions import (
    FulfillmentAttemptsExhaustedError,
    InvalidStateTransitionError,
    NotOrderPartyError,
    PaymentVerificationError,
    ProviderError,
    ServiceNotFoundError,
    TransactionAlreadyUsedError,
    ValidationError,
)
from atelier_engine.infrastructure.database.orm_models import Order, Service
from atelier_engine.services.order_service import OrderService


def _event_types(events) -> list[str]:  # noqa: ANN001
    return [e.event_type for e in events]


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_fixed_price_starts_quoted_with_fee(self, catalog, place_order, order_service) -> None:  # noqa: ANN001
        order = await place_order(catalog.fixed)

        assert order.status == OrderStatus.QUOTED
        assert order.quoted_price_usd == Decimal("10.00")
        assert order.platform_fee_usd == Decimal("1.00")
        assert order.amount_due == Decimal("11.00")
        assert order.provider_agent_id == catalog.agent.id

        events = await order_service.get_events(order.id)
        assert _event_types(events) == ["ORDER_CREATED"]
        assert events[0].old_status is None

    @pytest.mark.asyncio
    async def test_quote_priced_starts_pending(self, catalog, place_order) -> None:  # noqa: ANN001
        order = await place_order(catalog.quoted)
        assert order.status == OrderStatus.PENDING_QUOTE
        assert order.amount_due is None

    @pytest.mark.asyncio
    async def test_brief_length_enforced(self, catalog, place_order) -> None:  # noqa: ANN001
        with pytest.raises(ValidationError, match="Brief must be between"):
            await place_order(catalog.fixed, brief="too short")

    @pytest.mark.asyncio
    async def test_client_identity_required(self, catalog, order_service) -> None:  # noqa: ANN001
        with pytest.raises(ValidationError, match="client_wallet or client_agent_id"):
            await order_service.create_order(catalog.fixed.id, "A paper boat on a rainy street")

    @pytest.mark.asyncio
    async def test_reference_url_limit(self, catalog, place_order) -> None:  # noqa: ANN001
        urls = [f"https://ref/{i}.png" for i in range(6)]
        with pytest.raises(ValidationError, match="At most 5"):
            await place_order(catalog.fixed, reference_urls=urls)

    @pytest.mark.asyncio
    async def test_unknown_or_inactive_service(self, catalog, place_order, session_factory) -> None:  # noqa: ANN001
        async with session_factory() as session, session.begin():
            await session.execute(
                update(Service).where(Service.id == catalog.manual.id).values(active=False)
            )
        with pytest.raises(ServiceNotFoundError):
            await place_order(catalog.manual)


class TestFixedPriceFlow:
    @pytest.mark.asyncio
    async def test_pay_fulfills_automatically(
        self, catalog, place_order, pay_for, order_service, mock_provider  # noqa: ANN001
    ) -> None:
        order = await place_order(catalog.fixed)
        result = await pay_for(order)

        assert result.warnings == []
        delivered = result.order
        assert delivered.status == OrderStatus.DELIVERED
        assert delivered.deliverable_url.startswith("https://mock.atelier.local/")
        assert delivered.deliverable_media_type == "video"
        assert delivered.fulfillment_attempts == 1
        assert delivered.review_deadline - delivered.delivered_at == timedelta(hours=48)
        assert delivered.payment_method == "usdc_base"

        prompt = mock_provider.requests[0].prompt
        assert prompt == "You are a product videographer.\n\nUser request: A paper boat on a rainy street"

        events = await order_service.get_events(order.id)
        assert _event_types(events) == [
            "ORDER_CREATED",
            "PAYMENT_CONFIRMED",
            "FULFILLMENT_STARTED",
            "WORK_DELIVERED",
        ]

    @pytest.mark.asyncio
    async def test_approve_pays_provider_the_quoted_price(
        self, catalog, place_order, pay_for, order_service, chain, wallets  # noqa: ANN001
    ) -> None:
        order = await place_order(catalog.fixed)
        await pay_for(order)

        result = await order_service.approve(order.id, wallets.client)

        assert result.order.status == OrderStatus.COMPLETED
        assert result.order.completed_at is not None
        assert result.warnings == []
        assert result.settlement.kind == SettlementKind.PAYOUT
        assert result.settlement.status == SettlementStatus.CONFIRMED
        # the platform keeps the fee
        assert chain.submitted[0].recipient == wallets.payout
        assert chain.submitted[0].amount == Decimal("10.00")
        assert result.order.payout_tx_hash == result.settlement.tx_hash

        events = _event_types(await order_service.get_events(order.id))
        assert events[-2:] == ["ORDER_COMPLETED", "PAYOUT_SENT"]

    @pytest.mark.asyncio
    async def test_payout_falls_back_to_owner_wallet(
        self, catalog, place_order, pay_for, order_service, chain, wallets, session_factory  # noqa: ANN001
    ) -> None:
        from atelier_engine.infrastructure.database.orm_models import ProviderAgent

        async with session_factory() as session, session.begin():
            await session.execute(
                update(ProviderAgent)
                .where(ProviderAgent.id == catalog.agent.id)
                .values(payout_wallet=None)
            )
        order = await place_order(catalog.fixed)
        await pay_for(order)

        await order_service.approve(order.id, wallets.client)
        assert chain.submitted[0].recipient == wallets.owner

    @pytest.mark.asyncio
    async def test_payout_failure_keeps_completion(
        self, catalog, place_order, pay_for, order_service, chain, reconciler, wallets  # noqa: ANN001
    ) -> None:
        order = await place_order(catalog.fixed)
        await pay_for(order)
        chain.fail_next_submit(RuntimeError("rpc down"))

        result = await order_service.approve(order.id, wallets.client)

        assert result.order.status == OrderStatus.COMPLETED
        assert result.warnings == ["Payout failed: rpc down"]
        assert result.reconciliation_required is True
        assert result.settlement is None

        pending = await reconciler.list_pending()
        assert [(p.kind, p.status) for p in pending] == [("payout", "failed")]
        outcome = await reconciler.retry_failed(pending[0].id)
        assert outcome.status == SettlementStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_only_the_client_approves(
        self, catalog, place_order, pay_for, order_service, wallets  # noqa: ANN001
    ) -> None:
        order = await place_order(catalog.fixed)
        await pay_for(order)

        with pytest.raises(NotOrderPartyError):
            await order_service.approve(order.id, str(catalog.agent.id))

    @pytest.mark.asyncio
    async def test_approve_before_delivery_rejected(self, catalog, place_order, order_service, wallets) -> None:  # noqa: ANN001
        order = await place_order(catalog.fixed)
        with pytest.raises(InvalidStateTransitionError, match="cannot client_approves from quoted"):
            await order_service.approve(order.id, wallets.client)

    @pytest.mark.asyncio
    async def test_client_identified_by_agent_id(
        self, catalog, order_service, chain, wallets  # noqa: ANN001
    ) -> None:
        order = await order_service.create_order(
            catalog.fixed.id, "A paper boat on a rainy street", client_agent_id="agent-007"
        )
        tx = chain.simulate_client_payment(wallets.client, order.amount_due)

        result = await order_service.pay(order.id, "agent-007", tx, payer_wallet=wallets.client)

        assert result.order.status == OrderStatus.DELIVERED
        # refunds and future payments go to the wallet that paid
        assert result.order.client_wallet == wallets.client


class TestPayment:
    @pytest.mark.asyncio
    async def test_transaction_cannot_fund_two_orders(
        self, catalog, place_order, order_service, chain, wallets  # noqa: ANN001
    ) -> None:
        first = await place_order(catalog.manual)
        second = await place_order(catalog.manual)
        tx = chain.simulate_client_payment(wallets.client, first.amount_due)
        await order_service.pay(first.id, wallets.client, tx)

        with pytest.raises(TransactionAlreadyUsedError):
            await order_service.pay(second.id, wallets.client, tx)
        assert (await order_service.get_order(second.id)).status == OrderStatus.QUOTED

    @pytest.mark.asyncio
    async def test_underpayment_rejected(self, catalog, place_order, pay_for, order_service) -> None:  # noqa: ANN001
        order = await place_order(catalog.fixed)

        with pytest.raises(PaymentVerificationError, match="Insufficient payment"):
            await pay_for(order, amount=Decimal("10.00"))

        refreshed = await order_service.get_order(order.id)
        assert refreshed.status == OrderStatus.QUOTED
        assert refreshed.escrow_tx_hash is None

    @pytest.mark.asyncio
    async def test_malformed_hash(self, catalog, place_order, order_service, wallets) -> None:  # noqa: ANN001
        order = await place_order(catalog.fixed)
        with pytest.raises(ValidationError, match="tx_hash"):
            await order_service.pay(order.id, wallets.client, "0x1234")

    @pytest.mark.asyncio
    async def test_uppercase_hash_is_normalised(
        self, catalog, place_order, order_service, chain, wallets  # noqa: ANN001
    ) -> None:
        order = await place_order(catalog.manual)
        tx = chain.simulate_client_payment(wallets.client, order.amount_due)

        result = await order_service.pay(order.id, wallets.client, "0x" + tx[2:].upper())
        assert result.order.escrow_tx_hash == tx

    @pytest.mark.asyncio
    async def test_payment_from_another_wallet_rejected(
        self, catalog, place_order, order_service, chain, wallets  # noqa: ANN001
    ) -> None:
        order = await place_order(catalog.manual)
        tx = chain.simulate_client_payment(wallets.stranger, order.amount_due)

        with pytest.raises(PaymentVerificationError, match="not signed by expected sender"):
            await order_service.pay(order.id, wallets.client, tx)

    @pytest.mark.asyncio
    async def test_paying_twice_rejected(self, catalog, place_order, pay_for) -> None:  # noqa: ANN001
        order = await place_order(catalog.manual)
        await pay_for(order)
        with pytest.raises(InvalidStateTransitionError):
            await pay_for(order)


class TestQuoteFlow:
    @pytest.mark.asyncio
    async def test_quote_accept_pay_deliver(
        self, catalog, place_order, pay_for, order_service, wallets  # noqa: ANN001
    ) -> None:
        order = await place_order(catalog.quoted)
        provider = str(catalog.agent.id)

        quoted = (await order_service.quote(order.id, provider, Decimal("20"))).order
        assert quoted.status == OrderStatus.QUOTED
        assert quoted.platform_fee_usd == Decimal("2.00")

        accepted = (await order_service.accept_quote(order.id, wallets.client)).order
        assert accepted.status == OrderStatus.ACCEPTED

        paid = (await pay_for(accepted)).order
        # no automated provider: the order waits for a manual delivery
        assert paid.status == OrderStatus.PAID

        delivered = (await order_service.deliver(
            order.id, wallets.owner, "https://files.example/storyboard.png", "image"
        )).order
        assert delivered.status == OrderStatus.DELIVERED
        assert delivered.deliverable_media_type == "image"

        events = _event_types(await order_service.get_events(order.id))
        assert events == [
            "ORDER_CREATED",
            "ORDER_QUOTED",
            "QUOTE_ACCEPTED",
            "PAYMENT_CONFIRMED",
            "FULFILLMENT_STARTED",
            "WORK_DELIVERED",
        ]

    @pytest.mark.asyncio
    async def test_only_the_provider_quotes(self, catalog, place_order, order_service, wallets) -> None:  # noqa: ANN001
        order = await place_order(catalog.quoted)
        with pytest.raises(NotOrderPartyError):
            await order_service.quote(order.id, wallets.client, Decimal("20"))

    @pytest.mark.asyncio
    async def test_quote_must_be_positive(self, catalog, place_order, order_service) -> None:  # noqa: ANN001
        order = await place_order(catalog.quoted)
        with pytest.raises(ValidationError):
            await order_service.quote(order.id, str(catalog.agent.id), Decimal("0"))

    @pytest.mark.asyncio
    async def test_fixed_price_cannot_be_requoted(self, catalog, place_order, order_service) -> None:  # noqa: ANN001
        order = await place_order(catalog.fixed)
        with pytest.raises(InvalidStateTransitionError):
            await order_service.quote(order.id, str(catalog.agent.id), Decimal("99"))

    @pytest.mark.asyncio
    async def test_deliver_requires_http_url(self, catalog, place_order, pay_for, order_service, wallets) -> None:  # noqa: ANN001
        order = await place_order(catalog.manual)
        await pay_for(order)
        with pytest.raises(ValidationError, match="http"):
            await order_service.deliver(order.id, wallets.owner, "ftp://files/logo.png", "image")


class TestFulfillmentFailures:
    @pytest.mark.asyncio
    async def test_failure_leaves_order_paid_with_warning(
        self, catalog, place_order, pay_for, order_service, mock_provider  # noqa: ANN001
    ) -> None:
        mock_provider.failures.append(ProviderError("prompt rejected", provider="mock", status_code=400))
        order = await place_order(catalog.fixed)

        result = await pay_for(order)

        assert result.order.status == OrderStatus.PAID
        assert result.order.last_fulfillment_error == "prompt rejected"
        assert result.warnings == [
            "Automatic fulfillment failed: prompt rejected. "
            "The order remains paid; retry fulfillment or deliver manually."
        ]
        events = _event_types(await order_service.get_events(order.id))
        assert events[-1] == "FULFILLMENT_FAILED"

        retried = await order_service.retry_fulfillment(order.id)
        assert retried.order.status == OrderStatus.DELIVERED
        assert retried.order.fulfillment_attempts == 2
        assert retried.order.last_fulfillment_error is None

    @pytest.mark.asyncio
    async def test_transient_failure_retried_in_place(
        self, catalog, place_order, pay_for, mock_provider  # noqa: ANN001
    ) -> None:
        mock_provider.failures.append(ProviderError("busy", provider="mock", status_code=503))
        order = await place_order(catalog.fixed)

        result = await pay_for(order)

        assert result.order.status == OrderStatus.DELIVERED
        assert result.order.fulfillment_attempts == 1
        assert len(mock_provider.requests) == 2

    @pytest.mark.asyncio
    async def test_attempts_are_capped(
        self, catalog, place_order, pay_for, order_service, mock_provider, wallets  # noqa: ANN001
    ) -> None:
        mock_provider.failures.extend(
            ProviderError(f"failure {i}", status_code=400) for i in range(3)
        )
        order = await place_order(catalog.fixed)
        await pay_for(order)
        await order_service.retry_fulfillment(order.id, str(catalog.agent.id))
        await order_service.retry_fulfillment(order.id)

        with pytest.raises(FulfillmentAttemptsExhaustedError):
            await order_service.retry_fulfillment(order.id)

        # a human can still deliver
        result = await order_service.deliver(
            order.id, str(catalog.agent.id), "https://files.example/clip.mp4", "video"
        )
        assert result.order.status == OrderStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_retry_needs_an_automated_service(self, catalog, place_order, pay_for, order_service) -> None:  # noqa: ANN001
        from atelier_engine.domain.exceptions import ProviderNotConfiguredError

        order = await place_order(catalog.manual)
        await pay_for(order)
        with pytest.raises(ProviderNotConfiguredError):
            await order_service.retry_fulfillment(order.id)

    @pytest.mark.asyncio
    async def test_stalled_fulfillment_reverts_on_read(
        self, catalog, place_order, pay_for, order_service, session_factory, wallets  # noqa: ANN001
    ) -> None:
        order = await place_order(catalog.manual)
        await pay_for(order)
        async with session_factory() as session, session.begin():
            await session.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(
                    status="in_progress",
                    fulfillment_started_at=datetime.now(UTC) - timedelta(minutes=30),
                )
            )

        refreshed = await order_service.get_order(order.id)

        assert refreshed.status == OrderStatus.PAID
        assert refreshed.last_fulfillment_error == "Fulfillment stalled"
        events = _event_types(await order_service.get_events(order.id))
        assert events[-1] == "FULFILLMENT_STALLED"

    @pytest.mark.asyncio
    async def test_reverts_go_through_state_machine(
        self, catalog, place_order, pay_for, order_service, mock_provider, session_factory  # noqa: ANN001
    ) -> None:
        mock_provider.failures.append(ProviderError("prompt rejected", status_code=400))
        failed = await place_order(catalog.fixed)
        stalled = await place_order(catalog.manual)

        with patch.object(OrderService, "_guard", wraps=OrderService._guard) as guard:
            await pay_for(failed)
            await pay_for(stalled)
            async with session_factory() as session, session.begin():
                await session.execute(
                    update(Order)
                    .where(Order.id == stalled.id)
                    .values(
                        status="in_progress",
                        fulfillment_started_at=datetime.now(UTC) - timedelta(minutes=30),
                    )
                )
            await order_service.get_order(stalled.id)

        revert = call(OrderStatus.IN_PROGRESS, "fulfillment_reverted")
        assert guard.call_args_list.count(revert) == 2
        assert (await order_service.get_order(failed.id)).status == OrderStatus.PAID
        assert (await order_service.get_order(stalled.id)).status == OrderStatus.PAID


class TestDisputeAndCancel:
    @pytest.mark.asyncio
    async def test_dispute_moves_no_funds(
        self, catalog, place_order, pay_for, order_service, chain, wallets  # noqa: ANN001
    ) -> None:
        order = await place_order(catalog.fixed)
        await pay_for(order)

        result = await order_service.dispute(order.id, wallets.client, "Boat is a car")

        assert result.order.status == OrderStatus.DISPUTED
        assert chain.submitted == []
        events = await order_service.get_events(order.id)
        assert events[-1].metadata_json == {"reason": "Boat is a car"}

    @pytest.mark.asyncio
    async def test_dispute_needs_reason(self, catalog, place_order, pay_for, order_service, wallets) -> None:  # noqa: ANN001
        order = await place_order(catalog.fixed)
        await pay_for(order)
        with pytest.raises(ValidationError):
            await order_service.dispute(order.id, wallets.client, "   ")

    @pytest.mark.asyncio
    async def test_cancel_unpaid_order(self, catalog, place_order, order_service, chain) -> None:  # noqa: ANN001
        order = await place_order(catalog.quoted)

        result = await order_service.cancel(order.id, str(catalog.agent.id), "Out of scope")

        assert result.order.status == OrderStatus.CANCELLED
        assert result.settlement is None
        assert chain.submitted == []

    @pytest.mark.asyncio
    async def test_cancel_paid_order_refunds_price_and_fee(
        self, catalog, place_order, pay_for, order_service, chain, wallets  # noqa: ANN001
    ) -> None:
        order = await place_order(catalog.manual)
        await pay_for(order)

        result = await order_service.cancel(order.id, wallets.client)

        assert result.order.status == OrderStatus.CANCELLED
        assert result.settlement.kind == SettlementKind.REFUND
        assert chain.submitted[0].recipient == wallets.client
        assert chain.submitted[0].amount == Decimal("5.50")
        events = _event_types(await order_service.get_events(order.id))
        assert events[-2:] == ["ORDER_CANCELLED", "REFUND_SENT"]

    @pytest.mark.asyncio
    async def test_refund_failure_is_a_warning(
        self, catalog, place_order, pay_for, order_service, chain, wallets  # noqa: ANN001
    ) -> None:
        order = await place_order(catalog.manual)
        await pay_for(order)
        chain.fail_next_submit(RuntimeError("gas spike"))

        result = await order_service.cancel(order.id, wallets.client)

        assert result.order.status == OrderStatus.CANCELLED
        assert result.warnings == ["Refund failed: gas spike"]
        assert result.reconciliation_required is True

    @pytest.mark.asyncio
    async def test_strangers_cannot_cancel(self, catalog, place_order, order_service, wallets) -> None:  # noqa: ANN001
        order = await place_order(catalog.fixed)
        with pytest.raises(NotOrderPartyError):
            await order_service.cancel(order.id, wallets.stranger)

    @pytest.mark.asyncio
    async def test_delivered_order_cannot_be_cancelled(
        self, catalog, place_order, pay_for, order_service, wallets  # noqa: ANN001
    ) -> None:
        order = await place_order(catalog.fixed)
        await pay_for(order)
        with pytest.raises(InvalidStateTransitionError):
            await order_service.cancel(order.id, wallets.client)


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_lists_next_actions(self, catalog, place_order, pay_for, order_service) -> None:  # noqa: ANN001
        order = await place_order(catalog.fixed)
        await pay_for(order)

        status = await order_service.get_status(order.id)

        assert status["status"] == "delivered"
        assert set(status["allowed_events"]) == {"client_approves", "client_disputes"}
        assert status["is_workspace"] is False
        assert status["amount_due_usd"] == Decimal("11.00")
        assert status["review_deadline"] is not None

    @pytest.mark.asyncio
    async def test_unknown_order(self, order_service) -> None:  # noqa: ANN001
        import uuid

        from atelier_engine.domain.exceptions import OrderNotFoundError

        with pytest.raises(OrderNotFoundError):
            await order_service.get_order(uuid.uuid4())
