"""Tests for the conditional writes in the repository layer."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from atelier_engine.domain.enums import DeliverableStatus, OrderStatus
from atelier_engine.infrastructure.database.orm_models import Order
from atelier_engine.infrastructure.database.repositories import (
    DeliverableRepository,
    OrderRepository,
)


@pytest_asyncio.fixture
async def order(session_factory, catalog, wallets) -> Order:  # noqa: ANN001
    async with session_factory() as session, session.begin():
        row = Order(
            service_id=catalog.manual.id,
            provider_agent_id=catalog.agent.id,
            client_wallet=wallets.client,
            brief="A logo with a paper boat",
            quoted_price_usd=Decimal("5.00"),
            platform_fee_usd=Decimal("0.50"),
            status=OrderStatus.PAID.value,
        )
        await OrderRepository(session).create(row)
    return row


async def _fetch(session_factory, order_id) -> Order:  # noqa: ANN001
    async with session_factory() as session:
        return await OrderRepository(session).get_by_id(order_id)


class TestTransitionStatus:
    @pytest.mark.asyncio
    async def test_moves_from_expected_status(self, session_factory, order) -> None:  # noqa: ANN001
        async with session_factory() as session, session.begin():
            moved = await OrderRepository(session).transition_status(
                order.id, OrderStatus.PAID, OrderStatus.IN_PROGRESS
            )
        assert moved
        assert (await _fetch(session_factory, order.id)).status == "in_progress"

    @pytest.mark.asyncio
    async def test_stale_expectation_writes_nothing(self, session_factory, order) -> None:  # noqa: ANN001
        async with session_factory() as session, session.begin():
            moved = await OrderRepository(session).transition_status(
                order.id, OrderStatus.DELIVERED, OrderStatus.COMPLETED
            )
        assert not moved
        assert (await _fetch(session_factory, order.id)).status == "paid"

    @pytest.mark.asyncio
    async def test_only_one_of_two_writers_wins(self, session_factory, order) -> None:  # noqa: ANN001
        outcomes = []
        for _ in range(2):
            async with session_factory() as session, session.begin():
                outcomes.append(
                    await OrderRepository(session).transition_status(
                        order.id, OrderStatus.PAID, OrderStatus.IN_PROGRESS
                    )
                )
        assert outcomes == [True, False]

    @pytest.mark.asyncio
    async def test_delivery_stamps_review_deadline(self, session_factory, order) -> None:  # noqa: ANN001
        async with session_factory() as session, session.begin():
            repo = OrderRepository(session, review_window=timedelta(hours=2))
            await repo.transition_status(order.id, OrderStatus.PAID, OrderStatus.IN_PROGRESS)
            await repo.transition_status(
                order.id,
                OrderStatus.IN_PROGRESS,
                OrderStatus.DELIVERED,
                deliverable_url="https://cdn.example/logo.png",
            )

        row = await _fetch(session_factory, order.id)
        assert row.deliverable_url == "https://cdn.example/logo.png"
        assert row.review_deadline - row.delivered_at == timedelta(hours=2)
        assert row.completed_at is None

    @pytest.mark.asyncio
    async def test_completion_stamps_completed_at(self, session_factory, order) -> None:  # noqa: ANN001
        async with session_factory() as session, session.begin():
            repo = OrderRepository(session)
            await repo.transition_status(order.id, OrderStatus.PAID, OrderStatus.IN_PROGRESS)
            await repo.transition_status(order.id, OrderStatus.IN_PROGRESS, OrderStatus.DELIVERED)
            await repo.transition_status(order.id, OrderStatus.DELIVERED, OrderStatus.COMPLETED)
        assert (await _fetch(session_factory, order.id)).completed_at is not None


class TestEscrowHash:
    @pytest.mark.asyncio
    async def test_transaction_funds_one_order(self, session_factory, order, catalog) -> None:  # noqa: ANN001
        tx_hash = "0x" + "ab" * 32
        async with session_factory() as session, session.begin():
            other = Order(
                service_id=catalog.manual.id,
                provider_agent_id=catalog.agent.id,
                brief="Another logo",
                status=OrderStatus.ACCEPTED.value,
            )
            await OrderRepository(session).create(other)
            await session.execute(
                update(Order).where(Order.id == order.id).values(escrow_tx_hash=tx_hash)
            )

        with pytest.raises(IntegrityError):
            async with session_factory() as session, session.begin():
                await OrderRepository(session).transition_status(
                    other.id, OrderStatus.ACCEPTED, OrderStatus.PAID, escrow_tx_hash=tx_hash
                )

        async with session_factory() as session:
            found = await OrderRepository(session).find_by_escrow_tx_hash(tx_hash)
        assert found.id == order.id

    @pytest.mark.asyncio
    async def test_unpaid_orders_share_null_hash(self, place_order, catalog) -> None:  # noqa: ANN001
        first = await place_order(catalog.manual)
        second = await place_order(catalog.manual)
        assert first.escrow_tx_hash is None
        assert second.escrow_tx_hash is None


class TestQuota:
    @pytest.mark.asyncio
    async def test_window_opens_once(self, session_factory, order) -> None:  # noqa: ANN001
        expires = datetime.now(UTC) + timedelta(days=7)
        async with session_factory() as session, session.begin():
            repo = OrderRepository(session)
            assert await repo.open_quota_window(order.id, 3, expires)
            assert not await repo.open_quota_window(order.id, 10, expires + timedelta(days=1))

        row = await _fetch(session_factory, order.id)
        assert row.quota_total == 3
        assert row.workspace_expires_at == expires

    @pytest.mark.asyncio
    async def test_increment_stops_at_total(self, session_factory, order) -> None:  # noqa: ANN001
        async with session_factory() as session, session.begin():
            repo = OrderRepository(session)
            await repo.open_quota_window(order.id, 2, datetime.now(UTC) + timedelta(days=1))
            await repo.transition_status(order.id, OrderStatus.PAID, OrderStatus.IN_PROGRESS)
            results = [await repo.increment_quota_used(order.id) for _ in range(3)]

        assert results == [True, True, False]
        assert (await _fetch(session_factory, order.id)).quota_used == 2

    @pytest.mark.asyncio
    async def test_increment_needs_open_workspace(self, session_factory, order) -> None:  # noqa: ANN001
        async with session_factory() as session, session.begin():
            repo = OrderRepository(session)
            await repo.open_quota_window(order.id, 2, datetime.now(UTC) + timedelta(days=1))
            # still paid, not in progress
            assert not await repo.increment_quota_used(order.id)


class TestPayoutHash:
    @pytest.mark.asyncio
    async def test_attached_once(self, session_factory, order) -> None:  # noqa: ANN001
        first, second = "0x" + "01" * 32, "0x" + "02" * 32
        async with session_factory() as session, session.begin():
            repo = OrderRepository(session)
            assert await repo.attach_payout_tx_hash(order.id, first)
            assert not await repo.attach_payout_tx_hash(order.id, second)
        assert (await _fetch(session_factory, order.id)).payout_tx_hash == first


class TestDeliverables:
    @pytest.mark.asyncio
    async def test_completed_prompts_in_order(self, session_factory, order) -> None:  # noqa: ANN001
        async with session_factory() as session, session.begin():
            repo = DeliverableRepository(session)
            ids = [(await repo.create(order.id, p)).id for p in ("one", "two", "three")]
            await repo.set_status(ids[0], DeliverableStatus.COMPLETED)
            await repo.set_status(ids[1], DeliverableStatus.FAILED, error="nsfw filter")
            await repo.set_status(ids[2], DeliverableStatus.COMPLETED)

        async with session_factory() as session:
            repo = DeliverableRepository(session)
            assert await repo.completed_prompts(order.id) == ["one", "three"]
            assert [d.status for d in await repo.get_by_order(order.id)] == [
                "completed",
                "failed",
                "completed",
            ]
