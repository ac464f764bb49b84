"""HTTP tests for the order and settlement routes.

The app is assembled from the real routers and middleware; the service
graph is swapped in through FastAPI dependency overrides, so every request
runs against the per-test SQLite database and simulated chain.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from atelier_engine.api.deps import get_app_settings, get_atelier_services, get_redis_client
from atelier_engine.api.middleware import setup_middleware
from atelier_engine.api.routes.health import router as health_router
from atelier_engine.api.routes.orders import router as orders_router
from atelier_engine.api.routes.settlements import router as settlements_router
from atelier_engine.domain.exceptions import ConcurrentStateChangeError, ProviderError
from atelier_engine.infrastructure.webhooks import WebhookNotifier
from atelier_engine.services.factory import AtelierServices

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class FakeRedis:
    """The three Redis calls the idempotency helpers make."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False) -> bool:
        if nx and key in self.values:
            return False
        self.values[key] = value
        return True

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def app(order_service, reconciler, chain, registry, settings) -> FastAPI:  # noqa: ANN001
    app = FastAPI()
    setup_middleware(app)
    app.include_router(health_router)
    app.include_router(orders_router)
    app.include_router(settlements_router)

    services = AtelierServices(
        orders=order_service,
        reconciler=reconciler,
        chain=chain,
        providers=registry,
        notifier=WebhookNotifier(),
    )
    app.dependency_overrides[get_atelier_services] = lambda: services
    app.dependency_overrides[get_redis_client] = lambda: None
    app.dependency_overrides[get_app_settings] = lambda: settings
    return app


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _create(client: httpx.AsyncClient, service, wallets, **extra) -> dict:  # noqa: ANN001, ANN003
    response = await client.post(
        "/api/v1/orders",
        json={
            "service_id": str(service.id),
            "brief": "A paper boat on a rainy street",
            "client_wallet": wallets.client,
            **extra,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


async def _pay(client: httpx.AsyncClient, order: dict, chain, wallets) -> httpx.Response:  # noqa: ANN001
    tx_hash = chain.simulate_client_payment(wallets.client, Decimal(order["amount_due"]))
    return await client.post(
        f"/api/v1/orders/{order['id']}/pay",
        json={"actor": wallets.client, "tx_hash": tx_hash},
    )


class TestOrderFlow:
    @pytest.mark.asyncio
    async def test_create_fixed_price_order(self, client, catalog, wallets) -> None:  # noqa: ANN001
        body = await _create(client, catalog.fixed, wallets)

        assert body["status"] == "quoted"
        assert Decimal(body["quoted_price_usd"]) == Decimal("10.00")
        assert Decimal(body["platform_fee_usd"]) == Decimal("1.00")
        assert Decimal(body["amount_due"]) == Decimal("11.00")

    @pytest.mark.asyncio
    async def test_pay_deliver_approve(self, client, catalog, chain, wallets) -> None:  # noqa: ANN001
        order = await _create(client, catalog.fixed, wallets)

        paid = await _pay(client, order, chain, wallets)
        assert paid.status_code == 200, paid.text
        assert paid.json()["order"]["status"] == "delivered"
        assert paid.json()["warnings"] == []

        approved = await client.post(
            f"/api/v1/orders/{order['id']}/approve", json={"actor": wallets.client}
        )
        body = approved.json()
        assert body["order"]["status"] == "completed"
        assert body["settlement"]["kind"] == "payout"
        assert body["settlement"]["status"] == "confirmed"
        assert body["settlement"]["recipient_wallet"] == wallets.payout
        assert Decimal(body["settlement"]["amount_usdc"]) == Decimal("10.00")
        assert body["order"]["payout_tx_hash"] == body["settlement"]["tx_hash"]

    @pytest.mark.asyncio
    async def test_quote_flow(self, client, catalog, chain, wallets) -> None:  # noqa: ANN001
        order = await _create(client, catalog.quoted, wallets)
        assert order["status"] == "pending_quote"
        assert order["amount_due"] is None

        quoted = await client.post(
            f"/api/v1/orders/{order['id']}/quote",
            json={"actor": str(catalog.agent.id), "price_usd": "40.00"},
        )
        assert quoted.json()["order"]["status"] == "quoted"
        accepted = await client.post(
            f"/api/v1/orders/{order['id']}/accept", json={"actor": wallets.client}
        )
        order = accepted.json()["order"]
        assert order["status"] == "accepted"
        assert Decimal(order["amount_due"]) == Decimal("44.00")

        paid = await _pay(client, order, chain, wallets)
        assert paid.json()["order"]["status"] == "paid"

    @pytest.mark.asyncio
    async def test_manual_delivery_and_dispute(self, client, catalog, chain, wallets) -> None:  # noqa: ANN001
        order = await _create(client, catalog.manual, wallets)
        await _pay(client, order, chain, wallets)

        delivered = await client.post(
            f"/api/v1/orders/{order['id']}/deliver",
            json={
                "actor": wallets.owner,
                "deliverable_url": "https://cdn.example/logo.png",
                "media_type": "image",
            },
        )
        assert delivered.json()["order"]["status"] == "delivered"

        disputed = await client.post(
            f"/api/v1/orders/{order['id']}/dispute",
            json={"actor": wallets.client, "reason": "Wrong colours"},
        )
        assert disputed.json()["order"]["status"] == "disputed"
        assert chain.submitted == []

    @pytest.mark.asyncio
    async def test_cancel_paid_order_refunds(self, client, catalog, chain, wallets) -> None:  # noqa: ANN001
        order = await _create(client, catalog.manual, wallets)
        await _pay(client, order, chain, wallets)

        response = await client.post(
            f"/api/v1/orders/{order['id']}/cancel",
            json={"actor": wallets.client, "reason": "Changed my mind"},
        )

        body = response.json()
        assert body["order"]["status"] == "cancelled"
        assert body["settlement"]["kind"] == "refund"
        assert Decimal(body["settlement"]["amount_usdc"]) == Decimal("5.50")

    @pytest.mark.asyncio
    async def test_workspace_generation(self, client, catalog, chain, wallets) -> None:  # noqa: ANN001
        order = await _create(client, catalog.workspace, wallets)
        paid = await _pay(client, order, chain, wallets)
        assert paid.json()["order"]["status"] == "in_progress"

        response = await client.post(
            f"/api/v1/orders/{order['id']}/generate",
            json={"actor": wallets.client, "prompt": "Skiff in the rain"},
        )

        body = response.json()
        assert body["order"]["quota_used"] == 1
        assert body["deliverable"]["status"] == "completed"
        listed = await client.get(f"/api/v1/orders/{order['id']}/deliverables")
        assert [d["prompt"] for d in listed.json()] == ["Skiff in the rain"]


class TestReads:
    @pytest.mark.asyncio
    async def test_status_lists_allowed_events(self, client, catalog, wallets) -> None:  # noqa: ANN001
        order = await _create(client, catalog.fixed, wallets)

        body = (await client.get(f"/api/v1/orders/{order['id']}/status")).json()

        assert body["status"] == "quoted"
        assert "payment_confirmed" in body["allowed_events"]
        assert body["is_workspace"] is False
        assert Decimal(body["amount_due_usd"]) == Decimal("11.00")

    @pytest.mark.asyncio
    async def test_events_carry_metadata(self, client, catalog, chain, wallets) -> None:  # noqa: ANN001
        order = await _create(client, catalog.manual, wallets)
        await _pay(client, order, chain, wallets)

        events = (await client.get(f"/api/v1/orders/{order['id']}/events")).json()

        assert [e["event_type"] for e in events] == ["ORDER_CREATED", "PAYMENT_CONFIRMED"]
        assert events[1]["metadata"]["tx_hash"].startswith("0x")
        assert events[1]["old_status"] == "quoted"
        assert events[1]["new_status"] == "paid"

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client) -> None:  # noqa: ANN001
        response = await client.get(f"/api/v1/orders/{uuid.uuid4()}", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


class TestErrors:
    @pytest.mark.asyncio
    async def test_unknown_order(self, client) -> None:  # noqa: ANN001
        response = await client.get(f"/api/v1/orders/{uuid.uuid4()}")
        assert response.status_code == 404
        assert response.json()["error"] == "ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_unknown_service(self, client, wallets) -> None:  # noqa: ANN001
        response = await client.post(
            "/api/v1/orders",
            json={
                "service_id": str(uuid.uuid4()),
                "brief": "A paper boat on a rainy street",
                "client_wallet": wallets.client,
            },
        )
        assert response.status_code == 404
        assert response.json()["error"] == "SERVICE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_request_validation(self, client, catalog, wallets) -> None:  # noqa: ANN001
        response = await client.post(
            "/api/v1/orders",
            json={"service_id": str(catalog.fixed.id), "brief": "short", "client_wallet": wallets.client},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_stranger_cannot_approve(self, client, catalog, chain, wallets) -> None:  # noqa: ANN001
        order = await _create(client, catalog.fixed, wallets)
        await _pay(client, order, chain, wallets)

        response = await client.post(
            f"/api/v1/orders/{order['id']}/approve", json={"actor": wallets.stranger}
        )
        assert response.status_code == 403
        assert response.json()["error"] == "NOT_ORDER_PARTY"

    @pytest.mark.asyncio
    async def test_approve_before_delivery(self, client, catalog, wallets) -> None:  # noqa: ANN001
        order = await _create(client, catalog.manual, wallets)

        response = await client.post(
            f"/api/v1/orders/{order['id']}/approve", json={"actor": wallets.client}
        )
        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE_TRANSITION"
        assert "retryable" not in response.json()

    @pytest.mark.asyncio
    async def test_lost_race_is_retryable_conflict(
        self, client, catalog, order_service, wallets  # noqa: ANN001
    ) -> None:
        order = await _create(client, catalog.manual, wallets)
        lost = AsyncMock(side_effect=ConcurrentStateChangeError(order["id"], "delivered"))

        with patch.object(order_service, "approve", lost):
            response = await client.post(
                f"/api/v1/orders/{order['id']}/approve", json={"actor": wallets.client}
            )

        assert response.status_code == 409
        assert response.json() == {
            "error": "CONCURRENT_STATE_CHANGE",
            "message": "Order status changed concurrently, please retry",
            "retryable": True,
        }

    @pytest.mark.asyncio
    async def test_unverifiable_payment(self, client, catalog, wallets) -> None:  # noqa: ANN001
        order = await _create(client, catalog.manual, wallets)

        response = await client.post(
            f"/api/v1/orders/{order['id']}/pay",
            json={"actor": wallets.client, "tx_hash": "0x" + "0" * 64},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "PAYMENT_VERIFICATION_FAILED"

    @pytest.mark.asyncio
    async def test_reused_transaction(self, client, catalog, chain, wallets) -> None:  # noqa: ANN001
        first = await _create(client, catalog.manual, wallets)
        second = await _create(client, catalog.manual, wallets)
        tx_hash = chain.simulate_client_payment(wallets.client, Decimal("5.50"))
        await client.post(f"/api/v1/orders/{first['id']}/pay", json={"actor": wallets.client, "tx_hash": tx_hash})

        response = await client.post(
            f"/api/v1/orders/{second['id']}/pay", json={"actor": wallets.client, "tx_hash": tx_hash}
        )
        assert response.status_code == 409
        assert response.json()["error"] == "TRANSACTION_ALREADY_USED"

    @pytest.mark.asyncio
    async def test_provider_failure_is_bad_gateway(
        self, client, catalog, chain, mock_provider, wallets  # noqa: ANN001
    ) -> None:
        order = await _create(client, catalog.workspace, wallets)
        await _pay(client, order, chain, wallets)
        mock_provider.failures.append(ProviderError("nsfw filter", status_code=400))

        response = await client.post(
            f"/api/v1/orders/{order['id']}/generate",
            json={"actor": wallets.client, "prompt": "Skiff in the rain"},
        )
        assert response.status_code == 502
        assert response.json()["error"] == "PROVIDER_ERROR"


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_repeated_key_returns_first_order(self, app, client, fake_redis, catalog, wallets) -> None:  # noqa: ANN001
        app.dependency_overrides[get_redis_client] = lambda: fake_redis
        payload = {
            "service_id": str(catalog.fixed.id),
            "brief": "A paper boat on a rainy street",
            "client_wallet": wallets.client,
            "idempotency_key": "order-boat-1",
        }

        first = await client.post("/api/v1/orders", json=payload)
        second = await client.post("/api/v1/orders", json=payload)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["id"] == first.json()["id"]

    @pytest.mark.asyncio
    async def test_in_flight_key_is_rejected(self, app, client, fake_redis, catalog, wallets) -> None:  # noqa: ANN001
        app.dependency_overrides[get_redis_client] = lambda: fake_redis
        fake_redis.values["idempotency:order-boat-2"] = "1"

        response = await client.post(
            "/api/v1/orders",
            json={
                "service_id": str(catalog.fixed.id),
                "brief": "A paper boat on a rainy street",
                "client_wallet": wallets.client,
                "idempotency_key": "order-boat-2",
            },
        )
        assert response.status_code == 409
        assert response.json()["error"] == "DUPLICATE_OPERATION"

    @pytest.mark.asyncio
    async def test_failed_create_releases_key(self, app, client, fake_redis, wallets) -> None:  # noqa: ANN001
        app.dependency_overrides[get_redis_client] = lambda: fake_redis

        response = await client.post(
            "/api/v1/orders",
            json={
                "service_id": str(uuid.uuid4()),
                "brief": "A paper boat on a rainy street",
                "client_wallet": wallets.client,
                "idempotency_key": "order-boat-3",
            },
        )
        assert response.status_code == 404
        assert "idempotency:order-boat-3" not in fake_redis.values


class TestSettlementRoutes:
    @pytest.mark.asyncio
    async def test_failed_payout_then_retry(self, client, catalog, chain, wallets) -> None:  # noqa: ANN001
        order = await _create(client, catalog.fixed, wallets)
        await _pay(client, order, chain, wallets)
        chain.fail_next_submit(RuntimeError("rpc down"))

        approved = (
            await client.post(f"/api/v1/orders/{order['id']}/approve", json={"actor": wallets.client})
        ).json()
        assert approved["order"]["status"] == "completed"
        assert approved["reconciliation_required"] is True
        assert approved["warnings"] == ["Payout failed: rpc down"]

        pending = (await client.get("/api/v1/settlements/pending")).json()
        assert len(pending) == 1
        assert pending[0]["status"] == "failed"
        assert pending[0]["order_id"] == order["id"]

        retried = await client.post(f"/api/v1/settlements/{pending[0]['id']}/retry")
        assert retried.status_code == 200, retried.text
        assert retried.json()["status"] == "confirmed"
        assert (await client.get("/api/v1/settlements/pending")).json() == []

    @pytest.mark.asyncio
    async def test_reconcile(self, client, catalog, chain, wallets) -> None:  # noqa: ANN001
        order = await _create(client, catalog.fixed, wallets)
        await _pay(client, order, chain, wallets)
        chain.hold_next_confirmation()
        await client.post(f"/api/v1/orders/{order['id']}/approve", json={"actor": wallets.client})

        response = await client.post("/api/v1/settlements/reconcile")

        assert response.json() == {"confirmed": 1, "failed": 0, "still_unconfirmed": 0}
        refreshed = (await client.get(f"/api/v1/orders/{order['id']}")).json()
        assert refreshed["payout_tx_hash"] == chain.submitted[0].tx_hash

    @pytest.mark.asyncio
    async def test_retry_unknown_settlement(self, client) -> None:  # noqa: ANN001
        response = await client.post(f"/api/v1/settlements/{uuid.uuid4()}/retry")
        assert response.status_code == 404
        assert response.json()["error"] == "SETTLEMENT_NOT_FOUND"


class TestHealth:
    @pytest.mark.asyncio
    async def test_degraded_without_redis(self, client, session_factory) -> None:  # noqa: ANN001
        redis = AsyncMock()
        redis.ping.side_effect = ConnectionError("redis down")
        with (
            patch(
                "atelier_engine.infrastructure.database.engine._get_engine",
                return_value=session_factory.kw["bind"],
            ),
            patch("atelier_engine.infrastructure.redis_client.get_redis", return_value=redis),
        ):
            body = (await client.get("/health")).json()

        assert body["database"] == "healthy"
        assert body["redis"].startswith("unhealthy")
        assert body["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_reports_treasury_and_settlements_needing_review(
        self, client, session_factory, catalog, place_order, pay_for, order_service, chain, wallets  # noqa: ANN001
    ) -> None:
        order = await place_order(catalog.manual)
        await pay_for(order)
        chain.lose_next_submit(ConnectionResetError("socket closed"))
        await order_service.cancel(order.id, wallets.client)

        with (
            patch(
                "atelier_engine.infrastructure.database.engine._get_engine",
                return_value=session_factory.kw["bind"],
            ),
            patch("atelier_engine.infrastructure.redis_client.get_redis", return_value=AsyncMock()),
        ):
            body = (await client.get("/health")).json()

        assert body["status"] == "ok"
        assert body["chain"] == "healthy"
        # 1000 funded, 5.50 paid in, 5.50 refunded
        assert Decimal(body["treasury_balance_usdc"]) == Decimal("1000")
        assert body["settlements_needing_review"] == 1

    @pytest.mark.asyncio
    async def test_chain_outage_degrades(self, client, session_factory, chain) -> None:  # noqa: ANN001
        with (
            patch(
                "atelier_engine.infrastructure.database.engine._get_engine",
                return_value=session_factory.kw["bind"],
            ),
            patch("atelier_engine.infrastructure.redis_client.get_redis", return_value=AsyncMock()),
            patch.object(chain, "get_token_balance", AsyncMock(side_effect=ConnectionError("rpc down"))),
        ):
            body = (await client.get("/health")).json()

        assert body["chain"] == "unhealthy: rpc down"
        assert body["treasury_balance_usdc"] is None
        assert body["settlements_needing_review"] == 0
        assert body["status"] == "degraded"
