"""Shared test fixtures for the Atelier test suite.

Provides:
    - A throwaway SQLite database per test (aiosqlite, tables from the ORM)
    - A seeded catalog: one provider agent and four services
    - A simulated chain, a scriptable mock provider and a wired OrderService
    - Helpers to place and pay for orders
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio

from atelier_engine.config import Settings
from atelier_engine.infrastructure.chain import SimulatedChainGateway
from atelier_engine.infrastructure.database.engine import build_engine, build_session_factory
from atelier_engine.infrastructure.database.orm_models import Base, ProviderAgent, Service
from atelier_engine.infrastructure.storage import LocalBlobStorage, MediaFetcher
from atelier_engine.orchestration.fulfillment import FulfillmentService
from atelier_engine.providers import MockProvider, ProviderRegistry
from atelier_engine.services.order_service import OrderService
from atelier_engine.services.payment_service import PaymentVerifier
from atelier_engine.services.settlement_service import (
    SettlementExecutor,
    SettlementReconciler,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from atelier_engine.infrastructure.database.orm_models import Order
    from atelier_engine.services.order_service import ActionResult

TREASURY = "0x" + "7" * 40
USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"


@dataclass(frozen=True)
class Wallets:
    client: str = "0x" + "a1" * 20
    owner: str = "0x" + "b2" * 20
    payout: str = "0x" + "c3" * 20
    stranger: str = "0x" + "d4" * 20


@dataclass
class Catalog:
    agent: ProviderAgent
    fixed: Service       # $10, automated with the mock provider (video)
    quoted: Service      # quote-priced, delivered by hand
    workspace: Service   # $25 weekly, 3 generations, mock provider (image)
    manual: Service      # $5, delivered by hand


@pytest.fixture
def wallets() -> Wallets:
    return Wallets()


@pytest.fixture
def settings(tmp_path) -> Settings:  # noqa: ANN001
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'atelier.db'}",
        treasury_wallet_address=TREASURY,
        usdc_contract_address=USDC,
        generation_retry_base_seconds=0,
        provider_poll_interval_seconds=0,
        blob_local_dir=str(tmp_path / "blobs"),
    )


@pytest_asyncio.fixture
async def session_factory(settings: Settings) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = build_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def catalog(session_factory: async_sessionmaker[AsyncSession], wallets: Wallets) -> Catalog:
    async with session_factory() as session, session.begin():
        agent = ProviderAgent(
            name="Paper Boat Studio",
            owner_wallet=wallets.owner,
            payout_wallet=wallets.payout,
        )
        session.add(agent)
        await session.flush()
        fixed = Service(
            agent_id=agent.id,
            title="5s product clip",
            price_usd=Decimal("10.00"),
            price_type="fixed",
            provider_key="mock",
            provider_model="video-clip",
            system_prompt="You are a product videographer.",
        )
        quoted = Service(agent_id=agent.id, title="Custom storyboard", price_type="quote")
        workspace = Service(
            agent_id=agent.id,
            title="Character sheet studio",
            price_usd=Decimal("25.00"),
            price_type="fixed",
            quota_limit=3,
            billing_period="weekly",
            provider_key="mock",
            provider_model="image-gen",
            system_prompt="Keep the same mascot in every frame.",
        )
        manual = Service(
            agent_id=agent.id,
            title="Hand-drawn logo",
            price_usd=Decimal("5.00"),
            price_type="fixed",
        )
        session.add_all([fixed, quoted, workspace, manual])
        await session.flush()
        return Catalog(agent=agent, fixed=fixed, quoted=quoted, workspace=workspace, manual=manual)


@pytest.fixture
def chain() -> SimulatedChainGateway:
    return SimulatedChainGateway(TREASURY, USDC, treasury_balance=Decimal("1000"))


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def registry(settings: Settings, mock_provider: MockProvider) -> ProviderRegistry:
    return ProviderRegistry(settings, mock=mock_provider)


@pytest.fixture
def fulfillment(registry: ProviderRegistry, tmp_path) -> FulfillmentService:  # noqa: ANN001
    return FulfillmentService(
        registry,
        LocalBlobStorage(tmp_path / "blobs", "http://testserver/blobs"),
        MediaFetcher(),
        base_delay=0,
        persist_media=False,
    )


@pytest.fixture
def executor(session_factory, chain: SimulatedChainGateway) -> SettlementExecutor:  # noqa: ANN001
    return SettlementExecutor(session_factory, chain, TREASURY)


@pytest.fixture
def reconciler(
    session_factory,  # noqa: ANN001
    chain: SimulatedChainGateway,
    executor: SettlementExecutor,
) -> SettlementReconciler:
    return SettlementReconciler(session_factory, chain, executor)


@pytest.fixture
def order_service(
    session_factory,  # noqa: ANN001
    chain: SimulatedChainGateway,
    executor: SettlementExecutor,
    fulfillment: FulfillmentService,
) -> OrderService:
    return OrderService(
        session_factory,
        payment_verifier=PaymentVerifier(chain, TREASURY, USDC),
        settlement=executor,
        fulfillment=fulfillment,
    )


@pytest.fixture
def place_order(
    order_service: OrderService, wallets: Wallets
) -> Callable[..., Awaitable[Order]]:
    """Create an order for a service as the default client wallet."""

    async def _place(service: Service, brief: str = "A paper boat on a rainy street", **kwargs) -> Order:  # noqa: ANN003
        kwargs.setdefault("client_wallet", wallets.client)
        return await order_service.create_order(service.id, brief, **kwargs)

    return _place


@pytest.fixture
def pay_for(
    order_service: OrderService, chain: SimulatedChainGateway, wallets: Wallets
) -> Callable[..., Awaitable[ActionResult]]:
    """Put the amount due on chain from the client wallet and record the payment."""

    async def _pay(order: Order, amount: Decimal | None = None) -> ActionResult:
        tx_hash = chain.simulate_client_payment(wallets.client, amount or order.amount_due)
        return await order_service.pay(order.id, wallets.client, tx_hash)

    return _pay
