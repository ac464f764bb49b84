#!/usr/bin/env python3
"""Atelier — End-to-End Simulation.

Simulates three scenarios with a ClientBot and a StudioBot on a simulated
USDC chain:

    Scenario 1: Fixed-Price Clip
        - Client orders a $10 product clip (quoted immediately, $1 fee)
        - Client pays $11 in USDC -> provider generates -> DELIVERED
        - Client approves -> COMPLETED + $10 payout to the studio

    Scenario 2: Quote, Pay and Replay
        - Client orders a custom storyboard -> studio quotes $40
        - Client accepts, pays $44, studio delivers by hand, client approves
        - A second order tries to reuse the same payment -> rejected
        - An underpayment is rejected as well

    Scenario 3: Workspace and Refund
        - Client opens a $25 weekly workspace with 3 generations
        - Three generations keep the same mascot -> quota reached -> DELIVERED
        - Client approves -> studio paid
        - A paid manual order is cancelled -> price plus fee refunded

Usage:
    # Option A: With Docker (PostgreSQL):
    docker compose up -d
    uv run python simulation.py

    # Option B: Without Docker (SQLite in-memory):
    uv run python simulation.py --sqlite

    # Option C: Dry-run (mock provider, no API calls, instant):
    uv run python simulation.py --sqlite --dry-run

    # Run a specific scenario:
    uv run python simulation.py --sqlite --dry-run --scenario 3
"""

from __future__ import annotations

import argparse
import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from atelier_engine.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

# Module-level state
_sqlite_engine = None
_session_factory = None
_services = None
_chain = None
_dry_run = False


def set_dry_run(enabled: bool) -> None:
    """Enable or disable dry-run mode (mock provider, no API calls)."""
    global _dry_run
    _dry_run = enabled


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False) -> None:
    """Initialize the database, the simulated chain and the service graph."""
    global _sqlite_engine, _session_factory, _services, _chain

    from atelier_engine.config import get_settings
    from atelier_engine.infrastructure.chain import SimulatedChainGateway
    from atelier_engine.services.factory import build_services

    settings = get_settings().model_copy(
        update={"providers_dry_run": _dry_run, "chain_mode": "simulated"}
    )

    if use_sqlite:
        from atelier_engine.infrastructure.database.engine import (
            build_engine,
            build_session_factory,
        )
        from atelier_engine.infrastructure.database.orm_models import Base

        _sqlite_engine = build_engine("sqlite+aiosqlite:///:memory:")
        _session_factory = build_session_factory(_sqlite_engine)
        async with _sqlite_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.sqlite_initialized")
    else:
        from atelier_engine.infrastructure.database.engine import (
            _get_session_factory,
            init_db,
        )

        await init_db()
        _session_factory = _get_session_factory()

    # Client payments are fabricated, so the chain is always simulated here
    _chain = SimulatedChainGateway(
        settings.treasury_wallet_address,
        settings.usdc_contract_address,
        treasury_balance=settings.simulated_treasury_balance_usdc,
    )
    _services = build_services(settings, _session_factory, chain=_chain)


async def shutdown_database() -> None:
    """Flush webhooks and close database connections."""
    global _sqlite_engine, _session_factory, _services

    if _services is not None:
        await _services.notifier.drain()
        _services = None
    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
    else:
        from atelier_engine.infrastructure.database.engine import close_db

        await close_db()
    _session_factory = None


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------
@dataclass
class Catalog:
    agent_id: uuid.UUID
    clip: uuid.UUID
    storyboard: uuid.UUID
    workspace: uuid.UUID
    logo: uuid.UUID


async def seed_catalog(studio: StudioBot) -> Catalog:
    """Register the studio agent and its four services."""
    from atelier_engine.infrastructure.database.orm_models import ProviderAgent, Service

    async with _session_factory() as session, session.begin():
        agent = ProviderAgent(
            name="Paper Boat Studio",
            owner_wallet=studio.owner_wallet,
            payout_wallet=studio.payout_wallet,
        )
        session.add(agent)
        await session.flush()
        clip = Service(
            agent_id=agent.id,
            title="5s product clip",
            price_usd=Decimal("10.00"),
            price_type="fixed",
            provider_key="luma",
            provider_model="dream_5s",
            system_prompt="You are a product videographer. Soft light, slow camera moves.",
        )
        storyboard = Service(agent_id=agent.id, title="Custom storyboard", price_type="quote")
        workspace = Service(
            agent_id=agent.id,
            title="Character sheet studio",
            price_usd=Decimal("25.00"),
            price_type="fixed",
            quota_limit=3,
            billing_period="weekly",
            provider_key="grok",
            system_prompt="Keep the same mascot in every frame: a folded paper boat with a red sail.",
        )
        logo = Service(
            agent_id=agent.id,
            title="Hand-drawn logo",
            price_usd=Decimal("5.00"),
            price_type="fixed",
        )
        session.add_all([clip, storyboard, workspace, logo])
        await session.flush()
        catalog = Catalog(
            agent_id=agent.id,
            clip=clip.id,
            storyboard=storyboard.id,
            workspace=workspace.id,
            logo=logo.id,
        )
    studio.agent_id = str(catalog.agent_id)
    logger.info("🟢 STUDIO: Catalog registered", agent_id=studio.agent_id)
    return catalog


# ---------------------------------------------------------------------------
# Bot Agents
# ---------------------------------------------------------------------------
@dataclass
class ClientBot:
    """Simulated client agent that orders, pays and reviews."""

    wallet: str = "0x" + "c1" * 20

    async def order(self, service_id: uuid.UUID, brief: str) -> str:
        order = await _services.orders.create_order(service_id, brief, client_wallet=self.wallet)
        logger.info(
            "🔵 CLIENT: Order placed",
            order_id=str(order.id),
            status=order.status,
            amount_due=str(order.amount_due) if order.amount_due is not None else None,
        )
        return str(order.id)

    def send_usdc(self, amount: Decimal) -> str:
        """Put a USDC transfer to the treasury on the simulated chain."""
        tx_hash = _chain.simulate_client_payment(self.wallet, amount)
        logger.info("🔵 CLIENT: USDC sent", amount=str(amount), tx_hash=tx_hash[:18] + "...")
        return tx_hash

    async def pay(self, order_id: str, tx_hash: str | None = None) -> Any:
        order = await _services.orders.get_order(uuid.UUID(order_id))
        tx_hash = tx_hash or self.send_usdc(order.amount_due)
        result = await _services.orders.pay(uuid.UUID(order_id), self.wallet, tx_hash)
        logger.info("🔵 CLIENT: Payment recorded", order_id=order_id, status=result.order.status)
        for warning in result.warnings:
            logger.warning("🔵 CLIENT: Payment warning", warning=warning)
        return result

    async def accept(self, order_id: str) -> None:
        await _services.orders.accept_quote(uuid.UUID(order_id), self.wallet)
        logger.info("🔵 CLIENT: Quote accepted", order_id=order_id)

    async def generate(self, order_id: str, prompt: str) -> Any:
        result = await _services.orders.generate(uuid.UUID(order_id), self.wallet, prompt)
        logger.info(
            "🔵 CLIENT: Generated",
            order_id=order_id,
            url=result.deliverable.deliverable_url,
            quota=f"{result.order.quota_used}/{result.order.quota_total}",
        )
        return result

    async def approve(self, order_id: str) -> Any:
        result = await _services.orders.approve(uuid.UUID(order_id), self.wallet)
        logger.info(
            "🔵 CLIENT: Delivery approved",
            order_id=order_id,
            payout_tx=result.settlement.tx_hash[:18] + "..." if result.settlement else None,
        )
        return result

    async def cancel(self, order_id: str, reason: str) -> Any:
        result = await _services.orders.cancel(uuid.UUID(order_id), self.wallet, reason)
        logger.info(
            "🔵 CLIENT: Order cancelled",
            order_id=order_id,
            refund=str(result.settlement.amount) if result.settlement else None,
        )
        return result


@dataclass
class StudioBot:
    """Simulated provider agent that quotes and delivers by hand."""

    owner_wallet: str = "0x" + "50" * 20
    payout_wallet: str = "0x" + "5a" * 20
    agent_id: str = ""

    async def quote(self, order_id: str, price: Decimal) -> None:
        await _services.orders.quote(uuid.UUID(order_id), self.agent_id, price)
        logger.info("🟢 STUDIO: Quote sent", order_id=order_id, price=str(price))

    async def deliver(self, order_id: str, url: str, media_type: str) -> None:
        await _services.orders.deliver(uuid.UUID(order_id), self.agent_id, url, media_type)
        logger.info("🟢 STUDIO: Work delivered", order_id=order_id, url=url)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


async def print_balances(client: ClientBot, studio: StudioBot) -> None:
    treasury = await _chain.get_token_balance(_chain.treasury_address)
    print("  💰 Balances (USDC):")
    print(f"    treasury: {treasury}")
    print(f"    client:   {await _chain.get_token_balance(client.wallet)}")
    print(f"    studio:   {await _chain.get_token_balance(studio.payout_wallet)}")


async def print_audit_trail(order_id: str) -> None:
    """Print the full audit trail for an order."""
    events = await _services.orders.get_events(uuid.UUID(order_id))
    print("\n  📜 Audit Trail:")
    for i, evt in enumerate(events, 1):
        old = evt.old_status or "—"
        print(f"    {i}. [{evt.event_type}] {old} → {evt.new_status} (by {evt.actor})")
    print()


# ===========================================================================
# Scenario 1: Fixed-Price Clip
# ===========================================================================
async def scenario_1_fixed_price(catalog: Catalog, client: ClientBot, studio: StudioBot) -> None:
    """Fixed-price order fulfilled automatically, then approved."""
    banner("SCENARIO 1: Fixed-Price Clip — Pay, Generate, Approve")

    section("Step 1: Client orders a product clip")
    order_id = await client.order(catalog.clip, "A paper boat drifting down a rainy street at dusk")

    section("Step 2: Client pays; the provider generates the clip")
    result = await client.pay(order_id)
    print(f"  Status: {result.order.status}")
    print(f"  Deliverable: {result.order.deliverable_url}")

    if result.order.status != "delivered":
        print("  ⚠️  Fulfillment did not finish; the order stays paid for a retry.")
        await print_audit_trail(order_id)
        return

    section("Step 3: Client approves; the studio is paid")
    await client.approve(order_id)
    await print_balances(client, studio)
    await print_audit_trail(order_id)


# ===========================================================================
# Scenario 2: Quote, Pay and Replay
# ===========================================================================
async def scenario_2_quote_and_replay(catalog: Catalog, client: ClientBot, studio: StudioBot) -> None:
    """Quote-priced order, manual delivery, and rejected payments."""
    from atelier_engine.domain.exceptions import PaymentVerificationError

    banner("SCENARIO 2: Quote, Pay and Replay")

    section("Step 1: Client asks for a storyboard; studio quotes $40")
    order_id = await client.order(catalog.storyboard, "Six-panel storyboard for a paper boat ad")
    await studio.quote(order_id, Decimal("40.00"))
    await client.accept(order_id)

    section("Step 2: Client pays price plus fee")
    tx_hash = client.send_usdc(Decimal("44.00"))
    await client.pay(order_id, tx_hash)

    section("Step 3: A second order tries to reuse the same payment")
    second_id = await client.order(catalog.logo, "A round logo with a paper boat inside")
    try:
        await client.pay(second_id, tx_hash)
        print("  ❌ Replay was accepted")
    except PaymentVerificationError as exc:
        print(f"  ✅ Replay rejected: {exc.message}")

    section("Step 4: An underpayment is rejected too")
    try:
        await client.pay(second_id, client.send_usdc(Decimal("1.00")))
        print("  ❌ Underpayment was accepted")
    except PaymentVerificationError as exc:
        print(f"  ✅ Underpayment rejected: {exc.message}")

    section("Step 5: Studio delivers by hand; client approves")
    await studio.deliver(order_id, "https://cdn.example/storyboards/paper-boat.png", "image")
    await client.approve(order_id)
    await print_balances(client, studio)
    await print_audit_trail(order_id)


# ===========================================================================
# Scenario 3: Workspace and Refund
# ===========================================================================
async def scenario_3_workspace_and_refund(catalog: Catalog, client: ClientBot, studio: StudioBot) -> None:
    """Metered workspace runs to its quota; a paid order is refunded."""
    from atelier_engine.domain.exceptions import AtelierError

    banner("SCENARIO 3: Workspace and Refund")

    section("Step 1: Client opens a weekly workspace (3 generations)")
    order_id = await client.order(catalog.workspace, "Character sheet for our paper boat mascot")
    result = await client.pay(order_id)
    print(f"  Status: {result.order.status}, quota {result.order.quota_used}/{result.order.quota_total}")

    section("Step 2: Three generations with a shared session history")
    for prompt in ("Front view on calm water", "Side view in a storm", "Close-up of the red sail"):
        try:
            result = await client.generate(order_id, prompt)
        except AtelierError as exc:
            print(f"  ❌ Generation failed: {exc.message}")
            break
    status = await _services.orders.get_status(uuid.UUID(order_id))
    print(f"  Status: {status['status']}, quota remaining {status['quota_remaining']}")

    if status["status"] == "delivered":
        section("Step 3: Client approves the workspace")
        await client.approve(order_id)

    section("Step 4: A paid logo order is cancelled and refunded")
    logo_id = await client.order(catalog.logo, "A square logo with a paper boat")
    await client.pay(logo_id)
    result = await client.cancel(logo_id, "Found a designer in-house")
    print(f"  Refunded: {result.settlement.amount if result.settlement else 0} USDC")

    await print_balances(client, studio)
    await print_audit_trail(order_id)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_fixed_price,
    2: scenario_2_quote_and_replay,
    3: scenario_3_workspace_and_refund,
}


async def run(scenario: int = 0, use_sqlite: bool = False, dry_run: bool = False) -> None:
    """Run one scenario, or all of them when scenario is 0."""
    if scenario and scenario not in SCENARIOS:
        print(f"Unknown scenario {scenario}. Available: 1, 2, 3")
        return

    set_dry_run(dry_run)
    await init_database(use_sqlite=use_sqlite)

    try:
        print("\n" + "🎬" * 35)
        print("  ATELIER — SIMULATION")
        db_type = "SQLite (in-memory)" if use_sqlite else "PostgreSQL"
        mode = "DRY-RUN (mock provider)" if dry_run else "LIVE (real provider APIs)"
        print(f"  Database: {db_type}")
        print(f"  Mode: {mode}")
        print("🎬" * 35 + "\n")

        client = ClientBot()
        studio = StudioBot()
        catalog = await seed_catalog(studio)

        selected = [scenario] if scenario else sorted(SCENARIOS)
        for num in selected:
            await SCENARIOS[num](catalog, client, studio)

        print("\n" + "=" * 70)
        print("  ✅ SIMULATION FINISHED")
        print("=" * 70 + "\n")
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Atelier Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use SQLite in-memory instead of PostgreSQL (no Docker needed).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use the mock provider instead of real generation APIs (instant, no network).",
    )
    args = parser.parse_args()

    asyncio.run(run(args.scenario, use_sqlite=args.sqlite, dry_run=args.dry_run))
