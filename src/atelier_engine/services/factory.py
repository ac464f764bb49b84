"""Wiring — builds the order service and its collaborators from Settings.

The API, the MCP server and simulation.py all go through build_services(),
so the chain mode, blob mode and provider dry-run switch are decided in one
place. Tests pass explicit collaborators instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from atelier_engine.infrastructure.chain import EvmChainGateway, SimulatedChainGateway
from atelier_engine.infrastructure.storage import (
    HttpBlobStorage,
    LocalBlobStorage,
    MediaFetcher,
)
from atelier_engine.infrastructure.webhooks import WebhookNotifier
from atelier_engine.logging_config import get_logger
from atelier_engine.orchestration.fulfillment import FulfillmentService
from atelier_engine.providers import ProviderRegistry
from atelier_engine.services.order_service import OrderService
from atelier_engine.services.payment_service import PaymentVerifier
from atelier_engine.services.quota_service import QuotaMeter
from atelier_engine.services.settlement_service import (
    SettlementExecutor,
    SettlementReconciler,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from atelier_engine.config import Settings
    from atelier_engine.domain.chain_protocol import ChainGateway
    from atelier_engine.infrastructure.storage import BlobStorage

logger = get_logger(__name__)


@dataclass
class AtelierServices:
    orders: OrderService
    reconciler: SettlementReconciler
    chain: ChainGateway
    providers: ProviderRegistry
    notifier: WebhookNotifier


def build_chain(settings: Settings) -> ChainGateway:
    if settings.chain_mode == "evm":
        return EvmChainGateway(settings)
    return SimulatedChainGateway(
        treasury_address=settings.treasury_wallet_address,
        usdc_address=settings.usdc_contract_address,
        treasury_balance=settings.simulated_treasury_balance_usdc,
    )


def build_storage(settings: Settings) -> BlobStorage:
    if settings.blob_mode == "http":
        return HttpBlobStorage(settings.blob_upload_url, settings.blob_token)
    return LocalBlobStorage(settings.blob_local_dir, settings.blob_public_base_url)


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    chain: ChainGateway | None = None,
    providers: ProviderRegistry | None = None,
    storage: BlobStorage | None = None,
    fetcher: MediaFetcher | None = None,
    notifier: WebhookNotifier | None = None,
) -> AtelierServices:
    """Assemble every service the engine needs."""
    chain = chain or build_chain(settings)
    providers = providers or ProviderRegistry(settings, dry_run=settings.providers_dry_run)
    notifier = notifier or WebhookNotifier(timeout=settings.webhook_timeout_seconds)

    fulfillment = FulfillmentService(
        providers,
        storage or build_storage(settings),
        fetcher or MediaFetcher(),
        max_attempts=settings.generation_max_attempts,
        base_delay=settings.generation_retry_base_seconds,
        # Dry-run media lives at placeholder URLs that cannot be downloaded
        persist_media=not settings.providers_dry_run,
    )
    settlement = SettlementExecutor(
        session_factory, chain, settings.treasury_wallet_address
    )
    orders = OrderService.from_settings(
        session_factory,
        settings,
        payment_verifier=PaymentVerifier(
            chain,
            settings.treasury_wallet_address,
            settings.usdc_contract_address,
            tolerance=settings.payment_tolerance_usdc,
        ),
        settlement=settlement,
        fulfillment=fulfillment,
        quota=QuotaMeter(),
        notifier=notifier,
    )
    logger.info(
        "services.built",
        chain_mode=settings.chain_mode,
        blob_mode=settings.blob_mode,
        providers_dry_run=settings.providers_dry_run,
    )
    return AtelierServices(
        orders=orders,
        reconciler=SettlementReconciler(session_factory, chain, settlement),
        chain=chain,
        providers=providers,
        notifier=notifier,
    )


_services: AtelierServices | None = None


def get_services() -> AtelierServices:
    """Process-wide service graph for the API and MCP server (lazy singleton)."""
    global _services
    if _services is None:
        from atelier_engine.config import get_settings
        from atelier_engine.infrastructure.database.engine import _get_session_factory

        _services = build_services(get_settings(), _get_session_factory())
    return _services


def reset_services() -> None:
    global _services
    _services = None
