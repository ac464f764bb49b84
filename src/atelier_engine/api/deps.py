"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the order
service, the settlement reconciler, Redis and configuration.
"""

from __future__ import annotations

import redis.asyncio as aioredis
from fastapi import Depends

from atelier_engine.config import Settings, get_settings
from atelier_engine.infrastructure.redis_client import get_redis, redis_available
from atelier_engine.services.factory import AtelierServices, get_services
from atelier_engine.services.order_service import OrderService
from atelier_engine.services.settlement_service import SettlementReconciler


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_atelier_services() -> AtelierServices:
    """Provide the process-wide service graph (built on first use)."""
    return get_services()


def get_order_service(
    services: AtelierServices = Depends(get_atelier_services),
) -> OrderService:
    return services.orders


def get_reconciler(
    services: AtelierServices = Depends(get_atelier_services),
) -> SettlementReconciler:
    return services.reconciler


def get_redis_client() -> aioredis.Redis | None:
    """Provide the Redis client, or None when Redis is not connected."""
    return get_redis() if redis_available() else None
