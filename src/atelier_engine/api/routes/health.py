"""Health check endpoint.

Reports the database, Redis and chain gateway, plus the two numbers an
operator watches: the treasury's USDC balance (it funds every payout and
refund) and how many settlements are waiting for review.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text

from atelier_engine import __version__
from atelier_engine.api.deps import get_app_settings, get_atelier_services
from atelier_engine.config import Settings
from atelier_engine.logging_config import get_logger
from atelier_engine.schemas.orders import HealthResponse
from atelier_engine.services.factory import AtelierServices

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


async def _check_database() -> str:
    try:
        from atelier_engine.infrastructure.database.engine import _get_engine

        async with _get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health.db_check_failed", error=str(exc))
        return f"unhealthy: {exc}"
    return "healthy"


async def _check_redis() -> str:
    try:
        from atelier_engine.infrastructure.redis_client import get_redis

        await get_redis().ping()
    except Exception as exc:
        logger.error("health.redis_check_failed", error=str(exc))
        return f"unhealthy: {exc}"
    return "healthy"


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health of the engine, its stores and the treasury.",
)
async def health_check(
    services: AtelierServices = Depends(get_atelier_services),
    settings: Settings = Depends(get_app_settings),
) -> HealthResponse:
    response = HealthResponse(
        version=__version__,
        database=await _check_database(),
        redis=await _check_redis(),
    )

    try:
        response.treasury_balance_usdc = await services.chain.get_token_balance(
            settings.treasury_wallet_address
        )
        response.chain = "healthy"
    except Exception as exc:
        logger.error("health.chain_check_failed", error=str(exc))
        response.chain = f"unhealthy: {exc}"

    if response.database == "healthy":
        response.settlements_needing_review = len(await services.reconciler.list_pending())

    dependencies = (response.database, response.redis, response.chain)
    response.status = "ok" if all(d == "healthy" for d in dependencies) else "degraded"
    return response
