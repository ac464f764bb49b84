"""Fulfillment Pipeline — turns an order brief into a stored media asset.

Both fulfillment paths run through here:

    single order:   system prompt + brief ──▶ provider ──▶ fetch ──▶ blob store
    workspace:      system prompt + brief + session history + prompt ──▶ (same)

Transient provider failures (429, 503, dropped connections) are retried with
exponential backoff; everything else surfaces on the first attempt. The
caller owns all order state changes.

Usage:
    from atelier_engine.orchestration import FulfillmentService

    asset = await fulfillment.produce(
        service,
        build_order_prompt(service.system_prompt, order.brief),
        agent_id=str(order.provider_agent_id),
    )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from atelier_engine.domain.provider_protocol import GenerationRequest, GenerationResult
from atelier_engine.execution import (
    DEFAULT_BASE_DELAY_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    generate_with_retry,
)
from atelier_engine.infrastructure.storage import CONTENT_TYPES, blob_key
from atelier_engine.logging_config import get_logger

if TYPE_CHECKING:
    from atelier_engine.infrastructure.database.orm_models import Service
    from atelier_engine.infrastructure.storage import BlobStorage, MediaFetcher
    from atelier_engine.providers import ProviderRegistry

logger = get_logger(__name__)

SESSION_HISTORY_HEADER = (
    "Previous generations in this session "
    "(maintain visual consistency, same characters, same style):"
)


def build_order_prompt(system_prompt: str | None, brief: str) -> str:
    """Prompt for a single-shot order."""
    if not system_prompt:
        return brief
    return f"{system_prompt}\n\nUser request: {brief}"


def build_workspace_prompt(
    system_prompt: str | None,
    brief: str,
    previous_prompts: list[str],
    prompt: str,
) -> str:
    """Prompt for one workspace generation.

    Earlier successful prompts are replayed so the provider keeps the same
    characters and style across the session.
    """
    parts: list[str] = []
    if system_prompt:
        parts.append(system_prompt)
    parts.append(f"Project brief: {brief}")
    if previous_prompts:
        history = "\n".join(f'{i}. "{p}"' for i, p in enumerate(previous_prompts, start=1))
        parts.append(f"{SESSION_HISTORY_HEADER}\n{history}")
    parts.append(f"Current request: {prompt}")
    return "\n\n".join(parts)


class FulfillmentService:
    """Runs one generation end to end and returns the durable asset."""

    def __init__(
        self,
        providers: ProviderRegistry,
        storage: BlobStorage,
        fetcher: MediaFetcher,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        persist_media: bool = True,
    ) -> None:
        self._providers = providers
        self._storage = storage
        self._fetcher = fetcher
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._persist_media = persist_media

    async def produce(
        self,
        service: Service,
        prompt: str,
        *,
        agent_id: str,
        image_url: str | None = None,
    ) -> GenerationResult:
        """Generate media for `prompt` with the service's provider and store it.

        Raises:
            ProviderNotConfiguredError: The service has no provider_key.
            ProviderError: The provider or media download failed.
        """
        provider = self._providers.get(service.provider_key)
        request = GenerationRequest(
            prompt=prompt,
            model=service.provider_model,
            image_url=image_url,
        )
        log = logger.bind(
            provider=service.provider_key,
            model=service.provider_model,
            service_id=str(service.id),
        )
        log.info("fulfillment.generating", prompt_chars=len(prompt))

        result = await generate_with_retry(
            lambda: provider.generate(request),
            max_attempts=self._max_attempts,
            base_delay=self._base_delay,
        )
        log.info("fulfillment.generated", media_type=result.media_type, model=result.model)

        if not self._persist_media:
            return result

        data = await self._fetcher.fetch(result.url)
        key = blob_key(agent_id, result.media_type)
        url = await self._storage.put(key, data, CONTENT_TYPES[result.media_type])
        log.info("fulfillment.stored", key=key, size=len(data))
        return GenerationResult(url=url, media_type=result.media_type, model=result.model)
