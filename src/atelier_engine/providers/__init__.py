"""Generation provider adapters and registry.

Five back-ends plus a mock:
    - GrokProvider:        images via LiteLLM, xAI video jobs
    - RunwayProvider:      Gen-4 image/text to video
    - LumaProvider:        Dream Machine ray-2
    - HiggsfieldProvider:  DoP video, talking avatar, Soul portraits
    - MinimaxProvider:     Hailuo video
    - MockProvider:        Instant configurable result for dry runs and tests

ProviderRegistry builds the adapter named by a service's provider_key.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any, ClassVar

from atelier_engine.domain.enums import MediaType, ProviderKey
from atelier_engine.domain.exceptions import ProviderError, ProviderNotConfiguredError
from atelier_engine.domain.provider_protocol import (
    GenerationProvider,
    GenerationRequest,
    GenerationResult,
)
from atelier_engine.providers.grok import GrokProvider
from atelier_engine.providers.higgsfield import HiggsfieldProvider
from atelier_engine.providers.luma import LumaProvider
from atelier_engine.providers.minimax import MinimaxProvider
from atelier_engine.providers.runway import RunwayProvider

if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

    from atelier_engine.config import Settings


class MockProvider:
    """Instant mock provider for dry-run simulations.

    Returns a placeholder URL with zero network calls. Failures can be
    scripted: each entry of `failures` is raised by one call, in order,
    before calls start succeeding.
    """

    name = "mock"

    def __init__(
        self,
        failures: list[Exception] | None = None,
        media_type: str | None = None,
    ) -> None:
        self.failures = list(failures or [])
        self.media_type = media_type
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        if self.failures:
            raise self.failures.pop(0)
        media_type = self.media_type or (
            MediaType.VIDEO if "video" in (request.model or "") else MediaType.IMAGE
        )
        extension = "mp4" if media_type == MediaType.VIDEO else "png"
        return GenerationResult(
            url=f"https://mock.atelier.local/{uuid.uuid4().hex}.{extension}",
            media_type=media_type,
            model=request.model or "mock",
        )


def _grok(settings: Settings, **kw: Any) -> GenerationProvider:
    return GrokProvider(
        settings.xai_api_key,
        openai_api_key=settings.openai_api_key,
        image_model=settings.grok_image_model,
        **kw,
    )


def _runway(settings: Settings, **kw: Any) -> GenerationProvider:
    return RunwayProvider(settings.runway_api_key, **kw)


def _luma(settings: Settings, **kw: Any) -> GenerationProvider:
    return LumaProvider(settings.luma_api_key, **kw)


def _higgsfield(settings: Settings, **kw: Any) -> GenerationProvider:
    return HiggsfieldProvider(
        settings.higgsfield_api_key_id, settings.higgsfield_api_key_secret, **kw
    )


def _minimax(settings: Settings, **kw: Any) -> GenerationProvider:
    return MinimaxProvider(settings.minimax_api_key, **kw)


class ProviderRegistry:
    """Builds provider adapters from a service's provider_key.

    Usage:
        registry = ProviderRegistry(settings)
        provider = registry.get("runway")
        result = await provider.generate(request)

        # Dry-run mode: every key resolves to the shared MockProvider
        registry = ProviderRegistry(settings, dry_run=True)
    """

    _registry: ClassVar[dict[str, Callable[..., GenerationProvider]]] = {
        ProviderKey.GROK.value: _grok,
        ProviderKey.RUNWAY.value: _runway,
        ProviderKey.LUMA.value: _luma,
        ProviderKey.HIGGSFIELD.value: _higgsfield,
        ProviderKey.MINIMAX.value: _minimax,
    }

    def __init__(
        self,
        settings: Settings,
        *,
        dry_run: bool = False,
        mock: MockProvider | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._dry_run = dry_run
        self._mock = mock or MockProvider()
        self._client = client
        self._cache: dict[str, GenerationProvider] = {}

    @property
    def mock(self) -> MockProvider:
        return self._mock

    def get(self, provider_key: str | None) -> GenerationProvider:
        """Return the adapter for `provider_key`.

        Raises:
            ProviderNotConfiguredError: If the key is empty.
            ProviderError: If the key is unknown.
        """
        if not provider_key:
            raise ProviderNotConfiguredError(provider_key)
        if self._dry_run or provider_key == ProviderKey.MOCK.value:
            return self._mock

        if provider_key not in self._cache:
            factory = self._registry.get(provider_key)
            if factory is None:
                raise ProviderError(f"Unknown provider: {provider_key}", provider=provider_key)
            self._cache[provider_key] = factory(
                self._settings,
                client=self._client,
                request_timeout=self._settings.provider_request_timeout_seconds,
                **self._poll_overrides(provider_key),
            )
        return self._cache[provider_key]

    def _poll_overrides(self, provider_key: str) -> dict[str, float]:
        # Grok video keeps its own faster cadence
        if provider_key == ProviderKey.GROK.value:
            return {}
        return {
            "poll_interval": self._settings.provider_poll_interval_seconds,
            "poll_timeout": self._settings.provider_poll_timeout_seconds,
        }

    @classmethod
    def get_supported_keys(cls) -> list[str]:
        return [*cls._registry.keys(), ProviderKey.MOCK.value]


__all__ = [
    "GenerationProvider",
    "GenerationRequest",
    "GenerationResult",
    "GrokProvider",
    "HiggsfieldProvider",
    "LumaProvider",
    "MinimaxProvider",
    "MockProvider",
    "ProviderRegistry",
    "RunwayProvider",
]
