"""Generation Provider Protocol.

Defines the interface every content-generation back-end must implement.
This is a Protocol (structural subtyping) so concrete adapters don't need
to inherit from a base class, they just need to match the shape.

The domain layer has ZERO imports from httpx, LiteLLM, or any provider SDK.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class GenerationRequest:
    """Input to a provider.

    Attributes:
        prompt: The fully assembled prompt text.
        model: Provider-specific model key stored on the service (e.g. "turbo_5s").
        image_url: Optional source image for image-to-video / avatar models.
        audio_url: Optional audio track for talking-avatar models.
        duration: Optional clip length in seconds.
        aspect_ratio: Optional aspect ratio such as "16:9".
    """

    prompt: str
    model: str | None = None
    image_url: str | None = None
    audio_url: str | None = None
    duration: int | None = None
    aspect_ratio: str | None = None


@dataclass(frozen=True)
class GenerationResult:
    """Output from a provider.

    Attributes:
        url: Where the provider is hosting the generated media (often short-lived).
        media_type: "image" or "video".
        model: The concrete upstream model that produced it.
    """

    url: str
    media_type: str
    model: str = ""

    def to_dict(self) -> dict:
        return {"url": self.url, "media_type": self.media_type, "model": self.model}


@runtime_checkable
class GenerationProvider(Protocol):
    """Protocol that all provider adapters must satisfy.

    Concrete implementations live in atelier_engine.providers:
        - grok.py        (LiteLLM images, xAI video jobs)
        - runway.py      (image/text to video tasks)
        - luma.py        (Dream Machine generations)
        - higgsfield.py  (DoP video, talking avatar, Soul portraits)
        - minimax.py     (Hailuo video + file retrieval)
    """

    name: str

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Produce one piece of media for the request.

        Raises:
            ProviderError: With a provider-specific message on any failure.
        """
        ...
