"""Grok adapter: synchronous images through LiteLLM, xAI video jobs over HTTP.

Images return in a single call. Video is a job: submit, receive a request_id,
then poll until the clip URL appears.
"""

from __future__ import annotations

from typing import Any

import litellm

from atelier_engine.domain.enums import MediaType
from atelier_engine.domain.exceptions import ProviderError
from atelier_engine.domain.provider_protocol import GenerationRequest, GenerationResult
from atelier_engine.execution import PollStatus
from atelier_engine.logging_config import get_logger
from atelier_engine.providers.base import HttpProvider

logger = get_logger(__name__)

VIDEO_MODELS = frozenset({"grok-imagine-video", "grok-2-video"})
XAI_VIDEO_MODEL = "grok-imagine-video"
DEFAULT_IMAGE_MODEL = "xai/grok-2-image"
DALLE_MODEL = "dall-e-3"

VIDEO_POLL_INTERVAL_SECONDS = 3.0
VIDEO_POLL_TIMEOUT_SECONDS = 120.0

_DALLE_SIZES = {"16:9": "1792x1024", "9:16": "1024x1792"}


class GrokProvider(HttpProvider):
    name = "grok"
    display_name = "Grok"
    base_url = "https://api.x.ai/v1"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        openai_api_key: str | None = None,
        image_model: str = DEFAULT_IMAGE_MODEL,
        poll_interval: float | None = None,
        poll_timeout: float | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            api_key,
            poll_interval=VIDEO_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval,
            poll_timeout=VIDEO_POLL_TIMEOUT_SECONDS if poll_timeout is None else poll_timeout,
            **kwargs,
        )
        self._openai_api_key = openai_api_key
        self._image_model = image_model

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        if request.model in VIDEO_MODELS:
            return await self._generate_video(request)
        return await self._generate_image(request)

    # ------------------------------------------------------------------
    # Images (LiteLLM)
    # ------------------------------------------------------------------

    async def _generate_image(self, request: GenerationRequest) -> GenerationResult:
        if request.model == DALLE_MODEL:
            model = DALLE_MODEL
            api_key = self._openai_api_key
            extra: dict[str, Any] = {
                "size": _DALLE_SIZES.get(request.aspect_ratio or "", "1024x1024")
            }
        else:
            model = self._image_model
            api_key = self._api_key
            extra = {}

        if not api_key:
            raise ProviderError(f"API key is not configured for {model}", provider=self.name)

        try:
            response = await litellm.aimage_generation(
                model=model,
                prompt=request.prompt,
                n=1,
                response_format="url",
                api_key=api_key,
                **extra,
            )
        except Exception as exc:
            status_code = getattr(exc, "status_code", None)
            logger.warning(
                "provider.image_generation_failed",
                provider=self.name,
                model=model,
                status_code=status_code,
                error=str(exc),
            )
            raise ProviderError(
                f"{model} API error ({status_code}): {exc}",
                provider=self.name,
                status_code=status_code,
            ) from exc

        data = getattr(response, "data", None) or []
        url = getattr(data[0], "url", None) if data else None
        if not url:
            raise ProviderError(f"{model} returned no image URL", provider=self.name)
        return GenerationResult(url=url, media_type=MediaType.IMAGE, model=model)

    # ------------------------------------------------------------------
    # Video (xAI job API)
    # ------------------------------------------------------------------

    async def _generate_video(self, request: GenerationRequest) -> GenerationResult:
        headers = self._headers()
        body: dict[str, Any] = {"prompt": request.prompt, "model": XAI_VIDEO_MODEL}
        if request.duration:
            body["duration"] = request.duration

        def interpret(poll: dict[str, Any]) -> PollStatus:
            url = (poll.get("video") or {}).get("url")
            if url:
                return PollStatus.succeeded(
                    GenerationResult(url=url, media_type=MediaType.VIDEO, model=XAI_VIDEO_MODEL)
                )
            return PollStatus.running()

        async with self._session() as client:
            created = await self._post_json(
                client, f"{self.base_url}/videos/generations", body, headers
            )
            request_id = created.get("request_id")
            if not request_id:
                raise ProviderError(
                    f"{XAI_VIDEO_MODEL} returned no request_id", provider=self.name
                )
            return await self._poll_job(
                client, f"{self.base_url}/videos/{request_id}", headers, interpret
            )
