"""Higgsfield adapter: DoP image-to-video, talking avatars and Soul portraits.

Higgsfield authenticates with a key id / secret pair and can reject content
after the fact: a job may finish in an "nsfw" state instead of "failed".
"""

from __future__ import annotations

from typing import Any

from atelier_engine.domain.enums import MediaType
from atelier_engine.domain.exceptions import (
    ContentRejectedError,
    GenerationFailedError,
    ProviderError,
)
from atelier_engine.domain.provider_protocol import GenerationRequest, GenerationResult
from atelier_engine.execution import PollStatus
from atelier_engine.providers.base import HttpProvider

NSFW_MESSAGE = "Higgsfield: content flagged as NSFW"


class HiggsfieldProvider(HttpProvider):
    name = "higgsfield"
    display_name = "Higgsfield"
    base_url = "https://platform.higgsfield.ai"

    def __init__(
        self,
        api_key_id: str | None = None,
        api_key_secret: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(api_key=None, **kwargs)
        self._key_id = api_key_id
        self._key_secret = api_key_secret

    def _headers(self) -> dict[str, str]:
        if not self._key_id or not self._key_secret:
            raise ProviderError(
                "Higgsfield key id and secret are not configured", provider=self.name
            )
        return {
            "Authorization": f"Key {self._key_id}:{self._key_secret}",
            "Content-Type": "application/json",
        }

    def _build_job(self, request: GenerationRequest) -> tuple[str, dict[str, Any], str]:
        """Return (endpoint, body, media_type) for the requested model."""
        model = request.model
        if model in ("dop_turbo", "dop_quality"):
            if not request.image_url:
                raise self._missing_input("image_url", model)
            return (
                "/v1/image2video/dop",
                {
                    "model": "dop-turbo" if model == "dop_turbo" else "dop",
                    "image_url": request.image_url,
                    "prompt": request.prompt,
                    "aspect_ratio": request.aspect_ratio or "16:9",
                },
                MediaType.VIDEO,
            )
        if model == "talking_avatar":
            if not request.image_url:
                raise self._missing_input("image_url", model)
            if not request.audio_url:
                raise self._missing_input("audio_url", model)
            return (
                "/v1/speak/higgsfield",
                {"image_url": request.image_url, "audio_url": request.audio_url},
                MediaType.VIDEO,
            )
        if model == "soul_portrait":
            return (
                "/v1/text2image/soul",
                {"prompt": request.prompt, "aspect_ratio": request.aspect_ratio or "1:1"},
                MediaType.IMAGE,
            )
        raise self._unknown_model(model)

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        endpoint, body, media_type = self._build_job(request)
        headers = self._headers()
        model = request.model or ""

        def interpret(poll: dict[str, Any]) -> PollStatus:
            status = poll.get("status")
            if status == "failed":
                return PollStatus.failed(
                    f"Higgsfield generation failed: {poll.get('error') or 'unknown'}"
                )
            if status == "nsfw":
                return PollStatus.failed(NSFW_MESSAGE)
            if status == "completed":
                result = poll.get("result") or {}
                url = result.get("output_url") or result.get("output")
                if not url:
                    return PollStatus.failed("Higgsfield returned no output URL")
                return PollStatus.succeeded(
                    GenerationResult(url=url, media_type=media_type, model=model)
                )
            return PollStatus.running()

        async with self._session() as client:
            submit = await self._post_json(client, f"{self.base_url}{endpoint}", body, headers)
            request_id = submit.get("request_id")
            if not request_id:
                raise ProviderError("Higgsfield returned no request_id", provider=self.name)
            try:
                return await self._poll_job(
                    client,
                    f"{self.base_url}/requests/{request_id}/status",
                    headers,
                    interpret,
                )
            except GenerationFailedError as exc:
                if exc.message == NSFW_MESSAGE:
                    raise ContentRejectedError(exc.message, provider=self.name) from exc
                raise
