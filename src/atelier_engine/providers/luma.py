"""Luma Dream Machine adapter: text-to-video, image-to-video and video remix."""

from __future__ import annotations

from typing import Any

from atelier_engine.domain.enums import MediaType
from atelier_engine.domain.exceptions import ProviderError
from atelier_engine.domain.provider_protocol import GenerationRequest, GenerationResult
from atelier_engine.execution import PollStatus
from atelier_engine.providers.base import HttpProvider

LUMA_MODEL = "ray-2"


class LumaProvider(HttpProvider):
    name = "luma"
    display_name = "Luma"
    base_url = "https://api.lumalabs.ai/dream-machine/v1"

    def _build_body(self, request: GenerationRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "prompt": request.prompt,
            "aspect_ratio": request.aspect_ratio or "16:9",
            "model": LUMA_MODEL,
        }
        if request.model == "dream_5s":
            return body
        if request.model in ("i2v", "remix"):
            # remix starts from a video clip, passed through image_url
            if not request.image_url:
                raise self._missing_input("image_url", request.model)
            frame_type = "image" if request.model == "i2v" else "video"
            body["keyframes"] = {"frame0": {"type": frame_type, "url": request.image_url}}
            return body
        raise self._unknown_model(request.model)

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        body = self._build_body(request)
        headers = self._headers()
        model = request.model or ""

        def interpret(poll: dict[str, Any]) -> PollStatus:
            state = poll.get("state")
            if state == "failed":
                return PollStatus.failed(
                    f"Luma generation failed: {poll.get('failure_reason') or 'unknown'}"
                )
            video_url = (poll.get("video") or {}).get("url")
            if state == "completed" and video_url:
                return PollStatus.succeeded(
                    GenerationResult(url=video_url, media_type=MediaType.VIDEO, model=model)
                )
            return PollStatus.running()

        async with self._session() as client:
            generation = await self._post_json(
                client, f"{self.base_url}/generations", body, headers
            )
            generation_id = generation.get("id")
            if not generation_id:
                raise ProviderError("Luma returned no generation ID", provider=self.name)
            return await self._poll_job(
                client, f"{self.base_url}/generations/{generation_id}", headers, interpret
            )
