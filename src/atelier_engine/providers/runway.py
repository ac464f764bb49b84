"""Runway adapter: Gen-4 image-to-video and text-to-video tasks."""

from __future__ import annotations

from typing import Any

from atelier_engine.domain.enums import MediaType
from atelier_engine.domain.exceptions import ProviderError
from atelier_engine.domain.provider_protocol import GenerationRequest, GenerationResult
from atelier_engine.execution import PollStatus
from atelier_engine.providers.base import HttpProvider

RUNWAY_API_VERSION = "2024-11-06"

# service model key -> (endpoint, upstream model, needs source image)
_MODELS: dict[str, tuple[str, str, bool]] = {
    "turbo_5s": ("/v1/image_to_video", "gen4_turbo", True),
    "pro_gen4_5s": ("/v1/image_to_video", "gen4_aleph", True),
    "t2v_gen45": ("/v1/text_to_video", "gen4", False),
}


class RunwayProvider(HttpProvider):
    name = "runway"
    display_name = "Runway"
    base_url = "https://api.dev.runwayml.com"

    def _headers(self) -> dict[str, str]:
        return {**super()._headers(), "X-Runway-Version": RUNWAY_API_VERSION}

    def _build_body(self, request: GenerationRequest) -> tuple[str, dict[str, Any]]:
        spec = _MODELS.get(request.model or "")
        if spec is None:
            raise self._unknown_model(request.model)
        endpoint, upstream, needs_image = spec

        body: dict[str, Any] = {
            "model": upstream,
            "promptText": request.prompt,
            "duration": 5,
            "ratio": request.aspect_ratio or "16:9",
        }
        if needs_image:
            if not request.image_url:
                raise self._missing_input("image_url", request.model)
            body["promptImage"] = request.image_url
        return endpoint, body

    def _interpret(self, model: str) -> Any:
        def interpret(poll: dict[str, Any]) -> PollStatus:
            status = poll.get("status")
            if status in ("FAILED", "CANCELLED"):
                return PollStatus.failed(
                    f"Runway generation failed: {poll.get('failure') or status}"
                )
            output = poll.get("output") or []
            if status == "SUCCEEDED" and output:
                return PollStatus.succeeded(
                    GenerationResult(url=output[0], media_type=MediaType.VIDEO, model=model)
                )
            return PollStatus.running()

        return interpret

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        endpoint, body = self._build_body(request)
        headers = self._headers()
        async with self._session() as client:
            task = await self._post_json(client, f"{self.base_url}{endpoint}", body, headers)
            task_id = task.get("id")
            if not task_id:
                raise ProviderError("Runway returned no task ID", provider=self.name)
            return await self._poll_job(
                client,
                f"{self.base_url}/v1/tasks/{task_id}",
                headers,
                self._interpret(request.model or ""),
            )
