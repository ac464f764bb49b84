"""MiniMax Hailuo adapter.

A finished MiniMax job yields a file id, not a URL; one more call to the
files API resolves it to a download URL.
"""

from __future__ import annotations

from typing import Any

from atelier_engine.domain.enums import MediaType
from atelier_engine.domain.exceptions import ProviderError
from atelier_engine.domain.provider_protocol import GenerationRequest, GenerationResult
from atelier_engine.execution import PollStatus
from atelier_engine.providers.base import HttpProvider

HAILUO_PRO = "MiniMax-Hailuo-2.3"
HAILUO_FAST = "MiniMax-Hailuo-2.3-Fast"


def _status_msg(payload: dict[str, Any], default: str) -> str:
    return (payload.get("base_resp") or {}).get("status_msg") or default


class MinimaxProvider(HttpProvider):
    name = "minimax"
    display_name = "MiniMax"
    base_url = "https://api.minimax.io/v1"

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        headers = self._headers()
        body: dict[str, Any] = {
            "model": HAILUO_PRO if request.model == "hailuo_pro" else HAILUO_FAST,
            "prompt": request.prompt,
        }
        if request.image_url:
            body["first_frame_image"] = request.image_url

        def interpret(poll: dict[str, Any]) -> PollStatus:
            status = poll.get("status")
            if status == "Fail":
                return PollStatus.failed(
                    f"MiniMax generation failed: {_status_msg(poll, 'unknown')}"
                )
            if status == "Success" and poll.get("file_id"):
                return PollStatus.succeeded(poll["file_id"])
            return PollStatus.running()

        async with self._session() as client:
            created = await self._post_json(
                client, f"{self.base_url}/video_generation", body, headers
            )
            task_id = created.get("task_id")
            if not task_id:
                raise ProviderError(
                    f"MiniMax submit failed: {_status_msg(created, 'no task_id')}",
                    provider=self.name,
                )

            file_id = await self._poll_job(
                client,
                f"{self.base_url}/query/video_generation?task_id={task_id}",
                headers,
                interpret,
            )

            file_data = await self._get_json(
                client,
                f"{self.base_url}/files/retrieve?file_id={file_id}",
                headers,
                what="file retrieve",
            )
            download_url = (file_data.get("file") or {}).get("download_url")
            if not download_url:
                raise ProviderError("MiniMax returned no download URL", provider=self.name)

        return GenerationResult(
            url=download_url, media_type=MediaType.VIDEO, model=request.model or ""
        )
