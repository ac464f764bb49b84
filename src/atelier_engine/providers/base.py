"""Shared plumbing for HTTP job-based provider adapters.

Every adapter submits a job with one POST and then polls a status URL.
HttpProvider owns the httpx client lifecycle, error wrapping and the poll
settings so the concrete adapters only describe request bodies and how to
read a status payload.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import httpx

from atelier_engine.domain.exceptions import ProviderError
from atelier_engine.execution import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_POLL_TIMEOUT_SECONDS,
    PollStatus,
    poll_until_complete,
)
from atelier_engine.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = get_logger(__name__)


class HttpProvider:
    """Base class for adapters that talk to a provider's REST API.

    Args:
        api_key: Credential for the provider. Missing keys fail at call time,
            not at construction, so unused providers need no configuration.
        client: Optional shared httpx.AsyncClient (tests pass one built on
            httpx.MockTransport). If omitted, a client is opened per call.
        poll_interval / poll_timeout: Job polling cadence in seconds.
    """

    name = "provider"
    display_name = "Provider"
    base_url = ""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        poll_interval: float | None = None,
        poll_timeout: float | None = None,
        request_timeout: float = 60.0,
    ) -> None:
        self._api_key = api_key
        self._client = client
        self._poll_interval = (
            DEFAULT_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )
        self._poll_timeout = (
            DEFAULT_POLL_TIMEOUT_SECONDS if poll_timeout is None else poll_timeout
        )
        self._request_timeout = request_timeout

    # ------------------------------------------------------------------
    # Overridable
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._require_key()}",
            "Content-Type": "application/json",
        }

    def _require_key(self) -> str:
        if not self._api_key:
            raise ProviderError(
                f"{self.display_name} API key is not configured", provider=self.name
            )
        return self._api_key

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._request_timeout) as client:
            yield client

    async def _post_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: dict[str, Any],
        headers: dict[str, str],
        what: str = "API",
    ) -> dict[str, Any]:
        """POST and decode JSON, raising ProviderError on a non-2xx reply."""
        response = await client.post(url, json=body, headers=headers)
        return self._decode(response, what)

    async def _get_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: dict[str, str],
        what: str = "API",
    ) -> dict[str, Any]:
        response = await client.get(url, headers=headers)
        return self._decode(response, what)

    def _decode(self, response: httpx.Response, what: str) -> dict[str, Any]:
        if not response.is_success:
            raise ProviderError(
                f"{self.display_name} {what} error ({response.status_code}): {response.text}",
                provider=self.name,
                status_code=response.status_code,
            )
        return response.json()

    async def _poll_job(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: dict[str, str],
        interpret: Callable[[dict[str, Any]], PollStatus],
    ) -> Any:
        """Poll `url` until `interpret` reports completion.

        A non-2xx status reply means "not ready yet"; providers return
        transient 404s right after submission.
        """

        async def poll() -> PollStatus:
            response = await client.get(url, headers=headers)
            if not response.is_success:
                logger.debug(
                    "provider.poll_not_ready",
                    provider=self.name,
                    status_code=response.status_code,
                )
                return PollStatus.running()
            return interpret(response.json())

        return await poll_until_complete(
            poll,
            interval=self._poll_interval,
            timeout=self._poll_timeout,
            provider=self.name,
        )

    def _unknown_model(self, model: str | None) -> ProviderError:
        return ProviderError(f"Unknown {self.display_name} model: {model}", provider=self.name)

    def _missing_input(self, field: str, model: str | None) -> ProviderError:
        return ProviderError(
            f"{field} required for {self.display_name} {model}", provider=self.name
        )
