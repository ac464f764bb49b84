"""Retry and polling primitives shared by every provider adapter.

Two building blocks:

    generate_with_retry(fn)      Re-run fn on transient failures (HTTP 429 / 503,
                                 dropped connections) with exponential backoff.
                                 Anything else propagates on the first attempt.

    poll_until_complete(poll)    Call poll every `interval` seconds until it reports
                                 success or failure, or `timeout` elapses.

Retries use tenacity; polling is a plain bounded loop.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from atelier_engine.domain.exceptions import (
    GenerationFailedError,
    GenerationTimeoutError,
    ProviderError,
)
from atelier_engine.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from tenacity import RetryCallState

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 2.0
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_POLL_TIMEOUT_SECONDS = 300.0

TRANSIENT_STATUS_CODES = frozenset({429, 503})
TRANSIENT_MESSAGE_MARKERS = ("503", "429", "ECONNRESET", "Connection reset")


def is_transient_error(exc: BaseException) -> bool:
    """Decide whether a failure is worth another attempt."""
    if isinstance(exc, GenerationTimeoutError):
        return False
    if isinstance(exc, ProviderError):
        if exc.status_code is not None:
            return exc.status_code in TRANSIENT_STATUS_CODES
        return any(marker in exc.message for marker in TRANSIENT_MESSAGE_MARKERS)
    if isinstance(exc, httpx.TimeoutException):
        return False
    if isinstance(exc, httpx.TransportError):
        return True
    return any(marker in str(exc) for marker in TRANSIENT_MESSAGE_MARKERS)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "generation.retrying",
        attempt=retry_state.attempt_number,
        wait_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else 0,
        error=str(exc),
    )


async def generate_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
) -> T:
    """Run `fn`, retrying transient failures with delays base, 2*base, 4*base...

    Raises:
        The last exception once attempts are exhausted, or the first
        non-transient exception immediately.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, exp_base=2),
        retry=retry_if_exception(is_transient_error),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await fn()
    raise AssertionError("unreachable")  # pragma: no cover


@dataclass(frozen=True)
class PollStatus(Generic[T]):
    """One observation of an asynchronous provider job."""

    done: bool = False
    result: T | None = None
    error: str | None = None

    @classmethod
    def running(cls) -> PollStatus[Any]:
        return cls()

    @classmethod
    def succeeded(cls, result: T) -> PollStatus[T]:
        return cls(done=True, result=result)

    @classmethod
    def failed(cls, error: str) -> PollStatus[Any]:
        return cls(done=True, error=error)


async def poll_until_complete(
    poll: Callable[[], Awaitable[PollStatus[T]]],
    *,
    interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
    timeout: float = DEFAULT_POLL_TIMEOUT_SECONDS,
    provider: str = "",
) -> T:
    """Poll a job until it finishes.

    Raises:
        GenerationFailedError: If the job reports an error.
        GenerationTimeoutError: If the job is still running after `timeout` seconds.
    """
    deadline = time.monotonic() + timeout
    while True:
        status = await poll()
        if status.error:
            raise GenerationFailedError(status.error, provider=provider)
        if status.done and status.result is not None:
            return status.result
        if time.monotonic() >= deadline:
            raise GenerationTimeoutError(timeout, provider=provider)
        await asyncio.sleep(interval)
