from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type

from iano_chat.errors import StreamNetworkError


@dataclass
class ReconnectState:
    """Retry bookkeeping for one user-initiated streaming send."""

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.5
    retry_count: int = 0

    @property
    def exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def reset(self) -> None:
        self.retry_count = 0

    def suppress(self) -> None:
        self.retry_count = self.max_retries

    def backoff_delay(self, retry_count: int) -> float:
        """Delay before jitter for the ``retry_count``-th retry (1-based)."""
        exponent = max(0, retry_count - 1)
        return min(self.base_delay * (2 ** exponent), self.max_delay)

    def next_delay(self, retry_count: int) -> float:
        jitter = random.uniform(0, self.jitter) if self.jitter > 0 else 0.0
        return self.backoff_delay(retry_count) + jitter

    def progress_message(self) -> str:
        return f"Connection lost, reconnecting ({self.retry_count}/{self.max_retries})..."


def build_retrying(
    state: ReconnectState,
    *,
    on_reconnect: Callable[[ReconnectState, BaseException | None, float], None],
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncRetrying:
    """Retry loop for network-class stream failures.

    Only :class:`StreamNetworkError` is retried. The loop stops once
    ``state.retry_count`` reaches ``state.max_retries``, which is also how a
    cancellation suppresses any further attempt.
    """

    def _stop(retry_state: RetryCallState) -> bool:
        return state.exhausted

    def _wait(retry_state: RetryCallState) -> float:
        return state.next_delay(retry_state.attempt_number)

    def _before_sleep(retry_state: RetryCallState) -> None:
        state.retry_count = retry_state.attempt_number
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        reason = type(exc).__name__ if exc else "Unknown"
        logger.warning(
            f"{reason}: {exc}. Reconnecting in {wait:.1f}s "
            f"(attempt {state.retry_count}/{state.max_retries})..."
        )
        on_reconnect(state, exc, wait)

    return AsyncRetrying(
        retry=retry_if_exception_type(StreamNetworkError),
        stop=_stop,
        wait=_wait,
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
