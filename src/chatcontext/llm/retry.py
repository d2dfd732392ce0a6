"""Bounded exponential backoff for transient provider failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from chatcontext.config import PipelineConfig
from chatcontext.errors import ProviderError
from chatcontext.observability import increment_counter

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0

    @classmethod
    def from_config(cls, config: PipelineConfig) -> RetryPolicy:
        return cls(
            max_attempts=max(config.retry_attempts, 1),
            base_delay_seconds=config.retry_base_delay_seconds,
            max_delay_seconds=config.retry_max_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the *attempt*-th failure (1-based)."""
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    request_id: str | None = None,
    on_attempt: Callable[[int], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn()``, retrying only ``ProviderError(transient=True)``.

    Non-transient errors and the last transient error are re-raised with
    the request id attached.
    """
    attempt = 0
    while True:
        attempt += 1
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return await fn()
        except ProviderError as exc:
            if exc.request_id is None:
                exc.request_id = request_id
            if not exc.transient or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            increment_counter("provider.retries")
            logger.warning(
                "transient provider error attempt=%d/%d delay=%.2fs request_id=%s: %s",
                attempt,
                policy.max_attempts,
                delay,
                request_id,
                exc.message,
            )
            await sleep(delay)
