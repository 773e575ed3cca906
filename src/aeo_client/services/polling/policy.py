"""Retry/backoff decisions per failure kind."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from aeo_client.services.errors import ApiError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryAction(str, Enum):
    RETRY_AFTER = "retry_after"
    ABORT = "abort"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay: float = 0.0

    @property
    def should_retry(self) -> bool:
        return self.action is not RetryAction.ABORT


ABORT = RetryDecision(RetryAction.ABORT)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Decides whether a failed exchange is retried.

    Only rate limiting (429) is retried: the delay is
    `min(base_interval * 2 ** backoff_round, backoff_cap)` and `backoff_round` grows
    with every consecutive rate-limited response, so the delay strictly increases
    until it reaches the cap. Everything else, connection failures and 5xx
    included, is treated as non-transient and aborts.
    """

    base_interval: float = 2.0
    backoff_cap: float = 30.0

    def backoff_delay(self, backoff_round: int) -> float:
        return min(self.base_interval * (2 ** backoff_round), self.backoff_cap)

    def decide(self, error: BaseException, backoff_round: int) -> RetryDecision:
        if isinstance(error, ApiError) and error.is_rate_limited:
            return RetryDecision(RetryAction.RETRY_AFTER, self.backoff_delay(backoff_round))
        return ABORT

    def next_poll_delay(self) -> float:
        """Steady-state wait between status checks: fixed, not exponential."""
        return self.base_interval

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        max_retries: int = 3,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> T:
        """
        Run a one-shot call, retrying per `decide`.

        At most `max_retries` rate-limited rounds are waited out before the 429
        is raised to the caller.
        """
        sleep = sleep or asyncio.sleep
        backoff_round = 0
        while True:
            try:
                return await fn()
            except ApiError as exc:
                decision = self.decide(exc, backoff_round)
                backoff_round += 1
                if not decision.should_retry or backoff_round > max_retries:
                    raise
                logger.info("Rate limited (%s), retrying in %.1fs", exc.message, decision.delay)
                await sleep(decision.delay)
