"""
Generic status poller.

One implementation serves every feature: the feature supplies a status-fetch
function (returning a StatusSnapshot), an optional follow-up result fetch, and a
normalizer. The poller owns timing: fixed-interval checks, exponential backoff on
rate limiting, an attempt ceiling and an independent wall-clock ceiling.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from aeo_client.services.errors import (
    ApiError,
    PollTimeoutError,
    TaskCancelledError,
    TaskFailedError,
)
from aeo_client.services.polling.policy import RetryPolicy
from aeo_client.services.tasks import PollSession, Progress, Task, TaskStatus

logger = logging.getLogger(__name__)


@dataclass
class StatusSnapshot:
    """One status response reduced to what the poller needs."""

    status: Optional[TaskStatus]
    raw_status: Any = None
    progress: Optional[Progress] = None
    payload: Any = None
    error: Optional[str] = None
    sub_errors: List[str] = field(default_factory=list)


StatusFn = Callable[[], Awaitable[StatusSnapshot]]


@dataclass
class PollOptions:
    max_attempts: int = 60
    interval: float = 2.0
    max_wall_clock: float = 600.0
    backoff_cap: float = 30.0
    on_progress: Optional[Callable[[float], Any]] = None
    on_status_change: Optional[Callable[[TaskStatus], Any]] = None
    # Follow-up fetch for features whose results live behind a separate endpoint
    result_fn: Optional[Callable[[StatusSnapshot], Awaitable[Any]]] = None
    normalize: Optional[Callable[[Any], Any]] = None


class Poller:
    """Polls one task at a time until it is terminal, cancelled or timed out."""

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._clock = clock or time.monotonic
        self._sleep = sleep

    async def poll(
        self,
        task: Task,
        status_fn: StatusFn,
        options: PollOptions,
        session: Optional[PollSession] = None,
    ) -> Task:
        """
        Poll `task` until it completes.

        Returns:
            The task, completed, with its normalized result.

        Raises:
            TaskFailedError: the remote job reported failure.
            PollTimeoutError: attempt ceiling or wall-clock ceiling reached.
            TaskCancelledError: the session was cancelled.
            ApiError: any non-rate-limited transport failure, including 404.
            MalformedResponseError: the completed payload was unrecognizable.
        """
        session = session or PollSession(task_id=task.id)
        session.started_at = self._clock()
        policy = RetryPolicy(base_interval=options.interval, backoff_cap=options.backoff_cap)

        while True:
            self._check_cancelled(session)

            elapsed = self._clock() - session.started_at
            if elapsed > options.max_wall_clock:
                logger.warning("Task %s: wall-clock ceiling of %ss reached", task.id, options.max_wall_clock)
                raise PollTimeoutError(task.id, PollTimeoutError.WALL_CLOCK, session.attempts, elapsed)

            try:
                snapshot = await status_fn()
            except ApiError as exc:
                self._check_cancelled(session)
                decision = policy.decide(exc, session.rate_limited_rounds)
                if not decision.should_retry:
                    if exc.status == 404:
                        logger.warning("Task %s is unknown to the server", task.id)
                    raise
                session.rate_limited_rounds += 1
                logger.info("Task %s: rate limited, backing off %.1fs", task.id, decision.delay)
                await self._wait(decision.delay, session)
                continue

            self._check_cancelled(session)
            session.rate_limited_rounds = 0
            await self._observe(task, snapshot, session, options)

            if task.status is TaskStatus.COMPLETED:
                payload = snapshot.payload
                if options.result_fn is not None:
                    payload = await options.result_fn(snapshot)
                    self._check_cancelled(session)
                result = options.normalize(payload) if options.normalize else payload
                if session.last_percentage != 100.0:
                    session.last_percentage = 100.0
                    await self._emit(options.on_progress, 100.0, session)
                task.complete(result)
                logger.info("Task %s completed after %d checks", task.id, session.attempts + 1)
                return task

            if task.status is TaskStatus.FAILED:
                message = snapshot.error or "Task failed"
                task.fail(message, snapshot.sub_errors)
                logger.warning("Task %s failed: %s", task.id, message)
                raise TaskFailedError(message, task.id, snapshot.sub_errors)

            session.attempts += 1
            if session.attempts >= options.max_attempts:
                logger.warning("Task %s: gave up after %d checks", task.id, session.attempts)
                raise PollTimeoutError(
                    task.id, PollTimeoutError.MAX_ATTEMPTS, session.attempts, self._clock() - session.started_at
                )
            await self._wait(policy.next_poll_delay(), session)

    async def _observe(self, task: Task, snapshot: StatusSnapshot, session: PollSession, options: PollOptions) -> None:
        status = snapshot.status
        if status is None:
            logger.warning("Task %s: unrecognized status %r, continuing", task.id, snapshot.raw_status)
        else:
            accepted = task.advance(status) or task.status is status
            if accepted and status is not session.last_status:
                session.last_status = status
                logger.debug("Task %s -> %s", task.id, status.value)
                await self._emit(options.on_status_change, status, session)

        if snapshot.progress is not None:
            percentage = snapshot.progress.as_percentage()
            if percentage is not None:
                task.progress = snapshot.progress
                session.last_percentage = percentage
                await self._emit(options.on_progress, percentage, session)

    async def _emit(self, callback: Optional[Callable[[Any], Any]], value: Any, session: PollSession) -> None:
        if callback is None or session.cancelled:
            return
        outcome = callback(value)
        if inspect.isawaitable(outcome):
            await outcome

    async def _wait(self, delay: float, session: PollSession) -> None:
        """Sleep before the next check; wakes early when the session is cancelled."""
        if self._sleep is not None:
            await self._sleep(delay)
        else:
            try:
                await asyncio.wait_for(session.cancel_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        self._check_cancelled(session)

    @staticmethod
    def _check_cancelled(session: PollSession) -> None:
        if session.cancelled:
            raise TaskCancelledError(session.task_id)
