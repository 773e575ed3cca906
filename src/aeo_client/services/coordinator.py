"""
Per-feature lifecycle coordination.

A LifecycleCoordinator owns the mutable state for one feature instance: the
current task, its poll session and the asyncio task driving that session. It
runs the state machine

    Idle -> Submitting -> Polling -> Completed | Failed | Cancelled

and guarantees at most one active poll session at a time.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from aeo_client.services.client import ApiClient
from aeo_client.services.errors import (
    CoordinatorStateError,
    TaskCancelledError,
    TaskFailedError,
    describe_failure,
)
from aeo_client.services.features import FeatureSpec
from aeo_client.services.polling import Poller, PollOptions, RetryPolicy, StatusSnapshot
from aeo_client.services.submitter import TaskSubmitter
from aeo_client.services.tasks import PollSession, Task, TaskStatus

logger = logging.getLogger(__name__)


class CoordinatorState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATES = (CoordinatorState.SUBMITTING, CoordinatorState.POLLING)


class LifecycleCoordinator:
    """Exposes start/cancel/retry for one feature to the presentation layer."""

    def __init__(
        self,
        feature: FeatureSpec,
        client: ApiClient,
        *,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        max_wall_clock: float = 600.0,
        backoff_cap: float = 30.0,
        poller: Optional[Poller] = None,
        submitter: Optional[TaskSubmitter] = None,
        on_progress: Optional[Callable[[float], Any]] = None,
        on_status_change: Optional[Callable[[TaskStatus], Any]] = None,
    ):
        self.feature = feature
        self.client = client
        self.poll_interval = poll_interval if poll_interval is not None else feature.poll_interval
        self.max_attempts = max_attempts if max_attempts is not None else feature.max_attempts
        self.max_wall_clock = max_wall_clock
        self.backoff_cap = backoff_cap
        self.poller = poller or Poller()
        self.submitter = submitter or TaskSubmitter(client)
        self.on_progress = on_progress
        self.on_status_change = on_status_change

        self.state = CoordinatorState.IDLE
        self.params: Dict[str, Any] = {}
        self.task: Optional[Task] = None
        self.progress: Optional[float] = None
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self._session: Optional[PollSession] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    async def start(self, params: Optional[Mapping[str, Any]] = None) -> Task:
        """
        Submit a new task and begin polling it in the background.

        Returns:
            The submitted task (id and initial status). Use `wait()` for the outcome.

        Raises:
            CoordinatorStateError: a task is already submitting or polling.
            TaskCancelledError: `cancel()` was called while the submission was in flight.
            ApiError / MalformedResponseError: the submission failed; the caller
                must call `start` again.
        """
        if self.is_active:
            raise CoordinatorStateError(f"{self.feature.name} already has an active task")

        self._release_session()
        self._generation += 1
        generation = self._generation
        self.state = CoordinatorState.SUBMITTING
        self.params = dict(params or {})
        self.task = None
        self.progress = None
        self.result = None
        self.error = None

        try:
            submitted = await self.submitter.submit(self.feature, self.params)
        except Exception as exc:
            if self._superseded(generation):
                raise TaskCancelledError() from exc
            self.state = CoordinatorState.FAILED
            self.error = exc
            raise

        if self._superseded(generation):
            logger.info("Discarding %s task %s submitted after cancellation", self.feature.name, submitted.id)
            raise TaskCancelledError(submitted.id)

        self.task = Task(id=submitted.id, kind=self.feature.kind, status=submitted.status)
        self._begin_polling(self.task)
        return self.task

    async def retry(self) -> Task:
        """
        Re-queue the failed parts of the current task and poll it again.

        Only valid from Failed after the job itself failed (not after a timeout or
        transport error), and only for features with a retry endpoint. Results of
        the retried run are merged into the partial result already held.
        """
        if not self.feature.supports_retry:
            raise CoordinatorStateError(f"{self.feature.name} does not support retry")
        if self.state is not CoordinatorState.FAILED or not isinstance(self.error, TaskFailedError) or self.task is None:
            raise CoordinatorStateError(f"{self.feature.name} has no failed task to retry")

        previous_error = self.error
        base_result = previous_error.result if previous_error.partial else None
        task_id = self.task.id

        self._generation += 1
        generation = self._generation
        self.state = CoordinatorState.SUBMITTING
        try:
            response = await self.submitter.resubmit_failed(self.feature, task_id)
        except Exception:
            if not self._superseded(generation):
                self.state = CoordinatorState.FAILED
                self.error = previous_error
            raise

        if self._superseded(generation):
            raise TaskCancelledError(task_id)

        if isinstance(response, Mapping) and response.get("missing_count") is not None:
            logger.info("Retrying %s missing parts of %s task %s", response["missing_count"], self.feature.name, task_id)
        self.error = None
        self.progress = None
        self.task = Task(id=task_id, kind=self.feature.kind, status=TaskStatus.PENDING)
        self._begin_polling(self.task, base_result=base_result)
        return self.task

    def cancel(self) -> bool:
        """
        Stop the active task. Cooperative: a request already in flight is not
        aborted, but its result is discarded and no further checks are scheduled.

        Returns:
            True when something was cancelled; calling again is a no-op.
        """
        if not self.is_active:
            return False
        task_id = self.task.id if self.task else None
        self.state = CoordinatorState.CANCELLED
        self.error = TaskCancelledError(task_id)
        self._generation += 1
        self._release_session()
        logger.info("Cancelled %s task %s", self.feature.name, task_id)
        return True

    async def wait(self) -> Any:
        """
        Wait for the current task to settle.

        Returns:
            The normalized result.

        Raises:
            The discriminated failure (TaskFailedError, PollTimeoutError,
            TaskCancelledError, ApiError, MalformedResponseError).
        """
        poll_task = self._poll_task
        if poll_task is not None and not poll_task.done():
            await asyncio.wait({poll_task})

        if self.state is CoordinatorState.COMPLETED:
            return self.result
        if self.state in (CoordinatorState.FAILED, CoordinatorState.CANCELLED) and self.error is not None:
            raise self.error
        raise CoordinatorStateError(f"{self.feature.name} has no task to wait for")

    async def run(self, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Start a task and wait for its result."""
        await self.start(params)
        return await self.wait()

    async def close(self) -> None:
        """Tear down: cancel and make sure no poll task outlives the coordinator."""
        self.cancel()
        self._release_session()
        poll_task = self._poll_task
        self._poll_task = None
        if poll_task is not None and not poll_task.done():
            poll_task.cancel()
            await asyncio.wait({poll_task})

    def snapshot(self) -> Dict[str, Any]:
        result = self.result
        if hasattr(result, "to_dict"):
            result = result.to_dict()
        error = None
        if self.error is not None:
            error = describe_failure(self.error)
            if isinstance(self.error, TaskFailedError):
                error["sub_errors"] = self.error.sub_errors
                error["retryable"] = self.feature.supports_retry
        return {
            "feature": self.feature.name,
            "state": self.state.value,
            "task": self.task.to_dict() if self.task else None,
            "progress": self.progress,
            "result": result,
            "error": error,
        }

    def _superseded(self, generation: int) -> bool:
        return generation != self._generation or self.state is CoordinatorState.CANCELLED

    def _release_session(self) -> None:
        if self._session is not None:
            self._session.cancel()
            self._session = None

    def _begin_polling(self, task: Task, base_result: Any = None) -> None:
        self._release_session()
        session = PollSession(task_id=task.id)
        self._session = session
        self.state = CoordinatorState.POLLING
        self._poll_task = asyncio.create_task(self._run_session(task, session, base_result))

    def _is_current(self, session: PollSession) -> bool:
        return session is self._session and not session.cancelled

    def _report_progress(self, session: PollSession, percentage: float) -> Any:
        if not self._is_current(session):
            return None
        self.progress = percentage
        if self.on_progress is not None:
            return self.on_progress(percentage)
        return None

    def _report_status(self, session: PollSession, status: TaskStatus) -> Any:
        if not self._is_current(session):
            return None
        logger.debug("%s task %s is %s", self.feature.name, session.task_id, status.value)
        if self.on_status_change is not None:
            return self.on_status_change(status)
        return None

    def _poll_options(self, task: Task, session: PollSession) -> PollOptions:
        # Result fetches are one-shot calls, so rate limiting is retried there too
        result_policy = RetryPolicy(base_interval=self.poll_interval, backoff_cap=self.backoff_cap)

        async def fetch_result(snapshot: StatusSnapshot) -> Any:
            return await result_policy.call(lambda: self.feature.fetch_result(self.client, task.id, snapshot))

        return PollOptions(
            max_attempts=self.max_attempts,
            interval=self.poll_interval,
            max_wall_clock=self.max_wall_clock,
            backoff_cap=self.backoff_cap,
            on_progress=lambda percentage: self._report_progress(session, percentage),
            on_status_change=lambda status: self._report_status(session, status),
            result_fn=fetch_result,
            normalize=lambda payload: self.feature.normalize(payload, self.params),
        )

    async def _run_session(self, task: Task, session: PollSession, base_result: Any) -> None:
        try:
            await self.poller.poll(
                task,
                lambda: self.feature.fetch_status(self.client, task.id),
                self._poll_options(task, session),
                session,
            )
        except TaskCancelledError:
            logger.debug("Poll session for %s task %s ended by cancellation", self.feature.name, task.id)
            return
        except Exception as exc:
            if self._is_current(session):
                self._finish(task, session, error=exc)
            return
        finally:
            if self._poll_task is asyncio.current_task():
                self._poll_task = None

        if not self._is_current(session):
            return

        result = task.result
        if base_result is not None and self.feature.merge_results is not None:
            result = self.feature.merge_results(base_result, result)
        self.result = result

        failed = self.feature.failed_parts(result)
        if failed:
            error = TaskFailedError(
                f"{len(failed)} part(s) of the task failed", task.id, sub_errors=failed, partial=True, result=result
            )
            self._finish(task, session, error=error)
        else:
            self._finish(task, session)

    def _finish(self, task: Task, session: PollSession, error: Optional[BaseException] = None) -> None:
        """Record the terminal outcome and destroy the session."""
        if error is None:
            self.state = CoordinatorState.COMPLETED
            logger.info("%s task %s completed", self.feature.name, task.id)
        else:
            self.state = CoordinatorState.FAILED
            self.error = error
            logger.warning("%s task %s failed (%s): %s", self.feature.name, task.id, describe_failure(error)["kind"], error)
        if self._session is session:
            self._session = None
