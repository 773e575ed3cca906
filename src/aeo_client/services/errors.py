"""
Error taxonomy shared by the transport, poller and lifecycle coordinators.

Every failure that reaches a coordinator's caller is a TaskClientError carrying a
FailureKind, so presentation code can branch on the kind ("took too long" vs.
"the job failed") without inspecting HTTP details.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Union


class FailureKind(str, Enum):
    """Discriminator for every failure surfaced to callers."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    HTTP = "http"
    TASK_FAILED = "task_failed"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    CANCELLED = "cancelled"


_STATUS_KINDS: Dict[int, FailureKind] = {
    0: FailureKind.TRANSPORT,
    401: FailureKind.AUTHENTICATION,
    404: FailureKind.NOT_FOUND,
    422: FailureKind.VALIDATION,
    429: FailureKind.RATE_LIMITED,
}


class TaskClientError(Exception):
    """Base class for all orchestration failures."""

    kind: FailureKind = FailureKind.HTTP

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ApiError(TaskClientError):
    """A failed request/response exchange.

    `status` is the HTTP status (or the envelope's status when the server reports
    one); 0 means the request never produced a response.
    """

    def __init__(self, message: str, status: int, response: Any = None):
        super().__init__(message)
        self.status = status
        self.response = response

    @property
    def kind(self) -> FailureKind:  # type: ignore[override]
        return _STATUS_KINDS.get(self.status, FailureKind.HTTP)

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429

    def __repr__(self) -> str:
        return f"ApiError(status={self.status}, message={self.message!r})"


class TaskFailedError(TaskClientError):
    """The remote job reported failure.

    For citation analysis the failure may be partial: some sub-queries failed while
    the rest produced results, which are kept on `result` so a retry can merge
    into them.
    """

    kind = FailureKind.TASK_FAILED

    def __init__(
        self,
        message: str,
        task_id: Union[str, int, None] = None,
        sub_errors: Optional[List[str]] = None,
        partial: bool = False,
        result: Any = None,
    ):
        super().__init__(message)
        self.task_id = task_id
        self.sub_errors = list(sub_errors or [])
        self.partial = partial
        self.result = result


class PollTimeoutError(TaskClientError):
    """Polling gave up. The job may still be running server-side."""

    kind = FailureKind.TIMEOUT

    MAX_ATTEMPTS = "max_attempts"
    WALL_CLOCK = "wall_clock"

    def __init__(self, task_id: Union[str, int], reason: str, attempts: int, elapsed: float):
        if reason == self.WALL_CLOCK:
            message = f"Task {task_id} did not finish within {elapsed:.0f} seconds"
        else:
            message = f"Task {task_id} did not finish after {attempts} status checks"
        super().__init__(message)
        self.task_id = task_id
        self.reason = reason
        self.attempts = attempts
        self.elapsed = elapsed


class MalformedResponseError(TaskClientError):
    """A payload matched none of the known shapes."""

    kind = FailureKind.MALFORMED_RESPONSE

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message)
        self.payload = payload


class TaskCancelledError(TaskClientError):
    kind = FailureKind.CANCELLED

    def __init__(self, task_id: Union[str, int, None] = None):
        super().__init__(f"Task {task_id} was cancelled" if task_id is not None else "Task was cancelled")
        self.task_id = task_id


class CoordinatorStateError(RuntimeError):
    """A lifecycle operation was invoked from a state that does not allow it."""


def describe_failure(error: BaseException) -> Dict[str, Any]:
    """
    Map a failure to a user-facing message.

    Returns:
        Dict with `kind`, `message` and `reauthenticate` (True when the caller should
        send the user back through login).
    """
    if isinstance(error, ApiError):
        status_messages = {
            401: "Your session has expired. Please log in again.",
            404: "Resource not found.",
            429: "Rate limit exceeded. Please try again in a moment.",
            500: "Server error. Please try again later.",
            502: "External service error. Please try again later.",
        }
        if error.status == 422:
            message = error.message or "Validation error. Please check your input."
        elif error.status == 0:
            message = error.message or "Network error. Please check your connection."
        else:
            message = status_messages.get(error.status) or error.message or "An error occurred. Please try again."
        return {
            "kind": error.kind.value,
            "message": message,
            "reauthenticate": error.status == 401,
        }

    if isinstance(error, PollTimeoutError):
        message = "The analysis is taking longer than expected. It may still finish; check back later."
    elif isinstance(error, TaskFailedError):
        message = f"The job failed: {error.message}"
    elif isinstance(error, MalformedResponseError):
        message = "The service returned a response we could not understand."
    elif isinstance(error, TaskCancelledError):
        message = "The analysis was cancelled."
    else:
        message = str(error) or "An unexpected error occurred."

    kind = error.kind.value if isinstance(error, TaskClientError) else FailureKind.HTTP.value
    return {"kind": kind, "message": message, "reauthenticate": False}
