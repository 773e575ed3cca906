import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from aeo_client.services.client import ApiClient
from aeo_client.services.features import FeatureSpec
from aeo_client.services.tasks import TaskId, TaskStatus

logger = logging.getLogger(__name__)


@dataclass
class SubmittedTask:
    id: TaskId
    status: TaskStatus
    payload: Any = None


class TaskSubmitter:
    """Starts one unit of remote work for a feature. Never retries: a failed
    submission is raised to the caller, who decides whether to resubmit."""

    def __init__(self, client: ApiClient):
        self.client = client

    async def submit(self, feature: FeatureSpec, params: Optional[Mapping[str, Any]] = None) -> SubmittedTask:
        """
        Create a task.

        Args:
            feature: The feature whose submit endpoint is called.
            params: Feature-specific request body, already validated by the caller.

        Returns:
            SubmittedTask with the server-assigned id and initial status
            (pending when the server does not report one).

        Raises:
            ApiError: the request failed; carries the HTTP status and message.
            MalformedResponseError: the response carries no task id.
        """
        payload = await feature.submit.call(self.client, body=params or {})
        task_id = feature.extract_task_id(payload)
        status = feature.parse_status(payload)
        if status is None or status.is_terminal:
            # Some submit endpoints answer with a synchronous snapshot; polling decides terminality
            status = TaskStatus.PENDING
        logger.info("Submitted %s task %s", feature.name, task_id)
        return SubmittedTask(id=task_id, status=status, payload=payload)

    async def resubmit_failed(self, feature: FeatureSpec, task_id: TaskId) -> Any:
        """Re-queue only the failed parts of a task (features with a retry endpoint)."""
        if feature.retry is None:
            raise ValueError(f"{feature.name} does not support partial retry")
        payload = await feature.retry.call(self.client, task_id)
        logger.info("Re-queued failed parts of %s task %s: %s", feature.name, task_id, payload)
        return payload
