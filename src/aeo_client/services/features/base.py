"""
Feature configuration.

The four features share one submit/poll/normalize flow. What differs between them
(endpoints, id field names, extra status names, cadence, result shape, retry
support) is declared here as data rather than as separate control flow.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from aeo_client.services.client import ApiClient
from aeo_client.services.errors import MalformedResponseError
from aeo_client.services.polling import StatusSnapshot
from aeo_client.services.tasks import Progress, TaskId, TaskKind, TaskStatus, coerce_status


@dataclass(frozen=True)
class Endpoint:
    """One remote operation. `{task_id}` in the path is filled in; `id_in_body`
    sends the task id as a JSON field instead (for POST-style status lookups)."""

    method: str
    path: str
    id_in_body: Optional[str] = None

    async def call(self, client: ApiClient, task_id: Optional[TaskId] = None, body: Optional[Mapping] = None) -> Any:
        path = self.path.format(task_id=task_id) if task_id is not None else self.path
        if self.method == "GET":
            return await client.get(path)
        json: Dict[str, Any] = dict(body or {})
        if self.id_in_body and task_id is not None:
            json[self.id_in_body] = task_id
        return await client.post(path, json=json or None)


def _task_body(payload: Any) -> Any:
    """Some responses nest the task record one level down under `data`."""
    if isinstance(payload, Mapping) and "status" not in payload and isinstance(payload.get("data"), Mapping):
        return payload["data"]
    return payload


@dataclass(frozen=True)
class FeatureSpec:
    kind: TaskKind
    description: str
    submit: Endpoint
    status: Endpoint
    normalize: Callable[[Any, Mapping], Any]
    # None when results are embedded in the terminal status response
    results: Optional[Endpoint] = None
    retry: Optional[Endpoint] = None
    id_fields: Tuple[str, ...] = ("id", "task_id")
    status_aliases: Mapping[str, TaskStatus] = field(default_factory=dict)
    error_fields: Tuple[str, ...] = ("error_message", "error", "message")
    poll_interval: float = 2.0
    max_attempts: int = 60
    partial_failures: Optional[Callable[[Any], List[str]]] = None
    merge_results: Optional[Callable[[Any, Any], Any]] = None

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def supports_retry(self) -> bool:
        return self.retry is not None

    def extract_task_id(self, payload: Any) -> TaskId:
        body = _task_body(payload)
        for candidate in (body, payload):
            if isinstance(candidate, Mapping):
                for key in self.id_fields:
                    value = candidate.get(key)
                    if value is not None and not isinstance(value, bool):
                        return value
        raise MalformedResponseError(f"{self.name}: submission response carries no task id", payload)

    def parse_status(self, payload: Any) -> Optional[TaskStatus]:
        body = _task_body(payload)
        if not isinstance(body, Mapping):
            return None
        return coerce_status(body.get("status"), self.status_aliases)

    def snapshot(self, payload: Any) -> StatusSnapshot:
        body = _task_body(payload)
        if not isinstance(body, Mapping):
            raise MalformedResponseError(f"{self.name}: status response is not an object", payload)

        error = None
        for key in self.error_fields:
            value = body.get(key)
            if isinstance(value, str) and value:
                error = value
                break

        sub_errors = []
        for entry in body.get("errors") or []:
            if isinstance(entry, str):
                sub_errors.append(entry)
            elif isinstance(entry, Mapping) and entry.get("message"):
                sub_errors.append(str(entry["message"]))

        status = coerce_status(body.get("status"), self.status_aliases)
        return StatusSnapshot(
            status=status,
            raw_status=body.get("status"),
            progress=Progress.parse(body.get("progress")),
            payload=body,
            # A completed payload's "message" is informational, not an error
            error=error if status is TaskStatus.FAILED else None,
            sub_errors=sub_errors,
        )

    async def fetch_status(self, client: ApiClient, task_id: TaskId) -> StatusSnapshot:
        return self.snapshot(await self.status.call(client, task_id))

    async def fetch_result(self, client: ApiClient, task_id: TaskId, snapshot: StatusSnapshot) -> Any:
        if self.results is None:
            return snapshot.payload
        return _task_body(await self.results.call(client, task_id))

    def failed_parts(self, result: Any) -> List[str]:
        if self.partial_failures is None:
            return []
        return self.partial_failures(result)
