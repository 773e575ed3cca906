"""
Task endpoints for the presentation layer.
One lifecycle coordinator per feature; the browser starts, watches, cancels and
retries tasks through these routes.
"""
from typing import Any, Dict, List

from fastapi import APIRouter, Body, HTTPException, Query, Request

from aeo_client.services.coordinator import CoordinatorState

from aeo_client.services.errors import (
    CoordinatorStateError,
    FailureKind,
    TaskClientError,
    describe_failure,
)
from aeo_client.services.features import BACKLINK_ANALYSIS
from aeo_client.services.normalize import disavow_domains, render_disavow
from aeo_client.services.registry import CoordinatorRegistry

router = APIRouter()

_HTTP_STATUS_BY_KIND = {
    FailureKind.VALIDATION: 422,
    FailureKind.AUTHENTICATION: 401,
    FailureKind.NOT_FOUND: 404,
    FailureKind.RATE_LIMITED: 429,
}


def get_registry(request: Request) -> CoordinatorRegistry:
    return request.app.state.registry


def _coordinator(request: Request, feature: str):
    try:
        return get_registry(request).coordinator(feature)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown feature: {feature}")


def _failure(exc: TaskClientError) -> HTTPException:
    return HTTPException(
        status_code=_HTTP_STATUS_BY_KIND.get(exc.kind, 502),
        detail=describe_failure(exc),
    )


@router.get("/tasks/types")
async def get_task_types(request: Request) -> Dict[str, Any]:
    """
    List the features that run long-running tasks.

    Returns:
        Dict with each feature's description, poll cadence and retry support
    """
    features = get_registry(request).describe()
    return {
        "task_types": features,
        "count": len(features),
    }


@router.post("/tasks/{feature}")
async def start_task(request: Request, feature: str, params: Dict[str, Any] = Body(default={})) -> Dict[str, Any]:
    """
    Submit a task for a feature and start polling it in the background.

    Use GET /api/v1/tasks/{feature} to follow progress.
    """
    coordinator = _coordinator(request, feature)
    try:
        task = await coordinator.start(params)
    except CoordinatorStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TaskClientError as e:
        raise _failure(e)

    return {
        "task_id": task.id,
        "status": task.status.value,
        "feature": feature,
        "message": "Task started. Poll the feature endpoint to track progress.",
    }


@router.get("/tasks/{feature}")
async def get_task(request: Request, feature: str) -> Dict[str, Any]:
    """Current state of the feature's task, with result or failure once settled."""
    return _coordinator(request, feature).snapshot()


@router.post("/tasks/{feature}/cancel")
async def cancel_task(request: Request, feature: str) -> Dict[str, Any]:
    coordinator = _coordinator(request, feature)
    cancelled = coordinator.cancel()
    return {"cancelled": cancelled, "state": coordinator.state.value}


@router.post("/tasks/{feature}/retry")
async def retry_task(request: Request, feature: str) -> Dict[str, Any]:
    """Re-queue only the failed parts of a partially failed task."""
    coordinator = _coordinator(request, feature)
    try:
        task = await coordinator.retry()
    except CoordinatorStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TaskClientError as e:
        raise _failure(e)

    return {"task_id": task.id, "status": task.status.value, "feature": feature}


@router.get("/tasks/backlink-analysis/disavow")
async def get_disavow_file(
    request: Request,
    levels: List[str] = Query(default=["high", "critical"]),
) -> Dict[str, Any]:
    """
    Disavow list for the completed backlink analysis.

    Returns:
        Dict with the risky referring hosts and the file text to upload
    """
    coordinator = _coordinator(request, BACKLINK_ANALYSIS.name)
    if coordinator.state is not CoordinatorState.COMPLETED or coordinator.result is None:
        raise HTTPException(status_code=409, detail="No completed backlink analysis")

    domains = disavow_domains(coordinator.result, levels=levels)
    return {"domains": domains, "count": len(domains), "disavow": render_disavow(domains)}
