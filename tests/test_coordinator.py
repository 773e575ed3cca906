import asyncio

import pytest

from aeo_client.services.coordinator import CoordinatorState, LifecycleCoordinator
from aeo_client.services.errors import (
    ApiError,
    CoordinatorStateError,
    FailureKind,
    PollTimeoutError,
    TaskCancelledError,
    TaskFailedError,
)
from aeo_client.services.features import (
    BACKLINK_ANALYSIS,
    CITATION_ANALYSIS,
    FAQ_GENERATION,
    KEYWORD_RESEARCH,
)
from aeo_client.services.polling import Poller
from aeo_client.services.tasks import TaskStatus

from .fakes import FakeApiClient

SUBMIT = ("POST", "/api/citations/analyze")
STATUS = ("GET", "/api/citations/status/42")
RESULTS = ("GET", "/api/citations/results/42")
RETRY = ("POST", "/api/citations/retry/42")


def make_coordinator(feature, client, clock, **kwargs):
    return LifecycleCoordinator(feature, client, poller=Poller(clock=clock, sleep=clock.sleep), **kwargs)


def held_response(payload):
    """A response that stays in flight until the returned gate is opened."""
    entered = asyncio.Event()
    gate = asyncio.Event()

    async def respond():
        entered.set()
        await gate.wait()
        return payload

    return respond, entered, gate


def citation_results(queries, failed=(), missing=()):
    by_query = []
    for query in queries:
        if query in missing:
            continue
        if query in failed:
            by_query.append({"query": query, "error": "provider timeout"})
        else:
            by_query.append({"query": query, "gpt": {"citation_found": True, "citation_references": []}})
    return {
        "task_id": 42,
        "url": "https://example.com",
        "queries": list(queries),
        "results": {"by_query": by_query, "scores": {"gpt_score": 80}},
    }


@pytest.mark.asyncio
async def test_round_trip_result_matches_submission(clock):
    """
    Test that a submitted citation analysis is polled to completion and
    that the normalized result describes the URL and queries that were submitted.
    """
    statuses = []
    progress = []

    async def on_status_change(status):
        statuses.append(status)

    client = FakeApiClient({
        SUBMIT: [{"task_id": 42, "status": "pending"}],
        STATUS: [
            {"task_id": 42, "status": "processing", "progress": {"completed": 1, "total": 2}},
            {"task_id": 42, "status": "completed"},
        ],
        RESULTS: [citation_results(["best crm", "crm pricing"])],
    })
    coordinator = make_coordinator(
        CITATION_ANALYSIS, client, clock, on_progress=progress.append, on_status_change=on_status_change
    )
    params = {"url": "https://example.com", "queries": ["best crm", "crm pricing"]}

    result = await coordinator.run(params)

    assert client.calls[0] == ("POST", "/api/citations/analyze", params)
    assert result.url == params["url"]
    assert result.queries == params["queries"]
    assert coordinator.state is CoordinatorState.COMPLETED
    assert statuses == [TaskStatus.PROCESSING, TaskStatus.COMPLETED]
    assert progress == [50.0, 100.0]
    assert coordinator.progress == 100.0
    assert client.count(*RESULTS) == 1

    snapshot = coordinator.snapshot()
    assert snapshot["state"] == "completed"
    assert snapshot["result"]["scores"]["gpt"] == 80.0
    assert snapshot["error"] is None


@pytest.mark.asyncio
async def test_start_while_polling_is_rejected(clock):
    respond, entered, gate = held_response({"task_id": 42, "status": "processing"})
    client = FakeApiClient({SUBMIT: [{"task_id": 42}], STATUS: [respond]})
    coordinator = make_coordinator(CITATION_ANALYSIS, client, clock)

    task = await coordinator.start({"url": "https://example.com"})
    assert task.status is TaskStatus.PENDING
    assert coordinator.state is CoordinatorState.POLLING

    with pytest.raises(CoordinatorStateError):
        await coordinator.start({"url": "https://example.com"})

    assert client.count(*SUBMIT) == 1
    await coordinator.close()


@pytest.mark.asyncio
async def test_cancel_with_request_in_flight_discards_its_response(clock):
    """
    Test that cancel() is cooperative and idempotent by doing the following...
     - Hold the first status request in flight.
     - Cancel twice; only the first call reports a cancellation.
     - Release the request; its completed response must not reach any callback
       and no further status check may be scheduled.
    """
    statuses = []
    progress = []
    respond, entered, gate = held_response({"task_id": 42, "status": "completed", "progress": 100})
    client = FakeApiClient({SUBMIT: [{"task_id": 42}], STATUS: [respond], RESULTS: [citation_results(["q"])]})
    coordinator = make_coordinator(
        CITATION_ANALYSIS, client, clock, on_progress=progress.append, on_status_change=statuses.append
    )

    await coordinator.start({"url": "https://example.com"})
    await entered.wait()

    assert coordinator.cancel() is True
    assert coordinator.cancel() is False
    gate.set()

    with pytest.raises(TaskCancelledError):
        await coordinator.wait()

    assert coordinator.state is CoordinatorState.CANCELLED
    assert coordinator.result is None
    assert statuses == []
    assert progress == []
    assert client.count(*STATUS) == 1
    assert client.count(*RESULTS) == 0
    assert coordinator.snapshot()["error"]["kind"] == FailureKind.CANCELLED.value


@pytest.mark.asyncio
async def test_cancel_during_submission_never_starts_polling(clock):
    respond, entered, gate = held_response({"task_id": 42, "status": "pending"})
    client = FakeApiClient({SUBMIT: [respond], STATUS: [{"status": "completed"}]})
    coordinator = make_coordinator(CITATION_ANALYSIS, client, clock)

    starting = asyncio.create_task(coordinator.start({"url": "https://example.com"}))
    await entered.wait()
    assert coordinator.state is CoordinatorState.SUBMITTING

    assert coordinator.cancel() is True
    gate.set()

    with pytest.raises(TaskCancelledError):
        await starting

    assert coordinator.state is CoordinatorState.CANCELLED
    assert coordinator.task is None
    assert client.count(*STATUS) == 0


@pytest.mark.asyncio
async def test_partial_failure_retry_merges_without_duplicates(clock):
    """
    Ten queries are analysed and three fail. Retrying re-queues only the failed
    queries and the retried run is merged into the earlier result.
    """
    queries = [f"query {i}" for i in range(10)]
    failed = {"query 2", "query 5", "query 7"}
    client = FakeApiClient({
        SUBMIT: [{"task_id": 42, "status": "pending"}],
        STATUS: [{"task_id": 42, "status": "completed"}],
        RESULTS: [
            citation_results(queries, failed=failed),
            citation_results(sorted(failed)),
        ],
        RETRY: [{"task_id": 42, "missing_count": 3}],
    })
    coordinator = make_coordinator(CITATION_ANALYSIS, client, clock)

    with pytest.raises(TaskFailedError) as info:
        await coordinator.run({"url": "https://example.com", "queries": queries})

    assert info.value.partial is True
    assert sorted(info.value.sub_errors) == sorted(failed)
    assert coordinator.state is CoordinatorState.FAILED
    assert len(coordinator.result.failed_queries) == 3
    assert coordinator.snapshot()["error"]["retryable"] is True

    task = await coordinator.retry()
    assert task.id == 42
    result = await coordinator.wait()

    assert client.count(*RETRY) == 1
    assert coordinator.state is CoordinatorState.COMPLETED
    assert [entry.query for entry in result.by_query] == queries
    assert len({entry.query for entry in result.by_query}) == 10
    assert result.failed_queries == []


@pytest.mark.asyncio
async def test_queries_without_results_are_retried_and_merged_in_order(clock):
    """
    Ten queries are submitted but the results cover only eight. The two
    queries with no entry count as failed, so the task is partial and a retry
    fills them in at their original positions.
    """
    queries = [f"query {i}" for i in range(10)]
    missing = {"query 3", "query 8"}
    client = FakeApiClient({
        SUBMIT: [{"task_id": 42, "status": "pending"}],
        STATUS: [{"task_id": 42, "status": "completed"}],
        RESULTS: [
            citation_results(queries, missing=missing),
            citation_results(sorted(missing)),
        ],
        RETRY: [{"task_id": 42, "missing_count": 2}],
    })
    coordinator = make_coordinator(CITATION_ANALYSIS, client, clock)

    with pytest.raises(TaskFailedError) as info:
        await coordinator.run({"url": "https://example.com", "queries": queries})

    assert info.value.partial is True
    assert sorted(info.value.sub_errors) == sorted(missing)
    assert coordinator.state is CoordinatorState.FAILED
    assert len(coordinator.result.by_query) == 10

    await coordinator.retry()
    result = await coordinator.wait()

    assert coordinator.state is CoordinatorState.COMPLETED
    assert [entry.query for entry in result.by_query] == queries
    assert result.failed_queries == []


@pytest.mark.asyncio
async def test_timeout_is_reported_as_its_own_kind(clock):
    client = FakeApiClient({
        ("POST", "/api/faq/task"): [{"task_id": "f1", "status": "pending"}],
        ("GET", "/api/faq/task/f1"): [{"task_id": "f1", "status": "generating"}],
    })
    coordinator = make_coordinator(FAQ_GENERATION, client, clock, max_attempts=3)

    with pytest.raises(PollTimeoutError):
        await coordinator.run({"input": "answer engine optimization"})

    assert coordinator.state is CoordinatorState.FAILED
    assert coordinator.snapshot()["error"]["kind"] == FailureKind.TIMEOUT.value
    assert client.count("GET", "/api/faq/task/f1") == 3

    # FAQ generation has no retry endpoint
    with pytest.raises(CoordinatorStateError):
        await coordinator.retry()


@pytest.mark.asyncio
async def test_retry_after_timeout_is_rejected(clock):
    client = FakeApiClient({SUBMIT: [{"task_id": 42}], STATUS: [{"status": "processing"}]})
    coordinator = make_coordinator(CITATION_ANALYSIS, client, clock, max_attempts=2)

    with pytest.raises(PollTimeoutError):
        await coordinator.run({"url": "https://example.com"})

    with pytest.raises(CoordinatorStateError):
        await coordinator.retry()
    assert ("POST", "/api/citations/retry/42") not in [(m, p) for m, p, _ in client.calls]


@pytest.mark.asyncio
async def test_validation_failure_on_submission_is_not_polled(clock):
    client = FakeApiClient({
        ("POST", "/api/keyword-research"): [ApiError("The query field is required.", 422)],
    })
    coordinator = make_coordinator(KEYWORD_RESEARCH, client, clock)

    with pytest.raises(ApiError) as info:
        await coordinator.start({})

    assert info.value.kind is FailureKind.VALIDATION
    assert coordinator.state is CoordinatorState.FAILED
    assert coordinator.snapshot()["error"]["message"] == "The query field is required."
    assert [call[:2] for call in client.calls] == [("POST", "/api/keyword-research")]


@pytest.mark.asyncio
async def test_start_again_after_failure(clock):
    client = FakeApiClient({
        ("POST", "/api/keyword-research"): [ApiError("Server error", 500), {"id": 7, "status": "pending"}],
        ("GET", "/api/keyword-research/7/status"): [{"status": "completed", "progress": 100}],
        ("GET", "/api/keyword-research/7/results"): [{"id": 7, "keywords": [{"keyword": "crm"}]}],
    })
    coordinator = make_coordinator(KEYWORD_RESEARCH, client, clock)

    with pytest.raises(ApiError):
        await coordinator.start({"query": "crm"})

    result = await coordinator.run({"query": "crm"})

    assert coordinator.state is CoordinatorState.COMPLETED
    assert result.query == "crm"
    assert [row.keyword for row in result.keywords] == ["crm"]


@pytest.mark.asyncio
async def test_keyword_research_does_not_support_retry(clock):
    coordinator = make_coordinator(KEYWORD_RESEARCH, FakeApiClient({}), clock)

    with pytest.raises(CoordinatorStateError):
        await coordinator.retry()


@pytest.mark.asyncio
async def test_close_leaves_no_poll_task_running(clock):
    respond, entered, gate = held_response({"task_id": 42, "status": "processing"})
    client = FakeApiClient({SUBMIT: [{"task_id": 42}], STATUS: [respond]})
    coordinator = make_coordinator(CITATION_ANALYSIS, client, clock)

    await coordinator.start({"url": "https://example.com"})
    await entered.wait()
    poll_task = coordinator._poll_task

    await coordinator.close()

    assert poll_task.done()
    assert coordinator._poll_task is None
    assert coordinator.state is CoordinatorState.CANCELLED


@pytest.mark.asyncio
async def test_backlink_status_lookups_send_the_task_id_in_the_body(clock):
    client = FakeApiClient({
        ("POST", "/api/seo/backlinks/submit"): [{"task_id": "bl-9", "status": "queued"}],
        ("POST", "/api/seo/backlinks/status"): [{"task_id": "bl-9", "status": "completed"}],
        ("POST", "/api/seo/backlinks/results"): [{
            "task_id": "bl-9",
            "backlinks": [{"source_url": "https://spam.example/", "risk_level": "high"}],
        }],
    })
    coordinator = make_coordinator(BACKLINK_ANALYSIS, client, clock)
    result = await coordinator.run({"domain": "example.com"})

    assert ("POST", "/api/seo/backlinks/status", {"task_id": "bl-9"}) in client.calls
    assert ("POST", "/api/seo/backlinks/results", {"task_id": "bl-9"}) in client.calls
    assert result.domain == "example.com"
    assert result.pbn.high_risk_count == 1
