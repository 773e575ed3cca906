import pytest

from aeo_client.config import PollingSettings, Settings
from aeo_client.services.client import LoginCredentialProvider, StaticTokenProvider
from aeo_client.services.coordinator import CoordinatorState
from aeo_client.services.registry import CoordinatorRegistry, build_credentials
from aeo_client.services.tasks import TaskStatus

from .fakes import FakeApiClient


def test_static_token_wins_over_login():
    settings = Settings(api_base_url="https://aeo.test", auth_token="tok", api_email="a@b.c", api_password="pw")
    credentials = build_credentials(settings)
    assert isinstance(credentials, StaticTokenProvider)
    assert credentials.token == "tok"

    settings.auth_token = None
    assert isinstance(build_credentials(settings), LoginCredentialProvider)

    anonymous = build_credentials(Settings())
    assert isinstance(anonymous, StaticTokenProvider)
    assert anonymous.token is None


def test_coordinators_are_created_once_per_feature_with_configured_cadence():
    settings = Settings(polling={"faq-generation": PollingSettings(interval=0.5, max_attempts=7)}, backoff_cap=9)
    registry = CoordinatorRegistry(FakeApiClient({}), settings)

    faq = registry.coordinator("faq-generation")
    assert registry.coordinator("faq-generation") is faq
    assert faq.poll_interval == 0.5
    assert faq.max_attempts == 7
    assert faq.backoff_cap == 9

    citations = registry.coordinator("citation-analysis")
    assert citations.poll_interval == 5.0
    assert citations.max_attempts == 120

    with pytest.raises(KeyError):
        registry.coordinator("site-audit")


def test_describe_lists_every_feature():
    info = CoordinatorRegistry(FakeApiClient({})).describe()

    assert set(info) == {"keyword-research", "citation-analysis", "backlink-analysis", "faq-generation"}
    assert [name for name, entry in info.items() if entry["supports_retry"]] == ["citation-analysis"]
    assert info["keyword-research"]["poll_interval"] == 2.0


@pytest.mark.asyncio
async def test_start_dispatches_to_the_feature_coordinator():
    """
    Test that CoordinatorRegistry.start submits through the feature's coordinator,
    passes keyword arguments as the request body, and that close() tears down
    coordinators before closing the shared transport.
    """
    client = FakeApiClient({
        ("POST", "/api/faq/task"): [{"task_id": "f1", "status": "pending"}],
        ("GET", "/api/faq/task/f1"): [{
            "task_id": "f1",
            "status": "completed",
            "faqs": [{"question": "What is AEO?", "answer": "Answer engine optimization."}],
        }],
    })
    registry = CoordinatorRegistry(client)

    task = await registry.start("faq-generation", input="answer engine optimization", max_faqs=5)

    assert task.id == "f1"
    assert task.status is TaskStatus.PENDING
    assert client.calls[0] == ("POST", "/api/faq/task", {"input": "answer engine optimization", "max_faqs": 5})

    result = await registry.coordinator("faq-generation").wait()
    assert result.input == "answer engine optimization"
    assert result.faqs[0].question == "What is AEO?"

    await registry.close()
    assert client.closed


@pytest.mark.asyncio
async def test_close_cancels_active_tasks():
    client = FakeApiClient({
        ("POST", "/api/keyword-research"): [{"id": 3, "status": "queued"}],
        ("GET", "/api/keyword-research/3/status"): [{"status": "processing", "progress": 10}],
    })
    registry = CoordinatorRegistry(client, Settings(polling={"keyword-research": PollingSettings(60.0, 60)}))
    coordinator = registry.coordinator("keyword-research")

    await registry.start("keyword-research", query="crm")
    await registry.close()

    assert coordinator.state is CoordinatorState.CANCELLED
    assert coordinator._poll_task is None
    assert client.closed
