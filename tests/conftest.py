"""Shared test fixtures for pytest."""

import asyncio
import uuid

import pytest
import pytest_asyncio

from agentdesk.errors import ProviderRequestFailed
from agentdesk.events import RecordingSubscriber
from agentdesk.metrics import metrics
from agentdesk.orchestration.models import ProviderName, SubscriptionTier, UserContext
from agentdesk.orchestration.providers import ProviderAdapter, ProviderResponse, TokenUsage

TEST_CREDENTIALS = {
    "openai_api_key": "sk-test-openai-000000",
    "anthropic_api_key": "sk-ant-test-000000",
    "google_api_key": "AIza-test-000000",
    "amazon_api_key": "amz-test-000000",
    "meta_api_key": "meta-test-000000",
    "deepseek_api_key": "ds-test-000000",
    "xai_api_key": "xai-test-000000",
    "ninja_api_key": "nj-test-000000",
}


class FakeAdapter(ProviderAdapter):
    """Stands in for every provider; records calls and can fail or block on demand."""

    provider = ProviderName.LOCAL

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.failures: list[Exception] = []
        self.gate: asyncio.Event | None = None
        self.input_tokens = 12
        self.output_tokens = 8

    def fail_next(self, error: Exception | None = None) -> None:
        self.failures.append(error or ProviderRequestFailed("upstream returned HTTP 500", status_code=500))

    async def invoke(self, model_id, prompt, options, credential):
        self.calls.append({"model_id": model_id, "prompt": prompt, "options": options, "credential": credential})
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        return ProviderResponse(
            content=f"answer from {model_id} #{len(self.calls)}",
            usage=TokenUsage(input_tokens=self.input_tokens, output_tokens=self.output_tokens),
            model_id=model_id,
        )


def fast_settings(**overrides):
    """Settings with every provider configured and short delays."""
    from agentdesk.config import Settings

    values = {
        "database_url": f"sqlite+aiosqlite:///file:test_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true",
        "log_level": "WARNING",
        "session_start_delay_seconds": 0.01,
        "session_stop_delay_seconds": 0.01,
        "stale_task_seconds": 3600.0,
        "reaper_interval_seconds": 3600.0,
        **TEST_CREDENTIALS,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def settings():
    return fast_settings()


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def user():
    return UserContext(user_id="user-1")


@pytest.fixture
def ultra_user():
    return UserContext(user_id="user-ultra", tier=SubscriptionTier.ULTRA)


@pytest_asyncio.fixture
async def orchestrator(settings, fake_adapter):
    """Orchestrator wired to the fake adapter for every provider."""
    from agentdesk.orchestration.orchestrator import Orchestrator

    core = Orchestrator.from_settings(settings, adapters={provider: fake_adapter for provider in ProviderName})
    yield core
    await core.aclose()


@pytest.fixture
def recorder(orchestrator):
    subscriber = RecordingSubscriber()
    orchestrator.events.subscribe("test-recorder", subscriber)
    return subscriber


@pytest.fixture
def client(monkeypatch, fake_adapter):
    """Create a test client for the server with isolated in-memory database."""
    import agentdesk.config
    import agentdesk.db.engine

    test_settings = fast_settings()
    monkeypatch.setenv("AGENTDESK_DATABASE_URL", test_settings.database_url)
    monkeypatch.setenv("AGENTDESK_LOG_LEVEL", "WARNING")
    agentdesk.config.get_settings.cache_clear()

    # Reset engine to force new connection
    agentdesk.db.engine._engine = None

    # Import create_app AFTER patching
    from fastapi.testclient import TestClient

    from agentdesk.orchestration.orchestrator import Orchestrator
    from agentdesk.server import create_app

    core = Orchestrator.from_settings(test_settings, adapters={provider: fake_adapter for provider in ProviderName})
    app = create_app(orchestrator=core)
    with TestClient(app) as test_client:
        yield test_client

    # Cleanup
    agentdesk.db.engine._engine = None
    agentdesk.config.get_settings.cache_clear()
