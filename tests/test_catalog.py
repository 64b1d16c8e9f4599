"""Tests for the model catalog and key seeding."""

import pytest

from agentdesk.errors import ProviderUnavailable, ValidationError
from agentdesk.orchestration.agents import default_agents
from agentdesk.orchestration.catalog import LOCAL_ECHO_MODEL, ModelCatalog
from agentdesk.orchestration.keypool import KeyPool
from agentdesk.orchestration.models import KeyRateLimits, ModelCategory, ProviderName
from agentdesk.orchestration.orchestrator import bind_agent_models, seed_keys


@pytest.fixture
def catalog():
    return ModelCatalog.default()


class TestModelCatalog:
    def test_every_agent_model_is_in_catalog(self, catalog):
        for agent in default_agents():
            assert agent.model_id in catalog

    def test_require_unknown_model(self, catalog):
        with pytest.raises(ProviderUnavailable):
            catalog.require("gpt-9")
        assert catalog.get("gpt-9") is None

    def test_list_by_category(self, catalog):
        coding = catalog.list_models("coding")
        assert [model.model_id for model in coding] == ["deepseek-coder-v2"]
        assert all(model.category is ModelCategory.FAST for model in catalog.list_models(ModelCategory.FAST))

    def test_unknown_category(self, catalog):
        with pytest.raises(ValidationError):
            catalog.list_models("holographic")

    def test_duplicate_ids_rejected(self, catalog):
        model = catalog.require("gpt-4o")
        with pytest.raises(ValueError):
            ModelCatalog([model, model])

    def test_cost_estimate(self, catalog):
        model = catalog.require("claude-3-opus-20240229")
        assert catalog.estimate_cost(model, 1_000_000, 1_000_000) == pytest.approx(90.0)
        assert catalog.estimate_cost(catalog.require("titan-text-express-v1"), 5000, 5000) == 0.0

    def test_every_provider_has_models(self, catalog):
        for provider in ProviderName:
            assert catalog.for_provider(provider)


class TestSeeding:
    def test_one_key_per_model_for_credentialed_providers(self, catalog):
        pool = KeyPool()
        seeded = seed_keys(pool, catalog, {"openai": "sk-openai-abcdef"}, KeyRateLimits())

        openai_models = {model.model_id for model in catalog.for_provider(ProviderName.OPENAI)}
        assert {key.model_id for key in seeded} == openai_models | {LOCAL_ECHO_MODEL}
        assert pool.list_keys("claude-3-haiku-20240307") == []

    def test_echo_key_always_seeded(self, catalog):
        pool = KeyPool()
        seed_keys(pool, catalog, {}, KeyRateLimits())
        assert [key.model_id for key in pool.list_keys()] == [LOCAL_ECHO_MODEL]

    def test_seeded_keys_have_independent_limits(self, catalog):
        pool = KeyPool()
        seed_keys(pool, catalog, {"xai": "xai-secret-123456"}, KeyRateLimits(requests_per_window=5))
        first, second = pool.list_keys()
        pool.update_limits(first.id, requests_per_window=50)
        assert second.rate_limits.requests_per_window == 5


class TestAgentModelOverrides:
    def test_rebind(self, catalog):
        agents = bind_agent_models(default_agents(), catalog, {"turbo": LOCAL_ECHO_MODEL})
        turbo = next(agent for agent in agents if agent.type.value == "turbo")
        assert turbo.model_id == LOCAL_ECHO_MODEL

    def test_unknown_agent_type(self, catalog):
        with pytest.raises(ValueError):
            bind_agent_models(default_agents(), catalog, {"janitor": "gpt-4o"})

    def test_unknown_model(self, catalog):
        with pytest.raises(ValueError):
            bind_agent_models(default_agents(), catalog, {"turbo": "gpt-9"})
