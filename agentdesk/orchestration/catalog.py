"""Model catalog.

Immutable registry of the models the gateway can route to, with the owning
provider, a coarse category and optional per-1M-token pricing used for cost
accrual on provider keys.

Usage:
    catalog = ModelCatalog.default()
    spec = catalog.require("gpt-4o")
    cost = catalog.estimate_cost(spec, input_tokens=1200, output_tokens=300)
"""

from __future__ import annotations

from collections.abc import Iterable

from agentdesk.errors import ProviderUnavailable, ValidationError
from agentdesk.orchestration.models import ModelCategory, ModelPricing, ModelSpec, ProviderName

LOCAL_ECHO_MODEL = "echo-1"


def _spec(
    model_id: str,
    display_name: str,
    provider: ProviderName,
    category: ModelCategory,
    input_cost: float = 0.0,
    output_cost: float = 0.0,
) -> ModelSpec:
    return ModelSpec(
        model_id=model_id,
        display_name=display_name,
        provider=provider,
        category=category,
        pricing=ModelPricing(input_cost=input_cost, output_cost=output_cost),
    )


P = ProviderName
C = ModelCategory

DEFAULT_MODELS: tuple[ModelSpec, ...] = (
    # OpenAI
    _spec("gpt-4o", "GPT-4o", P.OPENAI, C.STANDARD, 2.5, 10.0),
    _spec("gpt-4-turbo", "GPT-4 Turbo", P.OPENAI, C.COMPLEX, 10.0, 30.0),
    _spec("gpt-3.5-turbo", "GPT-3.5 Turbo", P.OPENAI, C.FAST, 0.5, 1.5),
    _spec("dall-e-3", "DALL-E 3", P.OPENAI, C.IMAGE),
    _spec("dall-e-2", "DALL-E 2", P.OPENAI, C.IMAGE),
    # Anthropic
    _spec("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", P.ANTHROPIC, C.STANDARD, 3.0, 15.0),
    _spec("claude-sonnet-20241022", "Sonnet 4.5", P.ANTHROPIC, C.COMPLEX, 3.0, 15.0),
    _spec("claude-3-opus-20240229", "Claude 3 Opus", P.ANTHROPIC, C.COMPLEX, 15.0, 75.0),
    _spec("claude-3-haiku-20240307", "Claude 3 Haiku", P.ANTHROPIC, C.FAST, 0.25, 1.25),
    # Google
    _spec("gemini-1.5-pro", "Gemini 1.5 Pro", P.GOOGLE, C.STANDARD, 1.25, 5.0),
    _spec("gemini-1.5-flash", "Gemini 1.5 Flash", P.GOOGLE, C.FAST, 0.075, 0.3),
    _spec("gemini-pro-vision", "Gemini Pro Vision", P.GOOGLE, C.MULTIMODAL),
    # Amazon
    _spec("claude-v2", "Claude V2", P.AMAZON, C.STANDARD),
    _spec("titan-text-express-v1", "Titan Text Express", P.AMAZON, C.FAST),
    _spec("titan-text-premier-v1", "Titan Text Premier", P.AMAZON, C.COMPLEX),
    # Meta
    _spec("llama-3.1-405b", "LLaMA 3.1 405B", P.META, C.COMPLEX),
    _spec("llama-3.1-70b", "LLaMA 3.1 70B", P.META, C.STANDARD),
    _spec("llama-3.1-8b", "LLaMA 3.1 8B", P.META, C.FAST),
    # DeepSeek
    _spec("deepseek-coder-v2", "DeepSeek Coder V2", P.DEEPSEEK, C.CODING, 0.14, 0.28),
    _spec("deepseek-chat", "DeepSeek Chat", P.DEEPSEEK, C.STANDARD, 0.27, 1.1),
    # xAI
    _spec("grok-beta", "Grok Beta", P.XAI, C.STANDARD, 5.0, 15.0),
    # Ninja
    _spec("ninja-405b", "Ninja 405B", P.NINJA, C.FAST),
    _spec("ninja-70b-nemotron", "Ninja 70B Nemotron", P.NINJA, C.STANDARD),
    _spec("ninja-llm-3.0", "Ninja-LLM 3.0", P.NINJA, C.COMPLEX),
    # Local development backend, no network
    _spec(LOCAL_ECHO_MODEL, "Local Echo", P.LOCAL, C.FAST),
)

# Image models are listed for discovery but are not served by the chat gateway
CHAT_CATEGORIES = frozenset(category for category in ModelCategory if category is not ModelCategory.IMAGE)


class ModelCatalog:
    """Read-only model lookup, keyed by model id."""

    def __init__(self, models: Iterable[ModelSpec]) -> None:
        self._models: dict[str, ModelSpec] = {}
        for model in models:
            if model.model_id in self._models:
                raise ValueError(f"Duplicate model id in catalog: {model.model_id}")
            self._models[model.model_id] = model

    @classmethod
    def default(cls) -> ModelCatalog:
        return cls(DEFAULT_MODELS)

    def get(self, model_id: str) -> ModelSpec | None:
        return self._models.get(model_id)

    def require(self, model_id: str) -> ModelSpec:
        model = self._models.get(model_id)
        if model is None:
            raise ProviderUnavailable(f"Model '{model_id}' is not in the catalog", model_id=model_id)
        return model

    def list_models(self, category: str | ModelCategory | None = None) -> list[ModelSpec]:
        if category is None:
            return list(self._models.values())
        try:
            wanted = ModelCategory(category)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown model category '{category}'",
                allowed=[c.value for c in ModelCategory],
            ) from exc
        return [model for model in self._models.values() if model.category is wanted]

    def for_provider(self, provider: ProviderName) -> list[ModelSpec]:
        return [model for model in self._models.values() if model.provider is provider]

    @staticmethod
    def estimate_cost(model: ModelSpec, input_tokens: int, output_tokens: int) -> float:
        """Estimate the cost of a call from the model's per-1M-token pricing."""
        input_cost = (input_tokens / 1_000_000) * model.pricing.input_cost
        output_cost = (output_tokens / 1_000_000) * model.pricing.output_cost
        return input_cost + output_cost

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)
