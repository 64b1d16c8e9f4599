"""Provider adapters and the gateway that routes model calls through them.

Each adapter only translates request and response shapes for one backend.
Anything other than a well-formed 2xx response becomes a
``ProviderRequestFailed``; adapters never return partial content.

The ``ProviderGateway`` ties the catalog, the key pool and the adapters
together for a single call:

    model -> adapter (by owning provider) -> key -> upstream call -> accounting

There are no retries at this layer. A failed call counts against the key's
failure counter, and auth/quota rejections take the key out of rotation.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, ClassVar, TypeVar

import httpx
from sqlmodel import Field, SQLModel

from agentdesk.errors import ProviderRequestFailed, ProviderUnavailable, ValidationError
from agentdesk.logging import get_logger
from agentdesk.metrics import record_provider_call
from agentdesk.orchestration.catalog import CHAT_CATEGORIES, ModelCatalog
from agentdesk.orchestration.keypool import KeyPool
from agentdesk.orchestration.models import ProviderName

logger = get_logger(__name__)

# Upstream statuses that mean the credential itself is unusable
_EXHAUSTING_STATUSES = frozenset({401, 402, 403})
_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "billing",
    "credits",
    "insufficient_quota",
    "payment",
    "resource_exhausted",
)


class InvokeOptions(SQLModel):
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4096, gt=0)
    system_prompt: str | None = None


class TokenUsage(SQLModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ProviderResponse(SQLModel):
    content: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model_id: str
    key_id: str | None = None


class ProviderRequest(SQLModel):
    """A fully built upstream HTTP request."""

    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any] = Field(default_factory=dict)


def exhausts_key(status_code: int, body: str) -> bool:
    """Whether an upstream rejection means the key is out of quota or unauthorized."""
    if status_code in _EXHAUSTING_STATUSES:
        return True
    if status_code == 429:
        lowered = body.lower()
        return any(pattern in lowered for pattern in _QUOTA_PATTERNS)
    return False


# =============================================================================
# Adapter base classes
# =============================================================================


class ProviderAdapter(ABC):
    """One backend. Subclasses declare the ``provider`` they serve."""

    provider: ClassVar[ProviderName]

    @property
    def configured(self) -> bool:
        """False when the adapter has no endpoint to call."""
        return True

    @abstractmethod
    async def invoke(
        self,
        model_id: str,
        prompt: str,
        options: InvokeOptions,
        credential: str,
    ) -> ProviderResponse:
        """Call the backend once; raise ``ProviderRequestFailed`` on any failure."""

    async def aclose(self) -> None:
        return None


class HTTPProviderAdapter(ProviderAdapter):
    """Adapter for a JSON-over-HTTP backend."""

    default_base_url: ClassVar[str | None] = None

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        url = base_url or self.default_base_url
        self.base_url = url.rstrip("/") if url else None
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def configured(self) -> bool:
        return self.base_url is not None

    @abstractmethod
    def build_request(
        self,
        model_id: str,
        prompt: str,
        options: InvokeOptions,
        credential: str,
    ) -> ProviderRequest:
        """Translate a call into the backend's request shape."""

    @abstractmethod
    def parse_response(self, model_id: str, data: dict[str, Any]) -> ProviderResponse:
        """Translate the backend's response body. May raise KeyError/IndexError/TypeError."""

    async def invoke(
        self,
        model_id: str,
        prompt: str,
        options: InvokeOptions,
        credential: str,
    ) -> ProviderResponse:
        provider = self.provider.value
        if not self.configured:
            raise ProviderUnavailable(f"No endpoint configured for provider '{provider}'", provider=provider)

        request = self.build_request(model_id, prompt, options, credential)
        try:
            response = await self._client.post(request.url, headers=request.headers, json=request.body)
        except httpx.TimeoutException as exc:
            raise ProviderRequestFailed(
                f"{provider} request timed out",
                timeout=True,
                provider=provider,
                model_id=model_id,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderRequestFailed(
                f"{provider} transport error: {type(exc).__name__}",
                provider=provider,
                model_id=model_id,
            ) from exc

        if not response.is_success:
            body = response.text
            raise ProviderRequestFailed(
                f"{provider} returned HTTP {response.status_code}",
                status_code=response.status_code,
                exhausts_key=exhausts_key(response.status_code, body),
                provider=provider,
                model_id=model_id,
            )

        try:
            parsed = self.parse_response(model_id, response.json())
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderRequestFailed(
                f"{provider} returned a malformed response",
                status_code=response.status_code,
                provider=provider,
                model_id=model_id,
            ) from exc
        return parsed

    async def aclose(self) -> None:
        await self._client.aclose()


def _require_text(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeError(f"Expected text content, got {type(value).__name__}")
    return value


# =============================================================================
# Adapter registry
# =============================================================================


A = TypeVar("A", bound=ProviderAdapter)


class AdapterRegistry:
    """Adapter classes by provider."""

    _adapters: dict[ProviderName, type[ProviderAdapter]] = {}

    @classmethod
    def register(cls, adapter_class: type[ProviderAdapter]) -> type[ProviderAdapter]:
        cls._adapters[adapter_class.provider] = adapter_class
        return adapter_class

    @classmethod
    def get(cls, provider: ProviderName) -> type[ProviderAdapter] | None:
        return cls._adapters.get(provider)

    @classmethod
    def providers(cls) -> set[ProviderName]:
        return set(cls._adapters)


def adapter(cls: type[A]) -> type[A]:
    """Decorator to register a provider adapter."""
    AdapterRegistry.register(cls)
    return cls


# =============================================================================
# Adapters
# =============================================================================


class OpenAICompatibleAdapter(HTTPProviderAdapter):
    """Chat-completions request/response shape shared by several backends."""

    def build_request(self, model_id, prompt, options, credential):
        messages = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return ProviderRequest(
            url=f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {credential}", "Content-Type": "application/json"},
            body={
                "model": model_id,
                "messages": messages,
                "temperature": options.temperature,
                "max_tokens": options.max_tokens,
            },
        )

    def parse_response(self, model_id, data):
        content = _require_text(data["choices"][0]["message"]["content"])
        usage = data.get("usage") or {}
        return ProviderResponse(
            content=content,
            usage=TokenUsage(
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
            ),
            model_id=data.get("model") or model_id,
        )


@adapter
class OpenAIAdapter(OpenAICompatibleAdapter):
    provider = ProviderName.OPENAI
    default_base_url = "https://api.openai.com/v1"


@adapter
class DeepSeekAdapter(OpenAICompatibleAdapter):
    provider = ProviderName.DEEPSEEK
    default_base_url = "https://api.deepseek.com"


@adapter
class XAIAdapter(OpenAICompatibleAdapter):
    provider = ProviderName.XAI
    default_base_url = "https://api.x.ai/v1"


@adapter
class MetaAdapter(OpenAICompatibleAdapter):
    provider = ProviderName.META
    default_base_url = "https://api.llama.com/compat/v1"


@adapter
class NinjaAdapter(OpenAICompatibleAdapter):
    """Ninja-LLM models; the endpoint has to be configured."""

    provider = ProviderName.NINJA


@adapter
class AmazonBedrockAdapter(OpenAICompatibleAdapter):
    """Bedrock through an OpenAI-compatible access gateway; the endpoint has to be configured."""

    provider = ProviderName.AMAZON


@adapter
class AnthropicAdapter(HTTPProviderAdapter):
    provider = ProviderName.ANTHROPIC
    default_base_url = "https://api.anthropic.com"
    api_version = "2023-06-01"

    def build_request(self, model_id, prompt, options, credential):
        body: dict[str, Any] = {
            "model": model_id,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if options.system_prompt:
            body["system"] = options.system_prompt
        return ProviderRequest(
            url=f"{self.base_url}/v1/messages",
            headers={
                "x-api-key": credential,
                "anthropic-version": self.api_version,
                "Content-Type": "application/json",
            },
            body=body,
        )

    def parse_response(self, model_id, data):
        blocks = [block for block in data["content"] if block.get("type", "text") == "text"]
        if not blocks:
            raise KeyError("content")
        content = "".join(_require_text(block["text"]) for block in blocks)
        usage = data.get("usage") or {}
        return ProviderResponse(
            content=content,
            usage=TokenUsage(
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
            ),
            model_id=data.get("model") or model_id,
        )


@adapter
class GoogleAdapter(HTTPProviderAdapter):
    provider = ProviderName.GOOGLE
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def build_request(self, model_id, prompt, options, credential):
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": options.temperature,
                "maxOutputTokens": options.max_tokens,
            },
        }
        if options.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": options.system_prompt}]}
        return ProviderRequest(
            url=f"{self.base_url}/models/{model_id}:generateContent",
            # Header rather than ?key= so the credential stays out of URLs and logs
            headers={"x-goog-api-key": credential, "Content-Type": "application/json"},
            body=body,
        )

    def parse_response(self, model_id, data):
        parts = data["candidates"][0]["content"]["parts"]
        content = "".join(_require_text(part["text"]) for part in parts)
        usage = data.get("usageMetadata") or {}
        return ProviderResponse(
            content=content,
            usage=TokenUsage(
                input_tokens=usage.get("promptTokenCount", 0),
                output_tokens=usage.get("candidatesTokenCount", 0),
            ),
            model_id=data.get("modelVersion") or model_id,
        )


@adapter
class EchoAdapter(ProviderAdapter):
    """Local backend that answers with the prompt; used for development and smoke runs."""

    provider = ProviderName.LOCAL

    async def invoke(self, model_id, prompt, options, credential):
        content = f"[{model_id}] {prompt}"
        return ProviderResponse(
            content=content,
            usage=TokenUsage(
                input_tokens=len(prompt.split()),
                output_tokens=len(content.split()),
            ),
            model_id=model_id,
        )


def build_adapters(
    base_urls: Mapping[str, str] | None = None,
    timeout: float = 60.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[ProviderName, ProviderAdapter]:
    """Instantiate one adapter per registered provider."""
    base_urls = base_urls or {}
    adapters: dict[ProviderName, ProviderAdapter] = {}
    for provider in ProviderName:
        adapter_class = AdapterRegistry.get(provider)
        if adapter_class is None:
            raise ValueError(f"No adapter registered for provider '{provider.value}'")
        if issubclass(adapter_class, HTTPProviderAdapter):
            adapters[provider] = adapter_class(
                base_url=base_urls.get(provider.value),
                timeout=timeout,
                transport=transport,
            )
        else:
            adapters[provider] = adapter_class()
    return adapters


# =============================================================================
# Gateway
# =============================================================================


class ProviderGateway:
    """Routes a model call to its provider's adapter with a pooled key."""

    def __init__(
        self,
        catalog: ModelCatalog,
        pool: KeyPool,
        adapters: Mapping[ProviderName, ProviderAdapter],
    ) -> None:
        missing = set(ProviderName) - set(adapters)
        if missing:
            names = ", ".join(sorted(provider.value for provider in missing))
            raise ValueError(f"Missing provider adapters: {names}")
        self.catalog = catalog
        self.pool = pool
        self.adapters = dict(adapters)

    async def invoke(
        self,
        model_id: str,
        prompt: str,
        options: InvokeOptions | None = None,
    ) -> ProviderResponse:
        options = options or InvokeOptions()
        model = self.catalog.require(model_id)
        if model.category not in CHAT_CATEGORIES:
            raise ValidationError(
                f"Model '{model_id}' ({model.category.value}) cannot serve text requests",
                model_id=model_id,
            )
        provider_adapter = self.adapters[model.provider]
        if not provider_adapter.configured:
            raise ProviderUnavailable(
                f"No endpoint configured for provider '{model.provider.value}'",
                provider=model.provider.value,
                model_id=model_id,
            )

        key = self.pool.acquire_key(model_id)
        log = logger.bind(provider=model.provider.value, model_id=model_id, key_id=key.id)
        started = time.perf_counter()
        try:
            response = await provider_adapter.invoke(model_id, prompt, options, key.credential)
        except ProviderRequestFailed as exc:
            duration = time.perf_counter() - started
            failures = self.pool.record_failure(key)
            if exc.exhausts_key:
                self.pool.mark_exhausted(key, exc.detail)
            record_provider_call(
                model.provider.value,
                model_id,
                "timeout" if exc.timeout else "error",
                duration,
            )
            log.warning(
                "provider_call_failed",
                error=exc.detail,
                status_code=exc.status_code,
                key_failures=failures,
                exhausted=exc.exhausts_key,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - started
        cost = self.catalog.estimate_cost(model, response.usage.input_tokens, response.usage.output_tokens)
        self.pool.record_usage(key, request_delta=1, token_delta=response.usage.total_tokens, cost_delta=cost)
        record_provider_call(model.provider.value, model_id, "success", duration)
        log.info(
            "provider_call_completed",
            tokens=response.usage.total_tokens,
            duration_ms=round(duration * 1000, 2),
        )
        response.key_id = key.id
        return response

    async def aclose(self) -> None:
        for provider_adapter in self.adapters.values():
            await provider_adapter.aclose()
