"""Model providers wrapping the OpenAI and Anthropic SDKs.

Providers never raise for API failures: every call resolves to either a
``CompletionSuccess`` or a ``CompletionError`` that says whether the caller
should retry it automatically. Rate limits (429), server errors (5xx),
timeouts and connection failures are auto-retryable; everything else is not.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from nodepipe.core.config import LLMConfig
from nodepipe.core.errors import ProviderError, ProviderRateLimited, ValidationError

logger = logging.getLogger(__name__)

StreamCallback = Callable[[Any], None]

DEFAULT_PROVIDER = "openai"

# USD per 1M tokens (input, output), matched by model-name prefix
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4.1": (2.00, 8.00),
    "gpt-3.5-turbo": (0.50, 1.50),
    "claude-3-5-haiku": (0.80, 4.00),
    "claude-haiku-4-5": (1.00, 5.00),
    "claude-3-5-sonnet": (3.00, 15.00),
    "claude-sonnet-4": (3.00, 15.00),
}


@dataclass
class CompletionSuccess:
    """A finished completion."""

    value: Any
    status_code: int = 200
    time_to_complete_ms: int = 0
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    cost: float | None = None


@dataclass
class CompletionError:
    """A failed completion attempt."""

    message: str
    status_code: int | None = None
    auto_retry: bool = False


CompletionResponse = CompletionSuccess | CompletionError


def estimate_cost(model: str, prompt_tokens: int | None, completion_tokens: int | None) -> float | None:
    """Estimate the USD cost of a call, or None for unknown models."""
    for prefix in sorted(MODEL_PRICING, key=len, reverse=True):
        if model.startswith(prefix):
            input_price, output_price = MODEL_PRICING[prefix]
            return ((prompt_tokens or 0) * input_price + (completion_tokens or 0) * output_price) / 1_000_000
    return None


def is_auto_retryable(status_code: int | None) -> bool:
    return status_code == 429 or (status_code is not None and status_code >= 500)


def complete_or_raise(provider: ModelProvider, model_input: dict[str, Any]) -> CompletionSuccess:
    """Run a non-streaming completion, raising on failure.

    Raises:
        ProviderRateLimited: The provider answered 429.
        ProviderError: Any other failure.
    """
    response = provider.get_completion(model_input)
    if isinstance(response, CompletionError):
        if response.status_code == 429:
            raise ProviderRateLimited(response.message or "Rate limited")
        raise ProviderError(response.message or "Unknown error", response.status_code or 500)
    return response


class ModelProvider(ABC):
    """Abstract base for model providers."""

    name: str = ""

    @abstractmethod
    def get_completion(
        self,
        model_input: dict[str, Any],
        on_stream: StreamCallback | None = None,
    ) -> CompletionResponse:
        """Run one completion.

        Args:
            model_input: Provider request; must contain ``model`` and ``messages``.
            on_stream: When given, the provider streams and calls it with the
                accumulated partial output after every chunk.
        """
        ...


class OpenAIProvider(ModelProvider):
    """Chat completions through the openai SDK (OpenAI or compatible APIs)."""

    name = "openai"

    def __init__(self, config: LLMConfig) -> None:
        import openai

        if config.provider == "openai-compatible" and not config.base_url:
            raise ValueError("openai-compatible provider requires base_url to be set")

        self.config = config
        kwargs: dict[str, Any] = {"timeout": config.timeout, "max_retries": 0}
        api_key = config.resolve_api_key()
        if api_key:
            kwargs["api_key"] = api_key
        if config.base_url:
            kwargs["base_url"] = config.base_url
        self._client = openai.OpenAI(**kwargs)

    def get_completion(
        self,
        model_input: dict[str, Any],
        on_stream: StreamCallback | None = None,
    ) -> CompletionResponse:
        import openai

        request = {k: v for k, v in model_input.items() if v is not None}
        if self.config.temperature is not None:
            request.setdefault("temperature", self.config.temperature)
        start = time.monotonic()
        try:
            if on_stream is not None:
                message, usage = self._stream(request, on_stream)
            else:
                response = self._client.chat.completions.create(**request)
                message = response.choices[0].message.model_dump(exclude_none=True)
                usage = response.usage
        except openai.APIStatusError as exc:
            return CompletionError(
                message=str(exc.message),
                status_code=exc.status_code,
                auto_retry=is_auto_retryable(exc.status_code),
            )
        except openai.APIConnectionError as exc:
            return CompletionError(message=f"Connection error: {exc}", auto_retry=True)
        except openai.APIError as exc:
            return CompletionError(message=str(exc), auto_retry=False)

        prompt_tokens = usage.prompt_tokens if usage else None
        completion_tokens = usage.completion_tokens if usage else None
        return CompletionSuccess(
            value=message,
            time_to_complete_ms=int((time.monotonic() - start) * 1000),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=estimate_cost(request["model"], prompt_tokens, completion_tokens),
        )

    def _stream(self, request: dict[str, Any], on_stream: StreamCallback) -> tuple[dict, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": ""}
        usage = None
        stream = self._client.chat.completions.create(
            **request, stream=True, stream_options={"include_usage": True}
        )
        for chunk in stream:
            if chunk.usage is not None:
                usage = chunk.usage
            if not chunk.choices:
                continue
            _merge_delta(message, chunk.choices[0].delta)
            on_stream(_snapshot(message))
        return message, usage


def _merge_delta(message: dict[str, Any], delta: Any) -> None:
    """Fold one streamed chat delta into the accumulated message."""
    if delta.content:
        message["content"] += delta.content
    for call in delta.tool_calls or []:
        calls = message.setdefault("tool_calls", [])
        while len(calls) <= call.index:
            calls.append({"id": "", "type": "function", "function": {"name": "", "arguments": ""}})
        target = calls[call.index]
        if call.id:
            target["id"] = call.id
        if call.function is not None:
            if call.function.name:
                target["function"]["name"] += call.function.name
            if call.function.arguments:
                target["function"]["arguments"] += call.function.arguments


def _snapshot(message: dict[str, Any]) -> dict[str, Any]:
    snap = dict(message)
    if "tool_calls" in snap:
        snap["tool_calls"] = [
            {**c, "function": dict(c["function"])} for c in snap["tool_calls"]
        ]
    return snap


class AnthropicProvider(ModelProvider):
    """Messages API through the anthropic SDK."""

    name = "anthropic"

    def __init__(self, config: LLMConfig) -> None:
        import anthropic

        self.config = config
        kwargs: dict[str, Any] = {"timeout": config.timeout, "max_retries": 0}
        api_key = config.resolve_api_key()
        if api_key:
            kwargs["api_key"] = api_key
        if config.base_url:
            kwargs["base_url"] = config.base_url
        self._client = anthropic.Anthropic(**kwargs)

    def get_completion(
        self,
        model_input: dict[str, Any],
        on_stream: StreamCallback | None = None,
    ) -> CompletionResponse:
        import anthropic

        request = self._to_request(model_input)
        start = time.monotonic()
        try:
            if on_stream is not None:
                text = ""
                with self._client.messages.stream(**request) as stream:
                    for delta in stream.text_stream:
                        text += delta
                        on_stream({"role": "assistant", "content": text})
                    response = stream.get_final_message()
            else:
                response = self._client.messages.create(**request)
        except anthropic.APIStatusError as exc:
            return CompletionError(
                message=str(exc.message),
                status_code=exc.status_code,
                auto_retry=is_auto_retryable(exc.status_code),
            )
        except anthropic.APIConnectionError as exc:
            return CompletionError(message=f"Connection error: {exc}", auto_retry=True)
        except anthropic.APIError as exc:
            return CompletionError(message=str(exc), auto_retry=False)

        content = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        prompt_tokens = getattr(response.usage, "input_tokens", None)
        completion_tokens = getattr(response.usage, "output_tokens", None)
        return CompletionSuccess(
            value={"role": "assistant", "content": content},
            time_to_complete_ms=int((time.monotonic() - start) * 1000),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=estimate_cost(request["model"], prompt_tokens, completion_tokens),
        )

    def _to_request(self, model_input: dict[str, Any]) -> dict[str, Any]:
        """Move system messages into the ``system`` parameter Anthropic expects."""
        messages = model_input.get("messages") or []
        system = "\n\n".join(
            m["content"] for m in messages if m.get("role") == "system" and m.get("content")
        )
        request: dict[str, Any] = {
            "model": model_input["model"],
            "messages": [m for m in messages if m.get("role") != "system"],
            "max_tokens": model_input.get("max_tokens") or self.config.max_tokens,
        }
        if system:
            request["system"] = system
        temperature = model_input.get("temperature", self.config.temperature)
        if temperature is not None:
            request["temperature"] = temperature
        return request


def create_provider(config: LLMConfig) -> ModelProvider:
    """Instantiate the provider class for ``config.provider``."""
    if config.provider == "anthropic":
        return AnthropicProvider(config)
    return OpenAIProvider(config)


class ProviderRegistry:
    """Lazily constructed providers by name.

    Pre-built providers (e.g. test doubles) take precedence over ones
    created from configuration.
    """

    def __init__(
        self,
        providers: Mapping[str, ModelProvider] | None = None,
        configs: Mapping[str, dict] | None = None,
        default_provider: str = DEFAULT_PROVIDER,
    ) -> None:
        self._providers: dict[str, ModelProvider] = dict(providers or {})
        self._configs = dict(configs or {})
        self.default_provider = default_provider
        self._lock = threading.Lock()

    def resolve_name(self, name: str | None) -> str:
        """The provider a node or variant uses; unnamed ones get the default."""
        return name or self.default_provider

    def get(self, name: str | None = None) -> ModelProvider:
        name = self.resolve_name(name)
        with self._lock:
            provider = self._providers.get(name)
            if provider is None:
                try:
                    config = LLMConfig.from_dict({"provider": name, **self._configs.get(name, {})})
                    provider = create_provider(config)
                except ValueError as exc:
                    raise ValidationError(str(exc)) from exc
                logger.debug("Created %s provider", name)
                self._providers[name] = provider
            return provider
