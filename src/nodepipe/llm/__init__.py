"""Model provider clients for nodepipe."""

from nodepipe.llm.providers import (
    AnthropicProvider,
    CompletionError,
    CompletionResponse,
    CompletionSuccess,
    ModelProvider,
    OpenAIProvider,
    ProviderRegistry,
    create_provider,
    estimate_cost,
)

__all__ = [
    "AnthropicProvider",
    "CompletionError",
    "CompletionResponse",
    "CompletionSuccess",
    "ModelProvider",
    "OpenAIProvider",
    "ProviderRegistry",
    "create_provider",
    "estimate_cost",
]
