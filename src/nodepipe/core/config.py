"""Provider configuration resolution — explicit config > env > defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass

SUPPORTED_PROVIDERS = ("openai", "openai-compatible", "anthropic")


def redact_api_key(key: str | None) -> str | None:
    """Redact an API key, showing only the first 4 and last 4 characters.

    Returns None if the key is None, or the redacted string otherwise.
    Short keys (8 chars or fewer) are fully redacted as '****'.
    """
    if key is None:
        return None
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}...{key[-4:]}"


@dataclass
class LLMConfig:
    """Configuration for a model provider client.

    Supports three providers:
    - "openai": OpenAI chat models (default)
    - "openai-compatible": Any OpenAI-compatible API (Ollama, vLLM, etc.)
    - "anthropic": Anthropic Claude models

    Environment variables:
    - NODEPIPE_LLM_PROVIDER: override provider
    - NODEPIPE_LLM_BASE_URL: override base_url
    - OPENAI_API_KEY: API key for OpenAI / OpenAI-compatible providers
    - ANTHROPIC_API_KEY: API key for Anthropic provider
    """

    provider: str = "openai"
    temperature: float | None = None
    max_tokens: int = 1024
    timeout: float = 120.0
    base_url: str | None = None
    api_key: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> LLMConfig:
        """Create LLMConfig from a dict, applying env var overrides.

        Config precedence: explicit dict values > env vars > class defaults.
        """
        config = cls()

        env_provider = os.environ.get("NODEPIPE_LLM_PROVIDER")
        if env_provider:
            config.provider = env_provider
        env_base_url = os.environ.get("NODEPIPE_LLM_BASE_URL")
        if env_base_url:
            config.base_url = env_base_url

        for key in ("provider", "temperature", "max_tokens", "timeout", "base_url", "api_key"):
            if key in data:
                setattr(config, key, data[key])

        if config.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unknown LLM provider: {config.provider!r}. "
                f"Supported: {', '.join(repr(p) for p in SUPPORTED_PROVIDERS)}"
            )
        return config

    def resolve_api_key(self) -> str | None:
        """Resolve the API key: explicit > env var per provider."""
        if self.api_key:
            return self.api_key
        if self.provider == "anthropic":
            return os.environ.get("ANTHROPIC_API_KEY")
        return os.environ.get("OPENAI_API_KEY")
