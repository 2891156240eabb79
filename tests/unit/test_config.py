"""Tests for settings, provider configuration and the provider registry."""

from __future__ import annotations

from pathlib import Path

import pytest

from nodepipe.config import Settings, get_settings, reset_settings
from nodepipe.core.config import LLMConfig, redact_api_key
from nodepipe.core.errors import ProviderError, ProviderRateLimited, ValidationError
from nodepipe.llm.providers import (
    AnthropicProvider,
    CompletionError,
    ProviderRegistry,
    complete_or_raise,
    estimate_cost,
    is_auto_retryable,
)
from tests.helpers.pipeline import ScriptedProvider


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in (
        "NODEPIPE_LLM_PROVIDER",
        "NODEPIPE_LLM_BASE_URL",
        "NODEPIPE_STORAGE_DIR",
        "NODEPIPE_DATABASE_URL",
        "NODEPIPE_DEFAULT_PROVIDER",
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the settings under test
    monkeypatch.chdir(tmp_path)
    reset_settings()
    yield
    reset_settings()


class TestLLMConfig:
    def test_defaults(self):
        config = LLMConfig.from_dict({})
        assert config.provider == "openai"
        assert config.max_tokens == 1024
        assert config.base_url is None

    def test_env_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("NODEPIPE_LLM_PROVIDER", "anthropic")
        monkeypatch.setenv("NODEPIPE_LLM_BASE_URL", "http://localhost:9000")
        config = LLMConfig.from_dict({})
        assert config.provider == "anthropic"
        assert config.base_url == "http://localhost:9000"

    def test_explicit_beats_env(self, monkeypatch):
        monkeypatch.setenv("NODEPIPE_LLM_PROVIDER", "anthropic")
        assert LLMConfig.from_dict({"provider": "openai"}).provider == "openai"

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown LLM provider"):
            LLMConfig.from_dict({"provider": "mystery"})

    def test_api_key_resolution(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-anthropic")
        assert LLMConfig.from_dict({}).resolve_api_key() == "sk-openai"
        assert LLMConfig.from_dict({"provider": "anthropic"}).resolve_api_key() == "sk-anthropic"
        assert LLMConfig.from_dict({"api_key": "explicit"}).resolve_api_key() == "explicit"

    def test_redact_api_key(self):
        assert redact_api_key(None) is None
        assert redact_api_key("short") == "****"
        assert redact_api_key("sk-abcdefghijkl") == "sk-a...ijkl"


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.storage_dir == Path(".nodepipe")
        assert settings.db_url == "sqlite:///.nodepipe/nodepipe.db"
        assert settings.rate_limit_requeue_seconds == 30.0

    def test_env_prefix(self, monkeypatch, tmp_path):
        monkeypatch.setenv("NODEPIPE_STORAGE_DIR", str(tmp_path / "store"))
        monkeypatch.setenv("NODEPIPE_READ_BATCH_SIZE", "7")
        settings = Settings()
        assert settings.read_batch_size == 7
        assert settings.logs_dir == tmp_path / "store" / "logs"

    def test_database_url_override(self, monkeypatch):
        monkeypatch.setenv("NODEPIPE_DATABASE_URL", "sqlite:///elsewhere.db")
        assert Settings().db_url == "sqlite:///elsewhere.db"

    def test_get_settings_cached(self):
        assert get_settings() is get_settings()
        first = get_settings()
        reset_settings()
        assert get_settings() is not first


class TestProviderRegistry:
    def test_prebuilt_provider(self):
        provider = ScriptedProvider()
        assert ProviderRegistry({"openai": provider}).get("openai") is provider

    def test_unknown_provider_is_validation_error(self):
        with pytest.raises(ValidationError, match="Unknown LLM provider"):
            ProviderRegistry().get("mystery")

    def test_unnamed_provider_uses_default(self):
        provider = ScriptedProvider()
        registry = ProviderRegistry({"anthropic": provider}, default_provider="anthropic")
        assert registry.resolve_name(None) == "anthropic"
        assert registry.resolve_name("openai") == "openai"
        assert registry.get() is provider
        assert registry.get(None) is provider

    def test_default_provider_from_settings(self, monkeypatch):
        monkeypatch.setenv("NODEPIPE_DEFAULT_PROVIDER", "anthropic")
        assert Settings().default_provider == "anthropic"

    def test_created_once(self):
        registry = ProviderRegistry(configs={"anthropic": {"api_key": "sk-ant-test"}})
        provider = registry.get("anthropic")
        assert isinstance(provider, AnthropicProvider)
        assert registry.get("anthropic") is provider

    def test_anthropic_system_messages(self):
        provider = AnthropicProvider(LLMConfig.from_dict({"provider": "anthropic", "api_key": "sk-ant-test"}))
        request = provider._to_request({
            "model": "claude-haiku-4-5",
            "messages": [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "hi"},
            ],
        })
        assert request["system"] == "Be brief."
        assert request["messages"] == [{"role": "user", "content": "hi"}]
        assert request["max_tokens"] == 1024


class TestProviderHelpers:
    @pytest.mark.parametrize(
        "status_code,expected",
        [(429, True), (500, True), (503, True), (400, False), (404, False), (None, False)],
    )
    def test_is_auto_retryable(self, status_code, expected):
        assert is_auto_retryable(status_code) is expected

    def test_estimate_cost_prefers_longest_prefix(self):
        assert estimate_cost("gpt-4o-mini-2024-07-18", 1_000_000, 0) == pytest.approx(0.15)
        assert estimate_cost("gpt-4o", 0, 1_000_000) == pytest.approx(10.0)

    def test_estimate_cost_unknown_model(self):
        assert estimate_cost("local-llama", 10, 10) is None

    def test_complete_or_raise_returns_success(self):
        response = complete_or_raise(ScriptedProvider(), {"model": "m", "messages": [{"role": "user", "content": "hi"}]})
        assert response.status_code == 200

    def test_complete_or_raise_rate_limited(self):
        provider = ScriptedProvider(script=[CompletionError(message="slow down", status_code=429, auto_retry=True)])
        with pytest.raises(ProviderRateLimited, match="slow down") as exc_info:
            complete_or_raise(provider, {"model": "m", "messages": []})
        assert exc_info.value.status_code == 429

    def test_complete_or_raise_other_failure(self):
        provider = ScriptedProvider(script=[CompletionError(message="bad request", status_code=400)])
        with pytest.raises(ProviderError) as exc_info:
            complete_or_raise(provider, {"model": "m", "messages": []})
        assert not isinstance(exc_info.value, ProviderRateLimited)
        assert exc_info.value.status_code == 400
