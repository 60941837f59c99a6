"""Tests for Settings: defaults, env loading, validation and derived configs."""

import pytest
from pydantic import ValidationError

from tandem.config import DEFAULT_TOOL_ALIASES, Settings
from tandem.providers.catalog import PROVIDERS, ProviderKind


class TestDefaults:
    def test_loop_and_compaction_defaults(self, settings):
        assert settings.provider == ProviderKind.DEEPSEEK
        assert settings.max_iterations == 12
        assert settings.summary_threshold == 12
        assert settings.summary_retention == 6
        assert settings.summary_token_threshold == 0
        assert settings.parallel_tool_calls is False
        assert settings.tool_aliases == DEFAULT_TOOL_ALIASES

    def test_env_vars_are_read(self, monkeypatch):
        monkeypatch.setenv("TANDEM_MAX_ITERATIONS", "5")
        monkeypatch.setenv("TANDEM_PROVIDER", "grok")
        monkeypatch.setenv("XAI_API_KEY", "xai-secret")

        settings = Settings(_env_file=None)

        assert settings.max_iterations == 5
        assert settings.provider == ProviderKind.GROK
        assert settings.grok_api_key == "xai-secret"
        assert settings.api_key_for(ProviderKind.GROK) == "xai-secret"


class TestValidation:
    def test_max_iterations_must_be_positive(self, settings_factory):
        with pytest.raises(ValidationError, match="max_iterations"):
            settings_factory(max_iterations=0)

    def test_retention_must_be_below_threshold(self, settings_factory):
        with pytest.raises(ValidationError, match="summary_retention"):
            settings_factory(summary_threshold=6, summary_retention=6)

    def test_zero_threshold_skips_retention_check(self, settings_factory):
        settings = settings_factory(summary_threshold=0, summary_retention=6)
        assert settings.summary_threshold == 0

    def test_unknown_provider(self, settings_factory):
        with pytest.raises(ValidationError):
            settings_factory(provider="mystery")


class TestDerived:
    def test_provider_config_uses_catalog_defaults(self, settings):
        config = settings.provider_config()
        meta = PROVIDERS[ProviderKind.DEEPSEEK]

        assert config.api_key == "test-key"
        assert config.base_url == meta.default_base_url
        assert config.model == meta.default_model
        assert config.max_tokens == meta.default_max_tokens

    def test_provider_overrides(self, settings_factory):
        settings = settings_factory(
            provider_overrides={"gemini": {"model": "gemini-2.5-pro", "max_tokens": 1024}},
            GEMINI_API_KEY="g-key",
        )
        config = settings.provider_config(ProviderKind.GEMINI)

        assert config.model == "gemini-2.5-pro"
        assert config.max_tokens == 1024
        assert config.api_key == "g-key"

    def test_compactor_options(self, settings_factory):
        settings = settings_factory(
            optimizable_tools=["read_file", "list_directory"],
            max_tool_instances=2,
            summary_token_threshold=40_000,
            summary_prefix="Earlier:",
        )
        options = settings.compactor_options()

        assert options.actions == frozenset({"read_file", "list_directory"})
        assert options.max_instances == 2
        assert options.summary_threshold == 12
        assert options.summary_retention == 6
        assert options.summary_token_threshold == 40_000
        assert options.summary_prefix == "Earlier:"
