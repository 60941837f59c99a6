"""Settings via pydantic-settings with TANDEM_ env prefix.

Vendor API keys use validation_alias to read the unprefixed env vars
each vendor documents (DEEPSEEK_API_KEY, OPENAI_API_KEY, ...), so an
existing shell environment works without renaming anything.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tandem.agent.compaction import CompactorOptions
from tandem.providers.base import ProviderConfig
from tandem.providers.catalog import PROVIDERS, ProviderKind

DEFAULT_TOOL_ALIASES: dict[str, str] = {
    "read": "read_file",
    "write": "write_file",
    "append": "append_to_file",
    "delete": "delete_file",
    "copy": "copy_file",
    "move": "move_file",
    "list": "list_directory",
    "edit": "edit_file",
    "run": "run_command",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TANDEM_", env_file=".env", extra="ignore")

    # Provider selection
    provider: ProviderKind = ProviderKind.DEEPSEEK
    provider_overrides: dict[str, dict[str, Any]] = Field(default_factory=dict)

    # Vendor credentials: unprefixed aliases match each vendor's docs
    deepseek_api_key: str = Field("", validation_alias="DEEPSEEK_API_KEY")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    zhipuai_api_key: str = Field("", validation_alias="ZHIPUAI_API_KEY")
    grok_api_key: str = Field("", validation_alias="XAI_API_KEY")
    claude_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    novita_api_key: str = Field("", validation_alias="NOVITA_API_KEY")
    gemini_api_key: str = Field("", validation_alias="GEMINI_API_KEY")

    # HTTP
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 300  # seconds
    api_max_retries: int = 1
    temperature: float = 0.4

    # Context optimization
    context_optimization_enabled: bool = True
    optimizable_tools: list[str] = Field(default_factory=lambda: ["read_file"])
    max_tool_instances: int = 1
    summary_enabled: bool = True
    summary_threshold: int = 12
    summary_retention: int = 6
    summary_prefix: str = "Context summary (auto-generated):"
    summary_max_line_length: int = 300
    summary_token_threshold: int = 0  # 0 disables the token-based trigger

    # Agent loop
    max_iterations: int = 12  # provider calls per prompt
    parallel_tool_calls: bool = False
    tool_aliases: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_TOOL_ALIASES))

    # Workspace tools
    workspace_dir: str = "."
    command_timeout: int = 30
    command_safety_enabled: bool = True

    # Session persistence
    db_url: str = "sqlite+aiosqlite:///./tandem.db"
    db_echo: bool = False

    log_level: Literal["debug", "info", "warning", "error"] = "info"

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if 0 < self.summary_threshold <= self.summary_retention:
            raise ValueError(
                f"summary_retention ({self.summary_retention}) must be < "
                f"summary_threshold ({self.summary_threshold})"
            )
        return self

    def api_key_for(self, kind: ProviderKind) -> str:
        return getattr(self, f"{kind.value}_api_key", "")

    def provider_config(self, kind: ProviderKind | None = None) -> ProviderConfig:
        """Resolve the effective config for a vendor: catalog defaults + overrides."""
        kind = ProviderKind(kind or self.provider)
        meta = PROVIDERS[kind]
        override = self.provider_overrides.get(kind.value, {})
        return ProviderConfig(
            api_key=override.get("api_key") or self.api_key_for(kind),
            base_url=override.get("base_url") or meta.default_base_url,
            model=override.get("model") or meta.default_model,
            max_tokens=override.get("max_tokens", meta.default_max_tokens),
        )

    def compactor_options(self) -> CompactorOptions:
        return CompactorOptions(
            enabled=self.context_optimization_enabled,
            actions=frozenset(self.optimizable_tools),
            max_instances=self.max_tool_instances,
            summary_enabled=self.summary_enabled,
            summary_threshold=self.summary_threshold,
            summary_retention=self.summary_retention,
            summary_prefix=self.summary_prefix,
            summary_max_line_length=self.summary_max_line_length,
            summary_token_threshold=self.summary_token_threshold,
        )
