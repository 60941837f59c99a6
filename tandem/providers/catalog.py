"""Closed set of supported vendors and their defaults."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from tandem.providers.anthropic import ClaudeProvider
from tandem.providers.base import HttpChatProvider, ProviderConfig
from tandem.providers.gemini import GeminiProvider
from tandem.providers.openai import (
    DeepSeekProvider,
    GrokProvider,
    NovitaProvider,
    OpenAIProvider,
    ZhipuProvider,
)


class ProviderKind(StrEnum):
    DEEPSEEK = "deepseek"
    OPENAI = "openai"
    ZHIPUAI = "zhipuai"
    GROK = "grok"
    CLAUDE = "claude"
    NOVITA = "novita"
    GEMINI = "gemini"


@dataclass(frozen=True)
class ProviderMetadata:
    kind: ProviderKind
    label: str
    default_base_url: str
    default_model: str
    default_max_tokens: int | None = None
    models: tuple[str, ...] = ()


PROVIDERS: dict[ProviderKind, ProviderMetadata] = {
    ProviderKind.DEEPSEEK: ProviderMetadata(
        kind=ProviderKind.DEEPSEEK,
        label="DeepSeek",
        default_base_url="https://api.deepseek.com",
        default_model="deepseek-chat",
        default_max_tokens=7900,
        models=("deepseek-chat",),
    ),
    ProviderKind.OPENAI: ProviderMetadata(
        kind=ProviderKind.OPENAI,
        label="OpenAI",
        default_base_url="https://api.openai.com/v1",
        default_model="gpt-4o-mini",
        default_max_tokens=20000,
        models=("gpt-5-codex", "codex-mini-latest", "gpt-4o-mini", "gpt-5-nano"),
    ),
    ProviderKind.ZHIPUAI: ProviderMetadata(
        kind=ProviderKind.ZHIPUAI,
        label="ZhiPu AI",
        default_base_url="https://open.bigmodel.cn/api/paas/v4",
        default_model="glm-4.5-flash",
        default_max_tokens=8000,
        models=("glm-4.5-flash", "glm-4.5"),
    ),
    ProviderKind.GROK: ProviderMetadata(
        kind=ProviderKind.GROK,
        label="Grok",
        default_base_url="https://api.x.ai/v1",
        default_model="grok-3-mini",
        default_max_tokens=8000,
        models=("grok-4-fast-non-reasoning", "grok-4", "grok-code-fast-1", "grok-3-mini"),
    ),
    ProviderKind.CLAUDE: ProviderMetadata(
        kind=ProviderKind.CLAUDE,
        label="Claude",
        default_base_url="https://api.anthropic.com",
        default_model="claude-3-7-sonnet-latest",
        default_max_tokens=8000,
        models=("claude-sonnet-4-5", "claude-3-7-sonnet-latest", "claude-3-5-haiku-20241022"),
    ),
    ProviderKind.NOVITA: ProviderMetadata(
        kind=ProviderKind.NOVITA,
        label="Novita AI",
        default_base_url="https://api.novita.ai/openai",
        default_model="deepseek/deepseek-v3.1-terminus",
        default_max_tokens=8000,
        models=("deepseek/deepseek-v3.1-terminus",),
    ),
    ProviderKind.GEMINI: ProviderMetadata(
        kind=ProviderKind.GEMINI,
        label="Gemini",
        default_base_url="https://generativelanguage.googleapis.com",
        default_model="gemini-2.5-flash",
        default_max_tokens=8000,
        models=("gemini-2.5-flash", "gemini-2.5-pro"),
    ),
}


def create_provider(kind: ProviderKind | str, config: ProviderConfig, **http_options: Any) -> HttpChatProvider:
    """Instantiate the adapter for *kind*. Raises ValueError for unknown vendors."""
    match ProviderKind(kind):
        case ProviderKind.DEEPSEEK:
            return DeepSeekProvider(config, **http_options)
        case ProviderKind.OPENAI:
            return OpenAIProvider(config, **http_options)
        case ProviderKind.ZHIPUAI:
            return ZhipuProvider(config, **http_options)
        case ProviderKind.GROK:
            return GrokProvider(config, **http_options)
        case ProviderKind.CLAUDE:
            return ClaudeProvider(config, **http_options)
        case ProviderKind.NOVITA:
            return NovitaProvider(config, **http_options)
        case ProviderKind.GEMINI:
            return GeminiProvider(config, **http_options)
    raise ValueError(f"Unsupported provider: {kind}")
