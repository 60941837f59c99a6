"""Provider adapters -- one per vendor wire protocol.

Public API: the ChatProvider contract, the vendor catalog and the
concrete adapters. ProviderFactory lives in tandem.providers.factory.
"""

from tandem.providers.anthropic import ClaudeProvider
from tandem.providers.base import ChatProvider, HttpChatProvider, ProviderConfig, ProviderError
from tandem.providers.catalog import PROVIDERS, ProviderKind, ProviderMetadata, create_provider
from tandem.providers.gemini import GeminiProvider
from tandem.providers.openai import (
    DeepSeekProvider,
    GrokProvider,
    NovitaProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    ZhipuProvider,
)

__all__ = [
    "PROVIDERS",
    "ChatProvider",
    "ClaudeProvider",
    "DeepSeekProvider",
    "GeminiProvider",
    "GrokProvider",
    "HttpChatProvider",
    "NovitaProvider",
    "OpenAICompatibleProvider",
    "OpenAIProvider",
    "ProviderConfig",
    "ProviderError",
    "ProviderKind",
    "ProviderMetadata",
    "ZhipuProvider",
    "create_provider",
]
