"""Cached provider instances built from Settings."""

from __future__ import annotations

import logging

import httpx

from tandem.config import Settings
from tandem.providers.base import HttpChatProvider
from tandem.providers.catalog import PROVIDERS, ProviderKind, create_provider

logger = logging.getLogger(__name__)


class ProviderFactory:
    """One adapter per vendor, created lazily.

    ``reset()`` drops the cache, e.g. after keys, models or tool
    definitions change. Dropped clients are closed on the next
    ``aclose()``.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._cache: dict[ProviderKind, HttpChatProvider] = {}
        self._retired: list[HttpChatProvider] = []

    @property
    def settings(self) -> Settings:
        return self._settings

    def get(self, kind: ProviderKind | str | None = None) -> HttpChatProvider:
        kind = ProviderKind(kind or self._settings.provider)
        cached = self._cache.get(kind)
        if cached is not None:
            return cached

        config = self._settings.provider_config(kind)
        if not config.api_key:
            raise ValueError(f"{PROVIDERS[kind].label} API key not configured")

        provider = create_provider(
            kind,
            config,
            temperature=self._settings.temperature,
            timeout_connect=self._settings.api_timeout_connect,
            timeout_read=self._settings.api_timeout_read,
            max_retries=self._settings.api_max_retries,
            transport=self._transport,
        )
        logger.info("Created %s provider (model=%s)", PROVIDERS[kind].label, config.model)
        self._cache[kind] = provider
        return provider

    def reset(self, settings: Settings | None = None) -> None:
        if settings is not None:
            self._settings = settings
        self._retired.extend(self._cache.values())
        self._cache.clear()

    async def aclose(self) -> None:
        for provider in [*self._retired, *self._cache.values()]:
            await provider.aclose()
        self._retired.clear()
        self._cache.clear()
