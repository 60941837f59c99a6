"""Tandem wiring.

Builds the component graph from Settings:
  Settings -> Database -> SqlSessionStore -> ToolDispatcher (+ builtin tools)
           -> ProviderFactory -> Orchestrator

The host (an editor extension, a chat UI, a test) owns the event loop
and drives the Orchestrator; there is no CLI here.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from tandem.agent.builtin_tools import register_builtin_tools
from tandem.agent.tools import ToolDispatcher
from tandem.config import Settings
from tandem.orchestrator import Orchestrator, build_system_prompt
from tandem.providers.factory import ProviderFactory
from tandem.storage.database import Database
from tandem.storage.sessions import SqlSessionStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


async def create_components(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict:
    """Initialize all components in dependency order.

    1. Database - tables created on connect
    2. SqlSessionStore - durable transcripts
    3. ToolDispatcher - builtin workspace tools + alias table
    4. ProviderFactory - lazily built vendor adapters
    5. Orchestrator - started, active session loaded
    """
    database = Database(settings)
    await database.connect()

    system_prompt = build_system_prompt(settings.workspace_dir)
    store = SqlSessionStore(database, default_system_prompt=system_prompt)

    dispatcher = ToolDispatcher(aliases=settings.tool_aliases)
    register_builtin_tools(dispatcher, settings)

    providers = ProviderFactory(settings, transport=transport)
    if not settings.api_key_for(settings.provider):
        logger.warning("No API key configured for provider %s -- prompts will fail", settings.provider)

    orchestrator = Orchestrator(settings, store, dispatcher, providers, system_prompt=system_prompt)
    await orchestrator.start()

    logger.info(
        "Tandem ready (provider=%s, workspace=%s, tools=%d)",
        settings.provider, settings.workspace_dir, len(dispatcher.definitions()),
    )
    return {
        "database": database,
        "store": store,
        "dispatcher": dispatcher,
        "providers": providers,
        "orchestrator": orchestrator,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    orchestrator = components.get("orchestrator")
    if orchestrator:
        await orchestrator.aclose()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Tandem shutdown complete.")


@asynccontextmanager
async def build_orchestrator(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[Orchestrator]:
    """Yield a started Orchestrator wired with the default components."""
    settings = settings or Settings()
    components = await create_components(settings, transport=transport)
    try:
        yield components["orchestrator"]
    finally:
        await shutdown_components(components)
