"""Session-aware front door to the agent loop.

Owns the active session, one ConversationState per recently used
session, and one lock per session so a session never runs two prompts
at once. Every finished turn (cancelled ones included) is written back
to the session store.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections import OrderedDict
from collections.abc import Sequence
from typing import Any

from tandem.agent.cancellation import CancelToken
from tandem.agent.compaction import ContextCompactor
from tandem.agent.conversation import ConversationState
from tandem.agent.models import Session, SessionSummary, ToolDefinition
from tandem.agent.runner import AgentRunner, TurnResult
from tandem.agent.tools import ToolDispatcher
from tandem.config import Settings
from tandem.providers.factory import ProviderFactory
from tandem.storage.sessions import SessionStore

logger = logging.getLogger(__name__)

MAX_CONVERSATIONS = 100

SYSTEM_PROTOCOL = (
    "# Tandem Guidelines\n\n"
    "You are **Tandem**, an AI coding assistant working inside the user's workspace. "
    "Operate strictly within the active workspace, keep answers short, and make your "
    "intent explicit before acting."
)

# Settings fields that feed CompactorOptions
_CONTEXT_FIELDS = frozenset({
    "context_optimization_enabled",
    "optimizable_tools",
    "max_tool_instances",
    "summary_enabled",
    "summary_threshold",
    "summary_retention",
    "summary_prefix",
    "summary_max_line_length",
    "summary_token_threshold",
})


def build_system_prompt(workspace_dir: str | None = None) -> str:
    if workspace_dir:
        workspace_line = f"Current workspace root: {workspace_dir}"
    else:
        workspace_line = (
            "No workspace folder detected. Ask the user to open a folder "
            "before attempting file operations."
        )
    return f"{SYSTEM_PROTOCOL}\n\n{workspace_line}"


class SessionBusyError(RuntimeError):
    """A prompt is already running for this session."""


class SessionNotFoundError(KeyError):
    """No session with the given id."""


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        dispatcher: ToolDispatcher,
        provider_factory: ProviderFactory,
        system_prompt: str | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._dispatcher = dispatcher
        self._providers = provider_factory
        self._runner = AgentRunner(dispatcher, provider_factory, settings)
        self._system_prompt = system_prompt if system_prompt is not None else build_system_prompt(
            settings.workspace_dir
        )
        self._conversations: OrderedDict[str, ConversationState] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: dict[str, CancelToken] = {}
        self._active_id: str | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    @property
    def active_session_id(self) -> str | None:
        return self._active_id

    async def start(self) -> Session:
        """Make sure a session exists and load the active one."""
        session = await self._store.ensure_bootstrapped()
        self._load(session)
        logger.info("Orchestrator started (session=%s)", session.id)
        return session

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def is_busy(self, session_id: str | None = None) -> bool:
        lock = self._locks.get(session_id or self._require_active())
        return lock is not None and lock.locked()

    async def submit_prompt(self, text: str, cancel: CancelToken | None = None) -> TurnResult:
        """Run one prompt on the active session.

        Raises SessionBusyError if the session is already running one.
        """
        session_id = self._require_active()
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        if lock.locked():
            raise SessionBusyError(f"Session {session_id} is already processing a prompt")

        async with lock:
            conversation = self._conversation(session_id)
            token = cancel or CancelToken()
            self._in_flight[session_id] = token
            try:
                result = await self._runner.run_prompt(conversation, text, token)
            finally:
                self._in_flight.pop(session_id, None)
                await self._store.update_messages(session_id, conversation.snapshot())
            logger.info(
                "Turn finished (session=%s, status=%s, iterations=%d, tools=%d)",
                session_id, result.status, result.iterations, len(result.tool_results),
            )
            return result

    def cancel(self, session_id: str | None = None) -> bool:
        """Signal the in-flight prompt of a session to stop. False if none is running."""
        token = self._in_flight.get(session_id or self._active_id or "")
        if token is None:
            return False
        token.cancel()
        return True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def list_sessions(self) -> list[SessionSummary]:
        return await self._store.list_summaries()

    async def create_session(self, title: str | None = None) -> Session:
        await self._persist_active()
        session = await self._store.create(title=title, system_prompt=self._system_prompt)
        self._load(session)
        return session

    async def switch_session(self, session_id: str) -> Session:
        session = await self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        await self._persist_active()
        await self._store.set_active(session_id)
        self._load(session)
        return session

    async def rename_session(self, session_id: str, title: str) -> Session:
        session = await self._store.rename(session_id, title)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session. Returns False for the last remaining one."""
        if self.is_busy(session_id):
            raise SessionBusyError(f"Session {session_id} is processing a prompt")
        deleted = await self._store.delete(session_id)
        if not deleted:
            return False
        self._conversations.pop(session_id, None)
        self._locks.pop(session_id, None)
        if session_id == self._active_id:
            active = await self._store.ensure_bootstrapped()
            self._load(active)
        return True

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def update_tools(self, definitions: Sequence[ToolDefinition]) -> None:
        """Replace advertised tool definitions. History is kept; provider instances are rebuilt."""
        self._dispatcher.replace_definitions(definitions)
        self._providers.reset()

    def update_settings(self, **changes: Any) -> Settings:
        """Apply settings changes. Provider-affecting changes drop cached providers."""
        settings = self._settings.model_copy(update=changes)
        self._settings = settings
        self._runner.update_settings(settings)
        self._providers.reset(settings)
        if "tool_aliases" in changes:
            self._dispatcher.set_aliases(settings.tool_aliases)
        if _CONTEXT_FIELDS & changes.keys():
            self._apply_context_options()
        return settings

    def update_context_options(self, **changes: Any) -> None:
        unknown = changes.keys() - _CONTEXT_FIELDS
        if unknown:
            raise ValueError(f"Unknown context options: {', '.join(sorted(unknown))}")
        self._settings = self._settings.model_copy(update=changes)
        self._runner.update_settings(self._settings)
        self._apply_context_options()

    def _apply_context_options(self) -> None:
        options = self._settings.compactor_options()
        for conversation in self._conversations.values():
            conversation.compactor.update_options(**dataclasses.asdict(options))

    async def update_system_prompt(self, prompt: str) -> None:
        """New default prompt; the active conversation restarts with it."""
        self._system_prompt = prompt
        if self._active_id is None:
            return
        self._conversation(self._active_id).reset(prompt)
        await self._persist_active()

    async def aclose(self) -> None:
        for token in self._in_flight.values():
            token.cancel()
        await self._providers.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_active(self) -> str:
        if self._active_id is None:
            raise RuntimeError("No active session -- call start() first")
        return self._active_id

    def _conversation(self, session_id: str) -> ConversationState:
        conversation = self._conversations.get(session_id)
        if conversation is None:
            conversation = ConversationState(
                ContextCompactor(self._settings.compactor_options()),
                self._system_prompt,
            )
            self._conversations[session_id] = conversation
        self._conversations.move_to_end(session_id)
        self._evict()
        return conversation

    def _evict(self) -> None:
        while len(self._conversations) > MAX_CONVERSATIONS:
            oldest = next(
                (sid for sid in self._conversations if not self.is_busy(sid) and sid != self._active_id),
                None,
            )
            if oldest is None:
                return
            del self._conversations[oldest]
            self._locks.pop(oldest, None)

    def _load(self, session: Session) -> None:
        conversation = self._conversation(session.id)
        if not self.is_busy(session.id):
            if not conversation.load(session.messages, self._system_prompt):
                logger.warning("Session %s had a malformed transcript; started fresh", session.id)
        self._active_id = session.id

    async def _persist_active(self) -> None:
        if self._active_id is None or self.is_busy(self._active_id):
            return
        conversation = self._conversations.get(self._active_id)
        if conversation is not None:
            await self._store.update_messages(self._active_id, conversation.snapshot())
