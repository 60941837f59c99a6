"""Tests for the Orchestrator: per-session locking, persistence, session switching."""

import asyncio
import json

import pytest

from tandem.agent.builtin_tools import register_builtin_tools
from tandem.agent.cancellation import TurnCancelled
from tandem.agent.models import Message, ProviderReply, ToolCall, ToolDefinition
from tandem.agent.runner import TurnStatus
from tandem.agent.tools import ToolDispatcher
from tandem.orchestrator import (
    Orchestrator,
    SessionBusyError,
    SessionNotFoundError,
    build_system_prompt,
)
from tandem.storage.sessions import InMemorySessionStore


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def _reply(text: str = "", *calls: ToolCall) -> ProviderReply:
    return ProviderReply(message=Message.assistant(text, tool_calls=calls))


class ScriptedProvider:
    def __init__(self, *script) -> None:
        self.script = list(script)
        self.requests: list[tuple[Message, ...]] = []

    async def send_chat(self, messages, tools, cancel=None):
        self.requests.append(tuple(messages))
        step = self.script.pop(0) if self.script else _reply("done")
        if callable(step):
            return await step(cancel)
        return step

    async def aclose(self):
        pass


class ScriptedFactory:
    def __init__(self, provider) -> None:
        self.provider = provider
        self.resets: list = []
        self.closed = False

    def get(self, kind=None):
        return self.provider

    def reset(self, settings=None):
        self.resets.append(settings)

    async def aclose(self):
        self.closed = True


async def _orchestrator(settings, provider, store=None):
    store = store or InMemorySessionStore(default_system_prompt="sys")
    dispatcher = ToolDispatcher(aliases=settings.tool_aliases)
    register_builtin_tools(dispatcher, settings)
    factory = ScriptedFactory(provider)
    orchestrator = Orchestrator(settings, store, dispatcher, factory, system_prompt="sys")
    await orchestrator.start()
    return orchestrator, store, factory


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


class TestPrompts:
    @pytest.mark.asyncio
    async def test_turn_is_persisted(self, settings):
        orchestrator, store, _ = await _orchestrator(settings, ScriptedProvider(_reply("Hi there")))

        result = await orchestrator.submit_prompt("Say hello")

        assert result.status == TurnStatus.DONE
        session = await store.get(orchestrator.active_session_id)
        assert [m.content for m in session.messages] == ["sys", "Say hello", "Hi there"]
        assert session.title == "Say hello"

    @pytest.mark.asyncio
    async def test_second_prompt_on_busy_session_is_refused(self, settings):
        entered, gate = asyncio.Event(), asyncio.Event()

        async def blocked(cancel):
            entered.set()
            await gate.wait()
            return _reply("finally")

        orchestrator, _, _ = await _orchestrator(settings, ScriptedProvider(blocked))
        task = asyncio.create_task(orchestrator.submit_prompt("first"))
        await entered.wait()

        assert orchestrator.is_busy()
        with pytest.raises(SessionBusyError):
            await orchestrator.submit_prompt("second")
        with pytest.raises(SessionBusyError):
            await orchestrator.delete_session(orchestrator.active_session_id)

        gate.set()
        result = await task
        assert result.message.content == "finally"
        assert not orchestrator.is_busy()

    @pytest.mark.asyncio
    async def test_cancelled_turn_is_still_persisted(self, settings):
        entered = asyncio.Event()

        async def wait_for_cancel(cancel):
            entered.set()
            await cancel.wait()
            raise TurnCancelled()

        orchestrator, store, _ = await _orchestrator(settings, ScriptedProvider(wait_for_cancel))
        task = asyncio.create_task(orchestrator.submit_prompt("long job"))
        await entered.wait()

        assert orchestrator.cancel() is True
        result = await task

        assert result.status == TurnStatus.CANCELLED
        session = await store.get(orchestrator.active_session_id)
        assert session.messages[-1].content == "long job"
        assert orchestrator.cancel() is False

    @pytest.mark.asyncio
    async def test_tool_turns_reach_the_store(self, settings, tmp_path):
        (tmp_path / "a.txt").write_text("")
        call = ToolCall(id="c1", name="list_directory", arguments=json.dumps({}))
        orchestrator, store, _ = await _orchestrator(
            settings, ScriptedProvider(_reply("", call), _reply("One file."))
        )

        await orchestrator.submit_prompt("What is here?")

        session = await store.get(orchestrator.active_session_id)
        assert session.messages[3].content == "Tool result for list_directory:\na.txt"
        assert session.messages[-1].content == "One file."


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    @pytest.mark.asyncio
    async def test_switching_restores_history(self, settings):
        provider = ScriptedProvider()
        orchestrator, _, _ = await _orchestrator(settings, provider)
        first_id = orchestrator.active_session_id
        await orchestrator.submit_prompt("remember the word banana")

        second = await orchestrator.create_session()
        assert orchestrator.active_session_id == second.id
        await orchestrator.submit_prompt("fresh start")
        assert [m.content for m in provider.requests[-1]] == ["sys", "fresh start"]

        await orchestrator.switch_session(first_id)
        await orchestrator.submit_prompt("what was the word?")

        sent = [m.content for m in provider.requests[-1]]
        assert sent[:3] == ["sys", "remember the word banana", "done"]
        assert sent[-1] == "what was the word?"

    @pytest.mark.asyncio
    async def test_switch_to_unknown_session(self, settings):
        orchestrator, _, _ = await _orchestrator(settings, ScriptedProvider())
        with pytest.raises(SessionNotFoundError):
            await orchestrator.switch_session("session-missing")

    @pytest.mark.asyncio
    async def test_list_and_rename(self, settings):
        orchestrator, _, _ = await _orchestrator(settings, ScriptedProvider())
        created = await orchestrator.create_session(title="Scratch")

        renamed = await orchestrator.rename_session(created.id, "Parser")
        summaries = await orchestrator.list_sessions()

        assert renamed.title == "Parser"
        assert summaries[0].id == created.id
        assert len(summaries) == 2
        with pytest.raises(SessionNotFoundError):
            await orchestrator.rename_session("session-missing", "x")

    @pytest.mark.asyncio
    async def test_last_session_is_kept(self, settings):
        orchestrator, _, _ = await _orchestrator(settings, ScriptedProvider())
        assert await orchestrator.delete_session(orchestrator.active_session_id) is False

    @pytest.mark.asyncio
    async def test_deleting_active_loads_another(self, settings):
        provider = ScriptedProvider()
        orchestrator, _, _ = await _orchestrator(settings, provider)
        first_id = orchestrator.active_session_id
        await orchestrator.submit_prompt("keep this")
        second = await orchestrator.create_session()

        assert await orchestrator.delete_session(second.id) is True
        assert orchestrator.active_session_id == first_id

        await orchestrator.submit_prompt("still there?")
        assert "keep this" in [m.content for m in provider.requests[-1]]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestConfiguration:
    @pytest.mark.asyncio
    async def test_update_tools_keeps_history_and_resets_providers(self, settings):
        provider = ScriptedProvider()
        orchestrator, _, factory = await _orchestrator(settings, provider)
        await orchestrator.submit_prompt("before")

        orchestrator.update_tools([ToolDefinition(name="read_file", description="Read carefully")])
        await orchestrator.submit_prompt("after")

        assert len(factory.resets) == 1
        assert "before" in [m.content for m in provider.requests[-1]]

    @pytest.mark.asyncio
    async def test_update_settings_reaches_the_runner(self, settings):
        calls = [_reply("", ToolCall(id=f"c{i}", name="list_directory", arguments="{}")) for i in range(3)]
        orchestrator, _, factory = await _orchestrator(settings, ScriptedProvider(*calls))

        updated = orchestrator.update_settings(max_iterations=1)
        result = await orchestrator.submit_prompt("loop")

        assert updated.max_iterations == 1
        assert orchestrator.settings.max_iterations == 1
        assert factory.resets == [updated]
        assert result.iteration_limit_reached
        assert result.iterations == 1

    @pytest.mark.asyncio
    async def test_context_options_apply_to_live_conversations(self, settings):
        orchestrator, _, _ = await _orchestrator(settings, ScriptedProvider())

        orchestrator.update_context_options(summary_threshold=30, summary_retention=10)

        conversation = orchestrator._conversation(orchestrator.active_session_id)
        assert conversation.compactor.options.summary_threshold == 30
        assert conversation.compactor.options.summary_retention == 10
        with pytest.raises(ValueError, match="Unknown context options"):
            orchestrator.update_context_options(max_iterations=3)

    @pytest.mark.asyncio
    async def test_new_system_prompt_restarts_active_conversation(self, settings):
        provider = ScriptedProvider()
        orchestrator, store, _ = await _orchestrator(settings, provider)
        await orchestrator.submit_prompt("old chatter")

        await orchestrator.update_system_prompt("You are terse.")

        session = await store.get(orchestrator.active_session_id)
        assert session.messages == (Message.system("You are terse."),)
        await orchestrator.submit_prompt("hi")
        assert [m.content for m in provider.requests[-1]] == ["You are terse.", "hi"]

    @pytest.mark.asyncio
    async def test_aclose_closes_providers(self, settings):
        orchestrator, _, factory = await _orchestrator(settings, ScriptedProvider())
        await orchestrator.aclose()
        assert factory.closed


def test_system_prompt_names_workspace(tmp_path):
    prompt = build_system_prompt(str(tmp_path))
    assert prompt.startswith("# Tandem Guidelines")
    assert f"Current workspace root: {tmp_path}" in prompt
    assert "No workspace folder detected" in build_system_prompt(None)
