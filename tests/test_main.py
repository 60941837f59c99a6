"""End-to-end wiring: real components, sqlite in memory, mocked vendor HTTP."""

import json

import httpx
import pytest

from tandem.agent.models import Role
from tandem.agent.runner import TurnStatus
from tandem.main import build_orchestrator, create_components, shutdown_components


def _completion(message: dict) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "choices": [{"message": {"role": "assistant", **message}}],
            "usage": {"prompt_tokens": 50, "completion_tokens": 10},
        },
    )


class ScriptedVendor:
    """Chat Completions endpoint that replays canned messages."""

    def __init__(self, *messages: dict) -> None:
        self.messages = list(messages)
        self.bodies: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        return _completion(self.messages.pop(0))


class TestWiring:
    @pytest.mark.asyncio
    async def test_components_are_built_and_closed(self, settings):
        components = await create_components(settings, transport=httpx.MockTransport(ScriptedVendor()))
        try:
            names = [d.name for d in components["dispatcher"].definitions()]
            assert "read_file" in names
            assert "run_command" in names
            assert components["orchestrator"].active_session_id is not None
        finally:
            await shutdown_components(components)

    @pytest.mark.asyncio
    async def test_prompt_with_tool_call_end_to_end(self, settings, tmp_path):
        (tmp_path / "a.txt").write_text("")
        (tmp_path / "b.txt").write_text("")
        vendor = ScriptedVendor(
            {
                "content": None,
                "tool_calls": [{
                    "id": "call_1",
                    "type": "function",
                    "function": {"name": "list_directory", "arguments": "{}"},
                }],
            },
            {"content": "The workspace holds a.txt and b.txt."},
        )

        async with build_orchestrator(settings, transport=httpx.MockTransport(vendor)) as orchestrator:
            result = await orchestrator.submit_prompt("list files")
            summaries = await orchestrator.list_sessions()

        assert result.status == TurnStatus.DONE
        assert result.iterations == 2
        assert result.message.content == "The workspace holds a.txt and b.txt."
        assert summaries[0].title == "list files"

        system = vendor.bodies[0]["messages"][0]
        assert system["role"] == Role.SYSTEM
        assert f"Current workspace root: {tmp_path}" in system["content"]

        tool_turn = vendor.bodies[1]["messages"][-1]
        assert tool_turn == {
            "role": "tool",
            "content": "Tool result for list_directory:\na.txt\nb.txt",
            "name": "list_directory",
            "tool_call_id": "call_1",
        }

    @pytest.mark.asyncio
    async def test_missing_key_surfaces_as_reply(self, settings_factory):
        settings = settings_factory(DEEPSEEK_API_KEY="")

        async with build_orchestrator(settings, transport=httpx.MockTransport(ScriptedVendor())) as orchestrator:
            result = await orchestrator.submit_prompt("hello?")

        assert result.status == TurnStatus.DONE
        assert result.message.content == "❌ DeepSeek API key not configured"
