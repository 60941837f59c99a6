"""Anthropic Messages API adapter.

The system prompt travels out-of-band in ``system``. Tool results go
back as ``tool_result`` blocks inside a user turn; results for one
assistant turn are merged into a single user turn, which is what the
API expects after a multi-call ``tool_use`` reply.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from tandem.agent.models import Message, ProviderReply, Role, ToolCall, ToolDefinition, Usage
from tandem.providers.base import HttpChatProvider

_API_VERSION = "2023-06-01"
_DEFAULT_MAX_TOKENS = 8000


def find_tool_call_id(messages: Sequence[Message], index: int) -> str:
    """Id of the call a tool turn answers.

    Uses the turn's own id when present. Otherwise walks back to the
    issuing assistant turn and picks the call at the same position as
    this result within the run of tool turns that follows it.
    """
    message = messages[index]
    if message.tool_call_id:
        return message.tool_call_id

    position = 0
    for cursor in range(index - 1, -1, -1):
        candidate = messages[cursor]
        if candidate.role == Role.TOOL:
            position += 1
            continue
        if candidate.role == Role.ASSISTANT and candidate.tool_calls:
            calls = candidate.tool_calls
            return calls[min(position, len(calls) - 1)].id
        break
    return "unknown"


class ClaudeProvider(HttpChatProvider):
    vendor = "Claude"

    def default_headers(self) -> dict[str, str]:
        return {
            **super().default_headers(),
            "x-api-key": self.config.api_key,
            "anthropic-version": _API_VERSION,
        }

    def format_messages(self, messages: Sequence[Message]) -> list[dict[str, Any]]:
        formatted: list[dict[str, Any]] = []
        for index, message in enumerate(messages):
            if message.role == Role.SYSTEM:
                continue

            if message.role == Role.TOOL:
                block = {
                    "type": "tool_result",
                    "tool_use_id": find_tool_call_id(messages, index),
                    "content": message.content,
                }
                previous = formatted[-1] if formatted else None
                if (
                    previous is not None
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                    and all(b.get("type") == "tool_result" for b in previous["content"])
                ):
                    previous["content"].append(block)
                else:
                    formatted.append({"role": "user", "content": [block]})
                continue

            if message.role == Role.ASSISTANT and message.tool_calls:
                content: list[dict[str, Any]] = []
                if message.content:
                    content.append({"type": "text", "text": message.content})
                content.extend(
                    {
                        "type": "tool_use",
                        "id": call.id,
                        "name": call.name or "unknown",
                        "input": call.parsed_arguments(),
                    }
                    for call in message.tool_calls
                )
                formatted.append({"role": "assistant", "content": content})
                continue

            formatted.append({"role": message.role.value, "content": message.content})
        return formatted

    @staticmethod
    def format_tools(tools: Sequence[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {"name": t.name, "description": t.description, "input_schema": t.parameters}
            for t in tools
        ]

    def build_request(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
    ) -> tuple[str, dict[str, Any], dict[str, str] | None]:
        system = "\n\n".join(m.content for m in messages if m.role == Role.SYSTEM and m.content)
        payload: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": self.config.max_tokens or _DEFAULT_MAX_TOKENS,
            "messages": self.format_messages(messages),
        }
        if system:
            payload["system"] = system
        if tools:
            payload["tools"] = self.format_tools(tools)
            payload["tool_choice"] = {"type": "auto"}
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        return "/v1/messages", payload, None

    def parse_response(self, data: dict[str, Any]) -> ProviderReply:
        text = ""
        calls: list[ToolCall] = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                text += block.get("text") or ""
            elif block.get("type") == "tool_use":
                calls.append(ToolCall(
                    id=block.get("id") or f"toolu_{len(calls)}",
                    name=block.get("name") or "",
                    arguments=_dump_input(block.get("input")),
                ))

        raw_usage = data.get("usage")
        usage = None
        if isinstance(raw_usage, dict):
            usage = Usage.from_counts(raw_usage.get("input_tokens"), raw_usage.get("output_tokens"))
        message = Message.assistant(text, usage=usage, tool_calls=calls)
        return ProviderReply(message=message, usage=usage, raw=data)


def _dump_input(value: Any) -> str:
    return json.dumps(value if value is not None else {})
