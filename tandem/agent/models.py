"""Shared data models for the agent core.

Messages are frozen pydantic models and a transcript is a tuple of
them, so a snapshot handed to persistence can never change underneath
a turn that is still appending to the live conversation.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Usage(BaseModel):
    """Token accounting reported by a provider for one reply."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None

    @classmethod
    def from_counts(
        cls,
        prompt: int | None,
        completion: int | None,
        total: int | None = None,
    ) -> Usage:
        """Build usage, summing the components when no total was reported."""
        if total is None and (prompt is not None or completion is not None):
            total = (prompt or 0) + (completion or 0)
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    @property
    def effective_total(self) -> int:
        if self.total_tokens is not None:
            return self.total_tokens
        return (self.prompt_tokens or 0) + (self.completion_tokens or 0)


class ToolCall(BaseModel):
    """A single tool invocation requested by the model."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: str = ""  # serialized JSON object, validated by the tool itself

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the argument payload. Anything but a JSON object becomes {}."""
        if not self.arguments.strip():
            return {}
        try:
            value = json.loads(self.arguments)
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}

    def signature(self) -> str:
        """Stable identity of the call: name plus canonically serialized arguments."""
        try:
            canonical = json.dumps(json.loads(self.arguments), sort_keys=True, separators=(",", ":"))
        except json.JSONDecodeError:
            canonical = self.arguments.strip()
        return f"{self.name}|{canonical}"


class Message(BaseModel):
    """One transcript entry."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = ""
    name: str | None = None  # tool name, only on role=tool
    tool_call_id: str | None = None
    usage: Usage | None = None
    tool_calls: tuple[ToolCall, ...] = ()

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: str,
        usage: Usage | None = None,
        tool_calls: Sequence[ToolCall] | None = None,
    ) -> Message:
        return cls(role=Role.ASSISTANT, content=content, usage=usage, tool_calls=tuple(tool_calls or ()))

    @classmethod
    def tool(cls, content: str, name: str, tool_call_id: str | None = None) -> Message:
        return cls(role=Role.TOOL, content=content, name=name, tool_call_id=tool_call_id)

    @property
    def has_tool_calls(self) -> bool:
        return self.role == Role.ASSISTANT and bool(self.tool_calls)


Transcript = tuple[Message, ...]


def validate_transcript(messages: Sequence[Message]) -> None:
    """Raise ValueError unless *messages* is a well-formed transcript.

    Rules: non-empty, exactly one system message and it comes first,
    and every tool result answers a call issued by an earlier assistant
    turn (by id when the result carries one).
    """
    if not messages:
        raise ValueError("Transcript is empty")
    if messages[0].role != Role.SYSTEM:
        raise ValueError(f"Transcript must start with a system message, got {messages[0].role}")

    issued: set[str] = set()
    any_calls = False
    for index, message in enumerate(messages[1:], start=1):
        if message.role == Role.SYSTEM:
            raise ValueError(f"Unexpected system message at index {index}")
        if message.role == Role.ASSISTANT and message.tool_calls:
            any_calls = True
            issued.update(call.id for call in message.tool_calls)
        elif message.role == Role.TOOL:
            if message.tool_call_id is not None and message.tool_call_id not in issued:
                raise ValueError(
                    f"Tool result at index {index} references unknown call {message.tool_call_id!r}"
                )
            if message.tool_call_id is None and not any_calls:
                raise ValueError(f"Tool result at index {index} has no preceding tool call")


def drop_unanswered_calls(messages: Sequence[Message]) -> Transcript:
    """Strip tool calls that no tool turn answers.

    Results match calls by id; results without an id answer the
    remaining calls of the turn right before them in order. An
    assistant turn left with neither text nor calls is dropped.
    """
    answered = {m.tool_call_id for m in messages if m.role == Role.TOOL and m.tool_call_id}
    kept_messages: list[Message] = []
    for index, message in enumerate(messages):
        if not message.has_tool_calls:
            kept_messages.append(message)
            continue

        positional = 0
        for following in messages[index + 1:]:
            if following.role != Role.TOOL:
                break
            if following.tool_call_id is None:
                positional += 1

        calls: list[ToolCall] = []
        for call in message.tool_calls:
            if call.id in answered:
                calls.append(call)
            elif positional:
                calls.append(call)
                positional -= 1

        if len(calls) == len(message.tool_calls):
            kept_messages.append(message)
        elif calls or message.content:
            kept_messages.append(message.model_copy(update={"tool_calls": tuple(calls)}))
    return tuple(kept_messages)


class ToolDefinition(BaseModel):
    """Capability advertisement sent to the provider."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_openai(self) -> dict[str, Any]:
        """OpenAI-style function tool, also accepted by DeepSeek/Grok/ZhiPu/Novita."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ProviderReply:
    """Normalized reply from any provider adapter.

    ``is_error`` marks the synthetic assistant message an adapter
    produces when the transport or the vendor API failed.
    """

    message: Message
    usage: Usage | None = None
    raw: Any = None
    is_error: bool = False

    @property
    def tool_calls(self) -> tuple[ToolCall, ...]:
        return self.message.tool_calls


class SessionSummary(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime


class Session(SessionSummary):
    """A persisted conversation. Owned by the session store."""

    messages: tuple[Message, ...] = ()

    def summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            title=self.title,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
