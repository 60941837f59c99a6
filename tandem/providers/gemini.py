"""Google Gemini generateContent adapter."""

from __future__ import annotations

import json
import uuid
from collections.abc import Sequence
from typing import Any

from tandem.agent.models import Message, ProviderReply, Role, ToolCall, ToolDefinition, Usage
from tandem.providers.base import HttpChatProvider, ProviderError


class GeminiProvider(HttpChatProvider):
    """Assistant turns map to role ``model``; everything else is ``user``.

    Gemini rejects consecutive turns with the same role, so adjacent
    turns are merged into one content entry. Tool results become
    ``functionResponse`` parts keyed by tool name, since Gemini has no
    call ids of its own.
    """

    vendor = "Gemini"

    @staticmethod
    def map_contents(messages: Sequence[Message]) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        for message in messages:
            if message.role == Role.SYSTEM:
                continue
            role = "model" if message.role == Role.ASSISTANT else "user"
            parts: list[dict[str, Any]] = []

            if message.role == Role.TOOL:
                parts.append({
                    "functionResponse": {
                        "name": message.name or "unknown_function",
                        "response": {"content": message.content},
                    }
                })
            elif message.content:
                parts.append({"text": message.content})

            for call in message.tool_calls:
                parts.append({"functionCall": {"name": call.name, "args": call.parsed_arguments()}})

            if not parts:
                continue
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].extend(parts)
            else:
                contents.append({"role": role, "parts": parts})
        return contents

    def build_request(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
    ) -> tuple[str, dict[str, Any], dict[str, str] | None]:
        generation: dict[str, Any] = {}
        if self.temperature is not None:
            generation["temperature"] = self.temperature
        if self.config.max_tokens:
            generation["maxOutputTokens"] = self.config.max_tokens

        payload: dict[str, Any] = {"contents": self.map_contents(messages)}
        if generation:
            payload["generationConfig"] = generation

        system = "\n\n".join(m.content for m in messages if m.role == Role.SYSTEM and m.content)
        if system:
            payload["system_instruction"] = {"parts": [{"text": system}]}
        if tools:
            payload["tools"] = [{
                "function_declarations": [
                    {"name": t.name, "description": t.description, "parameters": t.parameters}
                    for t in tools
                ]
            }]

        path = f"/v1beta/models/{self.config.model}:generateContent"
        return path, payload, {"key": self.config.api_key}

    def parse_response(self, data: dict[str, Any]) -> ProviderReply:
        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError("Empty or invalid response")

        text = ""
        calls: list[ToolCall] = []
        batch = uuid.uuid4().hex[:12]
        for index, part in enumerate((candidates[0].get("content") or {}).get("parts") or []):
            if part.get("text"):
                text += part["text"]
            function_call = part.get("functionCall")
            if function_call:
                calls.append(ToolCall(
                    id=f"gemini_call_{batch}_{index}",
                    name=function_call.get("name") or "",
                    arguments=json.dumps(function_call.get("args") or {}),
                ))

        raw_usage = data.get("usageMetadata")
        usage = None
        if isinstance(raw_usage, dict):
            usage = Usage.from_counts(
                raw_usage.get("promptTokenCount"),
                raw_usage.get("candidatesTokenCount"),
                raw_usage.get("totalTokenCount"),
            )
        message = Message.assistant(text, usage=usage, tool_calls=calls)
        return ProviderReply(message=message, usage=usage, raw=data)
