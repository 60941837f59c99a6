"""OpenAI-compatible adapters.

DeepSeek, Grok, ZhiPu AI and Novita all speak the Chat Completions
dialect. OpenAI itself also does, except for the codex/nano family,
which only answers on the Responses API.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from tandem.agent.models import Message, ProviderReply, Role, ToolCall, ToolDefinition, Usage
from tandem.providers.base import HttpChatProvider

# Models that only answer on /responses
RESPONSES_MODELS = ("gpt-5-nano", "gpt-5-codex", "codex-mini-latest")


def parse_usage(raw: Any, prompt_key: str = "prompt_tokens", completion_key: str = "completion_tokens") -> Usage | None:
    if not isinstance(raw, dict):
        return None
    return Usage.from_counts(raw.get(prompt_key), raw.get(completion_key), raw.get("total_tokens"))


class OpenAICompatibleProvider(HttpChatProvider):
    vendor = "OpenAI"
    send_max_tokens = False

    def default_headers(self) -> dict[str, str]:
        return {
            **super().default_headers(),
            "authorization": f"Bearer {self.config.api_key}",
        }

    @staticmethod
    def serialize_message(message: Message) -> dict[str, Any]:
        mapped: dict[str, Any] = {"role": message.role.value, "content": message.content}
        if message.name:
            mapped["name"] = message.name
        if message.role == Role.TOOL and message.tool_call_id:
            mapped["tool_call_id"] = message.tool_call_id
        if message.tool_calls:
            mapped["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in message.tool_calls
            ]
            mapped["content"] = message.content or None
        return mapped

    def build_request(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
    ) -> tuple[str, dict[str, Any], dict[str, str] | None]:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": [self.serialize_message(m) for m in messages],
            "stream": False,
        }
        if tools:
            payload["tools"] = [t.to_openai() for t in tools]
            payload["tool_choice"] = "auto"
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.send_max_tokens and self.config.max_tokens:
            payload["max_tokens"] = self.config.max_tokens
        return "/chat/completions", payload, None

    def parse_response(self, data: dict[str, Any]) -> ProviderReply:
        choices = data.get("choices") or []
        if not choices:
            raise ValueError("no choices in response")
        payload = choices[0].get("message") or {}

        calls = tuple(
            ToolCall(
                id=call.get("id") or f"call_{index}",
                name=(call.get("function") or {}).get("name") or "",
                arguments=(call.get("function") or {}).get("arguments") or "",
            )
            for index, call in enumerate(payload.get("tool_calls") or [])
        )
        usage = parse_usage(data.get("usage"))
        message = Message.assistant(payload.get("content") or "", usage=usage, tool_calls=calls)
        return ProviderReply(message=message, usage=usage, raw=data)


class DeepSeekProvider(OpenAICompatibleProvider):
    vendor = "DeepSeek"


class GrokProvider(OpenAICompatibleProvider):
    vendor = "Grok"
    send_max_tokens = True


class ZhipuProvider(OpenAICompatibleProvider):
    vendor = "ZhiPu AI"
    send_max_tokens = True


class NovitaProvider(OpenAICompatibleProvider):
    vendor = "Novita"
    send_max_tokens = True


class OpenAIProvider(OpenAICompatibleProvider):
    """Chat Completions by default, Responses API for the models that require it."""

    vendor = "OpenAI"

    @property
    def uses_responses_api(self) -> bool:
        model = self.config.model.lower()
        return any(name in model for name in RESPONSES_MODELS)

    def build_request(
        self,
        messages: Sequence[Message],
        tools: Sequence[ToolDefinition],
    ) -> tuple[str, dict[str, Any], dict[str, str] | None]:
        if not self.uses_responses_api:
            return super().build_request(messages, tools)

        items: list[dict[str, Any]] = []
        for message in messages:
            if message.role == Role.TOOL and message.tool_call_id:
                items.append({
                    "type": "function_call_output",
                    "call_id": message.tool_call_id,
                    "output": message.content,
                })
                continue
            if message.role == Role.ASSISTANT and message.tool_calls:
                if message.content:
                    items.append({"role": "assistant", "content": message.content})
                items.extend(
                    {
                        "type": "function_call",
                        "status": "completed",
                        "call_id": call.id,
                        "name": call.name,
                        "arguments": call.arguments,
                    }
                    for call in message.tool_calls
                )
                continue
            items.append({"role": message.role.value, "content": message.content})

        payload: dict[str, Any] = {"model": self.config.model, "input": items, "stream": False}
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                }
                for t in tools
            ]
        if self.config.max_tokens:
            payload["max_output_tokens"] = self.config.max_tokens
        return "/responses", payload, None

    def parse_response(self, data: dict[str, Any]) -> ProviderReply:
        if not self.uses_responses_api:
            return super().parse_response(data)

        texts: list[str] = []
        calls: list[ToolCall] = []
        for output in data.get("output") or []:
            kind = output.get("type")
            if kind == "message":
                texts.extend(
                    part.get("text") or ""
                    for part in output.get("content") or []
                    if part.get("type") == "output_text"
                )
            elif kind == "function_call":
                calls.append(ToolCall(
                    id=output.get("call_id") or output.get("id") or f"call_{len(calls)}",
                    name=output.get("name") or "",
                    arguments=output.get("arguments") or "",
                ))

        usage = parse_usage(data.get("usage"), "input_tokens", "output_tokens")
        message = Message.assistant("".join(texts), usage=usage, tool_calls=calls)
        return ProviderReply(message=message, usage=usage, raw=data)
