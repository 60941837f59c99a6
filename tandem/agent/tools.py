"""Tool registry and dispatcher.

Handlers are async callables taking the decoded parameter dict and
returning a ToolOutcome (or a dict with a boolean ``success`` that is
coerced into one). The dispatcher never raises: unknown tools, handler
exceptions and unexpected result shapes all come back as failures.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from tandem.agent.models import ToolDefinition

logger = logging.getLogger(__name__)


@dataclass
class ToolOutcome:
    success: bool
    content: str | None = None
    message: str | None = None
    error: str | None = None

    @classmethod
    def ok(cls, message: str | None = None, content: str | None = None) -> ToolOutcome:
        return cls(success=True, message=message, content=content)

    @classmethod
    def failed(cls, error: str) -> ToolOutcome:
        return cls(success=False, error=error)


ToolHandler = Callable[[dict[str, Any]], Awaitable["ToolOutcome | dict[str, Any]"]]


def coerce_outcome(name: str, result: Any) -> ToolOutcome:
    """Normalize a handler return value."""
    if isinstance(result, ToolOutcome):
        return result
    if isinstance(result, Mapping) and isinstance(result.get("success"), bool):
        return ToolOutcome(
            success=result["success"],
            content=_optional_text(result.get("content")),
            message=_optional_text(result.get("message")),
            error=_optional_text(result.get("error")),
        )
    return ToolOutcome.failed(f"Unexpected tool result shape for action {name}")


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def format_tool_result(name: str, outcome: ToolOutcome) -> str:
    """Render an outcome as the tool-turn text fed back to the model."""
    lines = []
    if outcome.message:
        lines.append(outcome.message)
    if outcome.content:
        lines.append(outcome.content)
    if not outcome.success and outcome.error:
        lines.append(f"Error: {outcome.error}")

    body = "\n".join(lines).strip()
    if body:
        return f"Tool result for {name}:\n{body}"
    if outcome.success:
        return f"Tool result for {name}: Success"
    return f"Tool result for {name}: FAILED - {outcome.error or 'Unknown error'}"


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


class ToolDispatcher:
    """Registers tool handlers and dispatches model tool calls to them."""

    def __init__(self, aliases: Mapping[str, str] | None = None) -> None:
        self._handlers: dict[str, ToolHandler] = {}
        self._definitions: dict[str, ToolDefinition] = {}
        self._aliases: dict[str, str] = dict(aliases or {})

    def register(self, name: str, handler: ToolHandler, definition: ToolDefinition | None = None) -> None:
        self._handlers[name] = handler
        self._definitions[name] = definition or ToolDefinition(name=name)

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)
        self._definitions.pop(name, None)

    def set_aliases(self, aliases: Mapping[str, str]) -> None:
        self._aliases = dict(aliases)

    def resolve(self, name: str) -> str:
        """Map a model-supplied name to a registered one via the alias table."""
        if name in self._handlers:
            return name
        return self._aliases.get(name, name)

    def definitions(self) -> tuple[ToolDefinition, ...]:
        return tuple(self._definitions.values())

    def replace_definitions(self, definitions: Sequence[ToolDefinition]) -> None:
        """Swap advertised definitions for tools that are registered; others are ignored."""
        updated = {d.name: d for d in definitions if d.name in self._handlers}
        for name in self._handlers:
            self._definitions[name] = updated.get(name, self._definitions[name])

    def __contains__(self, name: str) -> bool:
        return self.resolve(name) in self._handlers

    async def dispatch(self, name: str, params: Mapping[str, Any] | None = None) -> ToolOutcome:
        resolved = self.resolve(name)
        handler = self._handlers.get(resolved)
        if handler is None:
            logger.warning("Unknown tool requested: %s", name)
            return ToolOutcome.failed(f"Unknown tool: {name}")
        try:
            result = await handler(dict(params or {}))
        except Exception as e:
            logger.exception("Tool dispatch error for %s", resolved)
            return ToolOutcome.failed(str(e) or type(e).__name__)
        return coerce_outcome(resolved, result)
