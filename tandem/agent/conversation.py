"""Live transcript for one session.

ConversationState owns the ordered message tuple during a turn and
hands the compactor a copy before each provider dispatch. Every
mutation builds a new tuple, so snapshots taken for persistence stay
stable while the loop keeps appending.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from tandem.agent.compaction import ContextCompactor
from tandem.agent.models import Message, Role, ToolCall, Transcript, Usage, validate_transcript

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationView:
    messages: Transcript
    summary_lines: tuple[str, ...] = ()


class ConversationState:
    def __init__(self, compactor: ContextCompactor | None = None, system_prompt: str = "") -> None:
        self.compactor = compactor or ContextCompactor()
        self._messages: Transcript = (Message.system(system_prompt),)

    @property
    def messages(self) -> Transcript:
        return self._messages

    @property
    def system_prompt(self) -> str:
        return self._messages[0].content

    def initialize(self, system_prompt: str) -> None:
        """Start over with a system-only transcript and a clean compactor."""
        self._messages = (Message.system(system_prompt),)
        self.compactor.reset()

    reset = initialize

    def add_user(self, text: str) -> Message:
        message = Message.user(text)
        self._append(message)
        return message

    def add_assistant(
        self,
        text: str,
        usage: Usage | None = None,
        tool_calls: Sequence[ToolCall] | None = None,
    ) -> Message:
        message = Message.assistant(text, usage=usage, tool_calls=tool_calls)
        self._append(message)
        return message

    def add_tool_result(self, text: str, tool_name: str, tool_call_id: str | None = None) -> Message:
        """Append a tool turn. Raises ValueError if no earlier call matches."""
        issued = [
            call.id
            for message in self._messages
            if message.role == Role.ASSISTANT
            for call in message.tool_calls
        ]
        if not issued:
            raise ValueError(f"Tool result for {tool_name!r} has no preceding tool call")
        if tool_call_id is not None and tool_call_id not in issued:
            raise ValueError(f"Tool result references unknown call {tool_call_id!r}")
        message = Message.tool(text, name=tool_name, tool_call_id=tool_call_id)
        self._append(message)
        return message

    def _append(self, message: Message) -> None:
        if message.role == Role.SYSTEM:
            raise ValueError("Transcript already has a system message")
        self._messages = (*self._messages, message)

    def load(
        self,
        transcript: Sequence[Message | Mapping[str, Any]] | None,
        fallback_system_prompt: str,
    ) -> bool:
        """Replace the transcript with a persisted one.

        Returns False when the input was malformed and a fresh
        system-only transcript was used instead. A valid transcript is
        optimized once right away.
        """
        self.compactor.reset()
        try:
            messages = tuple(
                m if isinstance(m, Message) else Message.model_validate(m)
                for m in (transcript or ())
            )
            validate_transcript(messages)
        except (ValidationError, ValueError) as e:
            logger.warning("Discarding malformed transcript: %s", e)
            self._messages = (Message.system(fallback_system_prompt),)
            return False

        self._messages = messages
        self.optimize()
        return True

    def optimize(self) -> ConversationView:
        """Run the compactor and adopt its output when it changed something."""
        result = self.compactor.optimize(self._messages)
        if result.optimized:
            try:
                validate_transcript(result.messages)
            except ValueError:
                logger.exception("Compaction produced an invalid transcript; keeping the original")
            else:
                self._messages = result.messages
        return ConversationView(messages=self._messages, summary_lines=self.compactor.summary_lines)

    def snapshot(self) -> Transcript:
        return self._messages

    def __len__(self) -> int:
        return len(self._messages)
