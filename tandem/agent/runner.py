"""Agent runner -- drives one prompt through the provider/tool loop.

The loop:
1. Append the user turn
2. Compact the transcript and call the provider with the tool definitions
3. No tool calls in the reply -> done
4. Otherwise execute every call in order, append each result as a tool turn
5. Repeat from 2 until done, cancelled, or max_iterations provider calls
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from tandem.agent.cancellation import CancelToken, TurnCancelled
from tandem.agent.conversation import ConversationState
from tandem.agent.models import Message, ToolCall
from tandem.agent.tools import ToolDispatcher, ToolOutcome, format_tool_result
from tandem.config import Settings
from tandem.providers.factory import ProviderFactory

logger = logging.getLogger(__name__)


class TurnStatus(StrEnum):
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass
class ToolExecution:
    tool_name: str
    call_id: str
    arguments: dict[str, Any]
    outcome: ToolOutcome
    duration_ms: int = 0


@dataclass
class TurnResult:
    status: TurnStatus
    message: Message | None = None
    tool_results: list[ToolExecution] = field(default_factory=list)
    iterations: int = 0
    iteration_limit_reached: bool = False
    summary_lines: tuple[str, ...] = ()


class AgentRunner:
    """Runs prompts against a ConversationState.

    The runner holds no per-conversation state; the caller owns the
    ConversationState and serializes prompts per conversation.
    """

    def __init__(
        self,
        dispatcher: ToolDispatcher,
        provider_factory: ProviderFactory,
        settings: Settings,
    ) -> None:
        self._dispatcher = dispatcher
        self._providers = provider_factory
        self._settings = settings

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    def update_settings(self, settings: Settings) -> None:
        self._settings = settings

    async def run_prompt(
        self,
        conversation: ConversationState,
        prompt: str,
        cancel: CancelToken | None = None,
    ) -> TurnResult:
        conversation.add_user(prompt)
        result = TurnResult(status=TurnStatus.DONE)
        max_iterations = self._settings.max_iterations

        try:
            while True:
                self._check(cancel)
                view = conversation.optimize()
                result.summary_lines = view.summary_lines

                reply_message = await self._request(conversation, cancel)
                result.iterations += 1
                result.message = reply_message

                if not reply_message.tool_calls:
                    return result

                await self._execute_batch(conversation, reply_message.tool_calls, cancel, result)

                if result.iterations >= max_iterations:
                    logger.warning("Tool loop reached max_iterations=%d", max_iterations)
                    result.iteration_limit_reached = True
                    return result
        except TurnCancelled:
            logger.info("Turn cancelled after %d provider call(s)", result.iterations)
            result.status = TurnStatus.CANCELLED
            return result

    async def _request(self, conversation: ConversationState, cancel: CancelToken | None) -> Message:
        """Call the provider and append its reply. Failures become an error reply."""
        try:
            provider = self._providers.get()
            reply = await provider.send_chat(conversation.messages, self._dispatcher.definitions(), cancel)
        except TurnCancelled:
            raise
        except Exception as e:
            logger.exception("Provider call failed")
            return conversation.add_assistant(f"❌ {e}")

        message = reply.message
        return conversation.add_assistant(
            message.content,
            usage=reply.usage or message.usage,
            tool_calls=message.tool_calls,
        )

    async def _execute_batch(
        self,
        conversation: ConversationState,
        calls: tuple[ToolCall, ...],
        cancel: CancelToken | None,
        result: TurnResult,
    ) -> None:
        if self._settings.parallel_tool_calls and len(calls) > 1:
            self._check(cancel)
            executions = await asyncio.gather(*(self._execute(call) for call in calls))
            for execution in executions:
                self._record(conversation, execution, result)
            return

        for call in calls:
            self._check(cancel)
            self._record(conversation, await self._execute(call), result)

    async def _execute(self, call: ToolCall) -> ToolExecution:
        name = self._dispatcher.resolve(call.name)
        arguments = call.parsed_arguments()
        start_time = time.monotonic()
        outcome = await self._dispatcher.dispatch(name, arguments)
        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "Tool %s finished in %dms (success=%s)", name, duration_ms, outcome.success,
        )
        return ToolExecution(
            tool_name=name,
            call_id=call.id,
            arguments=arguments,
            outcome=outcome,
            duration_ms=duration_ms,
        )

    @staticmethod
    def _record(conversation: ConversationState, execution: ToolExecution, result: TurnResult) -> None:
        conversation.add_tool_result(
            format_tool_result(execution.tool_name, execution.outcome),
            execution.tool_name,
            execution.call_id,
        )
        result.tool_results.append(execution)

    @staticmethod
    def _check(cancel: CancelToken | None) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()
