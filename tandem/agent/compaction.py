"""Conversation compaction -- redundant tool-call collapsing and rolling summaries.

Two mechanisms, applied in order before every provider dispatch:
  1. Collapsing: repeated identical read-only tool calls keep only
     their most recent occurrences (assistant turn + tool result).
  2. Summarization: once the transcript grows past a length threshold,
     or the last reported token usage crosses a force threshold, the
     older head is folded into bullet lines inside a single synthetic
     assistant message and only the recent tail stays verbatim.

No LLM calls are made here; everything is synchronous and in-memory.
The compactor keeps its accumulated bullets per conversation so that
overlapping passes never emit the same line twice.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from tandem.agent.models import Message, Role, ToolCall, Transcript

logger = logging.getLogger(__name__)

BULLET = "• "

# Tool results whose bodies are bulk data rather than intent
_READ_RESULT = re.compile(r"Tool result for read_file:.*", re.DOTALL)
_READ_PLACEHOLDER = "Tool result for read_file: ..."

# Tools whose arguments carry whole file bodies
_BULKY_ARGUMENT_TOOLS = frozenset({"write_file", "edit_file"})
_BULKY_ARGUMENT_LIMIT = 200


@dataclass(frozen=True)
class CompactorOptions:
    enabled: bool = True
    actions: frozenset[str] = frozenset({"read_file"})
    max_instances: int = 1
    summary_enabled: bool = True
    summary_threshold: int = 40
    summary_retention: int = 35
    summary_prefix: str = "Context summary (auto-generated):"
    summary_max_line_length: int = 300
    summary_token_threshold: int = 0  # 0 disables the force trigger


@dataclass
class CompactionResult:
    optimized: bool
    messages: Transcript
    removed: int = 0
    summary_updated: bool = False
    summary_lines: int = 0


@dataclass
class _SummaryPass:
    updated: bool
    messages: Transcript = field(default_factory=tuple)


class ContextCompactor:
    """Collapses redundant tool reads and folds old turns into a rolling summary.

    State (summary lines + their fingerprints) belongs to exactly one
    conversation. reset() clears it; optimize() rehydrates it from an
    embedded summary message when the transcript already carries one.
    """

    def __init__(self, options: CompactorOptions | None = None) -> None:
        self._options = options or CompactorOptions()
        self._summary_lines: list[str] = []
        self._summary_hashes: set[str] = set()
        self._forced_by: Message | None = None

    @property
    def options(self) -> CompactorOptions:
        return self._options

    @property
    def summary_lines(self) -> tuple[str, ...]:
        return tuple(self._summary_lines)

    @property
    def summary_hashes(self) -> frozenset[str]:
        return frozenset(self._summary_hashes)

    def reset(self) -> None:
        self._summary_lines = []
        self._summary_hashes = set()
        self._forced_by = None

    def update_options(self, **changes: Any) -> None:
        """Replace individual options; unknown names raise TypeError."""
        if "actions" in changes:
            changes["actions"] = frozenset(changes["actions"])
        self._options = dataclasses.replace(self._options, **changes)

    def is_summary_message(self, message: Message) -> bool:
        return message.role == Role.ASSISTANT and message.content.startswith(
            self._options.summary_prefix
        )

    def optimize(self, messages: Sequence[Message]) -> CompactionResult:
        """Run both mechanisms and report what changed. Never raises."""
        messages = tuple(messages)
        self._hydrate(messages)

        if not self._options.enabled or len(messages) <= 2:
            return CompactionResult(
                optimized=False,
                messages=messages,
                summary_lines=len(self._summary_lines),
            )

        filtered = self._collapse_redundant(messages)
        removed = len(messages) - len(filtered)

        summary_updated = False
        result = filtered
        if self._options.summary_enabled:
            force = self._should_force_by_tokens(filtered)
            summary = self._apply_summary(filtered, force)
            if force:
                self._forced_by = self._last_usage_message(filtered)
            summary_updated = summary.updated
            result = summary.messages

        optimized = removed > 0 or result != filtered
        if optimized:
            logger.info(
                "Compacted transcript: %d -> %d messages (collapsed=%d, "
                "summary_updated=%s, summary_lines=%d)",
                len(messages), len(result), removed,
                summary_updated, len(self._summary_lines),
            )

        return CompactionResult(
            optimized=optimized,
            messages=result,
            removed=removed,
            summary_updated=summary_updated,
            summary_lines=len(self._summary_lines),
        )

    # ------------------------------------------------------------------
    # Redundant tool-call collapsing
    # ------------------------------------------------------------------

    def _collapse_redundant(self, messages: Transcript) -> Transcript:
        """Drop all but the newest max_instances identical optimizable calls.

        Only assistant turns requesting exactly one call are considered.
        Each dropped turn takes the tool result right after it along.
        """
        occurrences: dict[str, list[int]] = {}
        for index, message in enumerate(messages):
            if message.role != Role.ASSISTANT or len(message.tool_calls) != 1:
                continue
            call = message.tool_calls[0]
            if call.name not in self._options.actions:
                continue
            occurrences.setdefault(call.signature(), []).append(index)

        keep = max(0, self._options.max_instances)
        stale: set[int] = set()
        for indices in occurrences.values():
            if len(indices) <= keep:
                continue
            for index in indices[: len(indices) - keep]:
                stale.add(index)
                following = index + 1
                if following < len(messages) and messages[following].role == Role.TOOL:
                    stale.add(following)

        if not stale:
            return messages
        return tuple(m for i, m in enumerate(messages) if i not in stale)

    # ------------------------------------------------------------------
    # Rolling summarization
    # ------------------------------------------------------------------

    def _should_force_by_tokens(self, messages: Transcript) -> bool:
        """True when the newest usage report crosses the token threshold.

        A usage report forces at most one pass; later passes wait for a
        newer report.
        """
        threshold = self._options.summary_token_threshold
        if threshold <= 0:
            return False
        latest = self._last_usage_message(messages)
        if latest is None or latest == self._forced_by:
            return False
        return latest.usage.effective_total >= threshold

    @staticmethod
    def _last_usage_message(messages: Transcript) -> Message | None:
        for message in reversed(messages):
            if message.usage is not None and message.usage.effective_total > 0:
                return message
        return None

    def find_cut_point(self, messages: Sequence[Message], force: bool = False) -> int:
        """Index where the verbatim tail starts.

        The boundary never lands between an assistant tool-call turn and
        its results: it walks back over tool turns, and one step further
        when the turn before it still has pending tool calls. A forced
        pass with a degenerate boundary falls back to a midpoint split
        that keeps a trailing call batch and the newest user turn in the
        tail. A result of 1 or less means there is nothing to fold.
        """
        count = len(messages)
        start = max(0, count - max(0, self._options.summary_retention))

        if start > 0:
            while 0 < start < count and messages[start].role == Role.TOOL:
                start -= 1
            previous = messages[start - 1] if start > 0 else None
            if previous is not None and previous.has_tool_calls:
                start -= 1

        if force and start <= 1 and count > 2:
            start = min(max(2, count // 2), count - 1)
            # Move forward so a call and its results land in the head together
            while start < count and messages[start].role == Role.TOOL:
                start += 1
            if start == count:
                # Trailing batch: back to the turn that issued it
                start -= 1
                while start > 0 and messages[start].role == Role.TOOL:
                    start -= 1
            last_user = max(
                (i for i, m in enumerate(messages) if m.role == Role.USER),
                default=start,
            )
            start = min(start, last_user)

        return start

    def _apply_summary(self, messages: Transcript, force: bool) -> _SummaryPass:
        if not force and len(messages) - 1 <= self._options.summary_threshold:
            return _SummaryPass(updated=False, messages=messages)

        start = self.find_cut_point(messages, force)
        if start <= 1:
            return _SummaryPass(updated=False, messages=messages)
        head, tail = messages[:start], messages[start:]

        new_lines: list[str] = []
        for entry in head:
            bullet = self._render_bullet(entry)
            if bullet is None:
                continue
            fingerprint = self.fingerprint(bullet)
            if fingerprint in self._summary_hashes:
                continue
            self._summary_hashes.add(fingerprint)
            new_lines.append(bullet)

        if not new_lines:
            if not self._summary_lines:
                return _SummaryPass(updated=False, messages=messages)
            return _SummaryPass(updated=False, messages=self._merge(messages, tail))

        self._summary_lines.extend(new_lines)
        return _SummaryPass(updated=True, messages=self._merge(messages, tail))

    def _merge(self, messages: Transcript, tail: Transcript) -> Transcript:
        summary = Message.assistant(self._format_summary())
        remaining = tuple(
            m for m in tail
            if m.role != Role.SYSTEM and not self.is_summary_message(m)
        )
        return (messages[0], summary, *remaining)

    def _render_bullet(self, message: Message) -> str | None:
        """Render one head turn as a summary bullet, or None to skip it."""
        if message.role == Role.SYSTEM or self.is_summary_message(message):
            return None

        label = message.role.value
        if message.role == Role.TOOL and message.name:
            label = f"tool ({message.name})"

        content = " ".join(message.content.split())

        if message.role == Role.ASSISTANT and message.tool_calls:
            calls = "".join(
                f"\nCall Tool {call.name} : {self._render_arguments(call)}"
                for call in message.tool_calls
            )
            content = f"{content}{calls}" if content else calls.lstrip("\n")

        if not content:
            return None

        if message.role == Role.TOOL and message.name == "read_file":
            content = _READ_RESULT.sub(_READ_PLACEHOLDER, content)

        return self._truncate(f"{BULLET}{label}: {content}")

    @staticmethod
    def _render_arguments(call: ToolCall) -> str:
        rendered = " ".join(call.arguments.split()) or "{}"
        if call.name in _BULKY_ARGUMENT_TOOLS and len(rendered) > _BULKY_ARGUMENT_LIMIT:
            return rendered[: _BULKY_ARGUMENT_LIMIT - 3] + "..."
        return rendered

    def _truncate(self, value: str) -> str:
        limit = self._options.summary_max_line_length
        if len(value) <= limit:
            return value
        return value[: max(0, limit - 3)] + "..."

    @staticmethod
    def fingerprint(value: str) -> str:
        return hashlib.blake2b(value.encode("utf-8"), digest_size=8).hexdigest()

    def _format_summary(self) -> str:
        prefix = self._options.summary_prefix
        header = prefix if prefix.endswith(":") else f"{prefix}:"
        return "\n".join([header, *self._summary_lines])

    # ------------------------------------------------------------------
    # Rehydration
    # ------------------------------------------------------------------

    def _hydrate(self, messages: Transcript) -> None:
        """Restore summary state from an embedded summary message, once."""
        if self._summary_lines:
            return
        candidate = next((m for m in messages if self.is_summary_message(m)), None)
        if candidate is None:
            return

        _, _, body = candidate.content.partition("\n")
        lines = self.split_bullets(body)
        if not lines:
            return
        self._summary_lines = lines
        self._summary_hashes = {self.fingerprint(line) for line in lines}
        logger.debug("Rehydrated %d summary lines", len(lines))

    @staticmethod
    def split_bullets(body: str) -> list[str]:
        """Split summary text into bullets. Lines not starting a bullet continue the previous one."""
        bullets: list[str] = []
        for line in body.split("\n"):
            if not line.strip():
                continue
            if line.startswith(BULLET) or not bullets:
                bullets.append(line)
            else:
                bullets[-1] = f"{bullets[-1]}\n{line}"
        return bullets
