"""Agent core -- transcript model, compaction and tool dispatch.

The runner (tandem.agent.runner) and the builtin workspace tools
(tandem.agent.builtin_tools) depend on Settings and are imported
from their own modules.
"""

from tandem.agent.cancellation import CancelToken, TurnCancelled
from tandem.agent.compaction import CompactionResult, CompactorOptions, ContextCompactor
from tandem.agent.conversation import ConversationState, ConversationView
from tandem.agent.models import (
    Message,
    ProviderReply,
    Role,
    Session,
    SessionSummary,
    ToolCall,
    ToolDefinition,
    Transcript,
    Usage,
    validate_transcript,
)
from tandem.agent.tools import ToolDispatcher, ToolOutcome, format_tool_result

__all__ = [
    "CancelToken",
    "TurnCancelled",
    # Compaction
    "CompactionResult",
    "CompactorOptions",
    "ContextCompactor",
    # Conversation
    "ConversationState",
    "ConversationView",
    # Models
    "Message",
    "ProviderReply",
    "Role",
    "Session",
    "SessionSummary",
    "ToolCall",
    "ToolDefinition",
    "Transcript",
    "Usage",
    "validate_transcript",
    # Tools
    "ToolDispatcher",
    "ToolOutcome",
    "format_tool_result",
]
