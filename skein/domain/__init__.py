"""
Domain layer - core value types.

- models: Message, content blocks, Usage
- tools: ToolResult
- events: Event protocol for run streaming
- adapters: Format conversions for provider adapters
"""

from .adapters import MessageAdapter
from .events import (
    TERMINAL_EVENT_TYPES,
    Event,
    EventType,
    RunErrorKind,
    create_done_event,
    create_error_event,
    create_message_completed_event,
    create_reasoning_delta_event,
    create_text_delta_event,
    create_tool_call_completed_event,
    create_tool_call_delta_event,
    create_tool_call_started_event,
    create_tool_execution_started_event,
    create_usage_event,
)
from .models import (
    KNOWN_BLOCK_TYPES,
    ContentBlock,
    Message,
    MessageRole,
    ReasoningBlock,
    TextBlock,
    ToolCallBlock,
    ToolErrorKind,
    ToolResultBlock,
    UnknownBlock,
    Usage,
)
from .tools import ToolResult

__all__ = [
    # Models
    "MessageRole",
    "ToolErrorKind",
    "TextBlock",
    "ReasoningBlock",
    "ToolCallBlock",
    "ToolResultBlock",
    "UnknownBlock",
    "ContentBlock",
    "KNOWN_BLOCK_TYPES",
    "Usage",
    "Message",
    "ToolResult",
    # Events
    "Event",
    "EventType",
    "RunErrorKind",
    "TERMINAL_EVENT_TYPES",
    "create_text_delta_event",
    "create_reasoning_delta_event",
    "create_tool_call_started_event",
    "create_tool_call_delta_event",
    "create_tool_execution_started_event",
    "create_tool_call_completed_event",
    "create_message_completed_event",
    "create_usage_event",
    "create_error_event",
    "create_done_event",
    # Adapters
    "MessageAdapter",
]
