"""
Event protocol for streaming agent execution.

This module defines the events a run publishes on its event stream. UIs,
print-mode consumers and RPC transports all receive the same sequence.

Ordering contract:
- Events arrive in the order the loop learned about them
- Exactly one terminal event (DONE or ERROR) ends every stream
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .models import Message, Usage
from .tools import ToolResult


class EventType(str, Enum):
    """Event types for run streaming"""

    # Streaming assembly of the assistant message
    TEXT_DELTA = "text_delta"
    REASONING_DELTA = "reasoning_delta"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_DELTA = "tool_call_delta"

    # Tool execution
    TOOL_EXECUTION_STARTED = "tool_execution_started"
    TOOL_CALL_COMPLETED = "tool_call_completed"

    # Persistence / accounting
    MESSAGE_COMPLETED = "message_completed"
    USAGE = "usage"

    # Terminal events
    ERROR = "error"
    DONE = "done"


TERMINAL_EVENT_TYPES = frozenset({EventType.ERROR, EventType.DONE})


class RunErrorKind(str, Enum):
    """Why a run ended with an ERROR event"""

    CANCELLED = "cancelled"
    TURN_LIMIT_EXCEEDED = "turn_limit_exceeded"
    PROVIDER_ERROR = "provider_error"
    CONTEXT_OVERFLOW = "context_overflow"
    SESSION_ERROR = "session_error"
    INTERNAL_ERROR = "internal_error"


class Event(BaseModel):
    """
    Unified event for run streaming.

    Which fields are set depends on `type`:
    - TEXT_DELTA / REASONING_DELTA: index, delta
    - TOOL_CALL_STARTED: index, call_id, tool_name
    - TOOL_CALL_DELTA: index, call_id, delta, arguments (best-effort preview)
    - TOOL_EXECUTION_STARTED: call_id, tool_name, arguments
    - TOOL_CALL_COMPLETED: call_id, tool_name, result
    - MESSAGE_COMPLETED: node_id, message
    - USAGE: usage
    - ERROR: error_kind, error
    - DONE: node_id of the final answer, data
    """

    type: EventType
    run_id: str
    turn: int = 0
    timestamp: datetime = Field(default_factory=datetime.now)

    # Streaming deltas
    index: int | None = None
    delta: str | None = None

    # Tool calls
    call_id: str | None = None
    tool_name: str | None = None
    arguments: dict[str, Any] | None = None
    result: ToolResult | None = None

    # Appended messages
    node_id: str | None = None
    message: Message | None = None

    # Accounting
    usage: Usage | None = None

    # Terminal
    error_kind: RunErrorKind | None = None
    error: str | None = None
    data: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_sse(self) -> str:
        """
        Convert to Server-Sent Events format.

        Returns:
            str: SSE-formatted string ready to send to client
        """
        data = self.model_dump(mode="json", exclude_none=True)
        return f"event: {self.type.value}\ndata: {json.dumps(data)}\n\n"


# ============================================================================
# Event Factory Functions
# ============================================================================


def create_text_delta_event(run_id: str, turn: int, delta: str, index: int = 0) -> Event:
    """Create a TEXT_DELTA event"""
    return Event(type=EventType.TEXT_DELTA, run_id=run_id, turn=turn, index=index, delta=delta)


def create_reasoning_delta_event(run_id: str, turn: int, delta: str, index: int = 0) -> Event:
    """Create a REASONING_DELTA event"""
    return Event(
        type=EventType.REASONING_DELTA, run_id=run_id, turn=turn, index=index, delta=delta
    )


def create_tool_call_started_event(
    run_id: str, turn: int, index: int, call_id: str | None, tool_name: str | None
) -> Event:
    """Create a TOOL_CALL_STARTED event"""
    return Event(
        type=EventType.TOOL_CALL_STARTED,
        run_id=run_id,
        turn=turn,
        index=index,
        call_id=call_id,
        tool_name=tool_name,
    )


def create_tool_call_delta_event(
    run_id: str,
    turn: int,
    index: int,
    call_id: str | None,
    delta: str,
    arguments: dict[str, Any] | None = None,
) -> Event:
    """Create a TOOL_CALL_DELTA event"""
    return Event(
        type=EventType.TOOL_CALL_DELTA,
        run_id=run_id,
        turn=turn,
        index=index,
        call_id=call_id,
        delta=delta,
        arguments=arguments,
    )


def create_tool_execution_started_event(
    run_id: str, turn: int, call_id: str, tool_name: str, arguments: dict[str, Any]
) -> Event:
    """Create a TOOL_EXECUTION_STARTED event"""
    return Event(
        type=EventType.TOOL_EXECUTION_STARTED,
        run_id=run_id,
        turn=turn,
        call_id=call_id,
        tool_name=tool_name,
        arguments=arguments,
    )


def create_tool_call_completed_event(run_id: str, turn: int, result: ToolResult) -> Event:
    """Create a TOOL_CALL_COMPLETED event"""
    return Event(
        type=EventType.TOOL_CALL_COMPLETED,
        run_id=run_id,
        turn=turn,
        call_id=result.tool_call_id,
        tool_name=result.tool_name,
        result=result,
    )


def create_message_completed_event(
    run_id: str, turn: int, node_id: str, message: Message
) -> Event:
    """Create a MESSAGE_COMPLETED event"""
    return Event(
        type=EventType.MESSAGE_COMPLETED,
        run_id=run_id,
        turn=turn,
        node_id=node_id,
        message=message,
    )


def create_usage_event(run_id: str, turn: int, usage: Usage) -> Event:
    """Create a USAGE event"""
    return Event(type=EventType.USAGE, run_id=run_id, turn=turn, usage=usage)


def create_error_event(
    run_id: str,
    turn: int,
    error_kind: RunErrorKind,
    error: str,
    data: dict[str, Any] | None = None,
) -> Event:
    """Create an ERROR event"""
    return Event(
        type=EventType.ERROR,
        run_id=run_id,
        turn=turn,
        error_kind=error_kind,
        error=error,
        data=data,
    )


def create_done_event(
    run_id: str,
    turn: int,
    node_id: str | None = None,
    data: dict[str, Any] | None = None,
) -> Event:
    """Create a DONE event"""
    return Event(type=EventType.DONE, run_id=run_id, turn=turn, node_id=node_id, data=data)


__all__ = [
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
]
