"""
Runtime module - agent execution.

This module contains:
- AgentLoop: LLM ↔ Tool loop over a session tree
- AgentRunner: front door owning the signal and stream of each run
- ToolExecutor: validated, bounded, cancellable tool execution
- EventStream: ordered event channel for one run
- CancellationSignal: one-way cooperative cancellation
- MessageQueue: steering and follow-up messages waiting to enter a run
- Compaction and context building
"""

from skein.runtime.compaction import Compactor, SummaryCompactor
from skein.runtime.context import (
    build_context,
    get_context_summary,
    pending_tool_calls,
    repair_orphaned_tool_calls,
    validate_context,
)
from skein.runtime.control import CancellationSignal, race_cancellation
from skein.runtime.executor import AgentLoop, MessageAssembler
from skein.runtime.protocol import LoopState, RunOutcome
from skein.runtime.runner import AgentRunner
from skein.runtime.steering import SKIPPED_FOR_STEERING, MessageQueue
from skein.runtime.tool_executor import ToolExecutor
from skein.runtime.wire import EventStream, coalesce_text_deltas

__all__ = [
    "AgentLoop",
    "AgentRunner",
    "MessageAssembler",
    "LoopState",
    "RunOutcome",
    "ToolExecutor",
    "EventStream",
    "coalesce_text_deltas",
    "CancellationSignal",
    "race_cancellation",
    "Compactor",
    "SummaryCompactor",
    "build_context",
    "validate_context",
    "get_context_summary",
    "pending_tool_calls",
    "repair_orphaned_tool_calls",
    "MessageQueue",
    "SKIPPED_FOR_STEERING",
]
