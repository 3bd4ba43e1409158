"""
Run states and RunOutcome.

This module defines:
- LoopState: states of the agent loop state machine
- RunOutcome: what a run returns once its stream is terminated
"""

from dataclasses import dataclass, field
from enum import Enum

from skein.domain import RunErrorKind, Usage


class LoopState(str, Enum):
    """Agent loop states"""

    IDLE = "idle"
    REQUESTING_COMPLETION = "requesting_completion"
    STREAMING_RESPONSE = "streaming_response"
    EXECUTING_TOOLS = "executing_tools"
    APPENDING = "appending"

    # Terminal states
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (LoopState.DONE, LoopState.FAILED, LoopState.CANCELLED)


@dataclass
class RunOutcome:
    """
    Result of AgentLoop.run().

    Mirrors the terminal event written to the stream.
    """

    run_id: str
    session_id: str | None = None
    state: LoopState = LoopState.IDLE
    turns: int = 0
    appended_node_ids: list[str] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)

    # Final answer (state == DONE)
    final_text: str | None = None
    final_node_id: str | None = None

    # Failure / cancellation
    error_kind: RunErrorKind | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == LoopState.DONE


__all__ = ["LoopState", "RunOutcome"]
