"""
Tool execution result model.
"""

import time
from typing import Any

from pydantic import BaseModel, Field

from .models import Message, ToolErrorKind


class ToolResult(BaseModel):
    """
    Result of a tool execution.

    Success carries `content` (what the model reads) plus the raw `output`
    and optional `details` (diffs, line ranges, ...). Failure carries
    `error` and an `error_kind`.
    """

    tool_name: str
    tool_call_id: str
    input_args: dict[str, Any] = Field(default_factory=dict)
    content: str  # Result for LLM
    output: Any = None  # Raw execution result
    details: dict[str, Any] | None = None
    truncated: bool = False
    error: str | None = None
    error_kind: ToolErrorKind | None = None
    start_time: float
    end_time: float
    duration: float
    is_success: bool = True

    @classmethod
    def success(
        cls,
        tool_name: str,
        tool_call_id: str,
        content: str,
        start_time: float,
        *,
        input_args: dict[str, Any] | None = None,
        output: Any = None,
        details: dict[str, Any] | None = None,
        truncated: bool = False,
    ) -> "ToolResult":
        end_time = time.time()
        return cls(
            tool_name=tool_name,
            tool_call_id=tool_call_id,
            input_args=input_args or {},
            content=content,
            output=output,
            details=details,
            truncated=truncated,
            start_time=start_time,
            end_time=end_time,
            duration=end_time - start_time,
            is_success=True,
        )

    @classmethod
    def failure(
        cls,
        tool_name: str,
        tool_call_id: str,
        error: str,
        error_kind: ToolErrorKind,
        start_time: float,
        *,
        input_args: dict[str, Any] | None = None,
    ) -> "ToolResult":
        end_time = time.time()
        return cls(
            tool_name=tool_name,
            tool_call_id=tool_call_id,
            input_args=input_args or {},
            content=f"Error: {error}",
            error=error,
            error_kind=error_kind,
            start_time=start_time,
            end_time=end_time,
            duration=end_time - start_time,
            is_success=False,
        )

    @property
    def is_cancelled(self) -> bool:
        return self.error_kind == ToolErrorKind.CANCELLED

    def to_message(self) -> Message:
        """Convert to the tool_result message appended to the session."""
        details = dict(self.details) if self.details else None
        if self.truncated:
            details = {**(details or {}), "truncated": True}
        return Message.tool_result(
            call_id=self.tool_call_id,
            tool_name=self.tool_name,
            output=self.content,
            is_error=not self.is_success,
            error_kind=self.error_kind,
            details=details,
        )


__all__ = ["ToolResult"]
