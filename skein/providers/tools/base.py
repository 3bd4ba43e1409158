"""Base abstractions for tools within the skein stack."""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel

from skein.domain import ToolErrorKind, ToolResult

if TYPE_CHECKING:
    from skein.runtime.control import CancellationSignal


@dataclass(frozen=True)
class ToolInvocation:
    """
    One model-issued tool call, ready to execute.

    call_id correlates it with the originating tool_call block; signal is the
    run's cancellation signal.
    """

    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    signal: "CancellationSignal | None" = None

    @property
    def is_cancelled(self) -> bool:
        return self.signal is not None and self.signal.is_cancelled

    def raise_if_cancelled(self) -> None:
        """Checkpoint helper for tools."""
        if self.signal is not None:
            self.signal.raise_if_cancelled()


class ToolDefinition(BaseModel):
    """Tool definition for LLM-facing registration."""

    name: str
    description: str
    parameters: dict[str, Any]
    is_concurrency_safe: bool = True
    timeout_seconds: float | None = None


class BaseTool(ABC):
    """
    Common interface that every concrete tool must implement.

    Tools check `invocation.raise_if_cancelled()` at each safe checkpoint,
    release whatever they hold on every exit path and return a ToolResult.
    Exceptions that escape `execute` are converted by the ToolExecutor.
    """

    # Per-tool execution timeout (seconds); None means no timeout
    timeout_seconds: float | None = None

    def __init__(self) -> None:
        self.name = self.get_name()
        self.description = self.get_description()
        self._validator: Draft7Validator | None = None

    @abstractmethod
    def get_name(self) -> str:
        """Return the tool name."""

    @abstractmethod
    def get_description(self) -> str:
        """Return the tool description used for prompting."""

    @abstractmethod
    def get_parameters(self) -> dict[str, Any]:
        """Return the JSON schema describing `execute` arguments."""

    def is_concurrency_safe(self) -> bool:
        """Whether the tool can run alongside other tools of the same turn."""
        return True

    @abstractmethod
    async def execute(self, invocation: ToolInvocation) -> ToolResult:
        """
        Execute the tool and return ToolResult directly.

        Args:
            invocation: Call id, validated arguments and cancellation signal

        Returns:
            ToolResult: Success or failure for this call
        """

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.get_parameters()

    def validate_arguments(self, arguments: dict[str, Any]) -> list[str]:
        """
        Validate arguments against the tool's JSON schema.

        Returns:
            list[str]: Human-readable problems; empty when the arguments are valid
        """
        if self._validator is None:
            schema = self.get_parameters()
            try:
                Draft7Validator.check_schema(schema)
            except SchemaError as e:
                return [f"Tool '{self.name}' has an invalid schema: {e.message}"]
            self._validator = Draft7Validator(schema)

        problems = []
        for error in sorted(self._validator.iter_errors(arguments), key=lambda e: list(e.path)):
            location = ".".join(str(p) for p in error.absolute_path) or "<root>"
            problems.append(f"{location}: {error.message}")
        return problems

    def get_definition(self) -> ToolDefinition:
        """Construct a `ToolDefinition` for LLM-facing registration."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.get_parameters(),
            is_concurrency_safe=self.is_concurrency_safe(),
            timeout_seconds=self.timeout_seconds,
        )

    def to_openai_schema(self) -> dict:
        """Convert to OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.get_parameters(),
            },
        }

    def _create_success_result(
        self,
        invocation: ToolInvocation,
        content: str,
        start_time: float,
        **kwargs: Any,
    ) -> ToolResult:
        """Helper for tools returning a successful result."""
        return ToolResult.success(
            tool_name=self.name,
            tool_call_id=invocation.call_id,
            content=content,
            start_time=start_time,
            input_args=invocation.arguments,
            **kwargs,
        )

    def _create_error_result(
        self,
        invocation: ToolInvocation,
        error: str,
        start_time: float,
    ) -> ToolResult:
        """Helper for tools reporting their own execution failure."""
        return ToolResult.failure(
            tool_name=self.name,
            tool_call_id=invocation.call_id,
            error=error,
            error_kind=ToolErrorKind.EXECUTION_FAILED,
            start_time=start_time,
            input_args=invocation.arguments,
        )

    def _create_cancelled_result(
        self,
        invocation: ToolInvocation,
        start_time: float | None = None,
    ) -> ToolResult:
        """Helper for tools that observed cancellation at a checkpoint."""
        reason = invocation.signal.reason if invocation.signal else None
        return ToolResult.failure(
            tool_name=self.name,
            tool_call_id=invocation.call_id,
            error=reason or "Operation was cancelled",
            error_kind=ToolErrorKind.CANCELLED,
            start_time=start_time if start_time is not None else time.time(),
            input_args=invocation.arguments,
        )


__all__ = ["ToolInvocation", "ToolDefinition", "BaseTool"]
