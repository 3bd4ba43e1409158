"""
Model abstraction layer - Pure LLM Interface

Responsibilities:
- Define the provider capability the agent loop consumes
- Standardize streaming output to StreamChunk

Does NOT handle:
- Tool Loop logic
- Event wrapping
- Vendor request translation, auth or SSE parsing (adapter territory)
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from skein.domain import Message, Usage

if TYPE_CHECKING:
    from skein.providers.tools import ToolDefinition


class ToolCallFragment(BaseModel):
    """
    Piece of a streamed tool call.

    Fragments sharing an index belong to the same call. The first fragment
    for an index usually carries id and name; later ones carry more of the
    arguments JSON.
    """

    index: int = 0
    id: str | None = None
    name: str | None = None
    arguments: str = ""


class StreamChunk(BaseModel):
    """
    Minimal unit of LLM streaming output.

    All Model implementations must standardize their vendor-specific
    streaming output to this format. Any granularity is valid, including a
    single chunk carrying a whole turn.
    """

    model_config = ConfigDict(frozen=False)

    content: str | None = Field(default=None, description="Text content delta")
    reasoning_content: str | None = Field(
        default=None, description="Reasoning content delta (e.g., thinking mode)"
    )
    reasoning_signature: str | None = Field(
        default=None, description="Opaque signature for the reasoning block"
    )
    tool_calls: list[ToolCallFragment] | None = Field(
        default=None, description="Tool call fragments keyed by index"
    )
    usage: Usage | None = Field(default=None, description="Token usage for the turn")
    finish_reason: str | None = Field(
        default=None, description="Finish reason: stop, tool_calls, length, etc."
    )


class Model(BaseModel, ABC):
    """
    Unified Model abstract base class.

    Provider adapters inherit this class and implement arun_stream(). Failures
    are raised as ProviderError; the loop does not retry.
    """

    id: str = Field(description="Model identifier, format: provider/model-name")
    name: str = Field(description="Model name")

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1)

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="allow")

    @abstractmethod
    def arun_stream(
        self,
        messages: list[Message],
        tools: "list[ToolDefinition] | None" = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Unified streaming interface.

        Implementations are async generators.

        Args:
            messages: Context, root to leaf (possibly compacted)
            tools: Tool definitions declared to the model

        Yields:
            StreamChunk: Streaming output chunk
        """


__all__ = ["Model", "StreamChunk", "ToolCallFragment"]
