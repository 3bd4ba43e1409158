"""
Core message models for skein.

This module contains the immutable value types a conversation is made of:
- ContentBlock variants: text, reasoning, tool_call, tool_result, unknown
- Usage: token accounting for one model turn
- Message: role + ordered content blocks + optional usage

Messages are frozen. A correction is a new node in the session tree,
never an edit of an existing message.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, field_validator


# ============================================================================
# Enums
# ============================================================================


class MessageRole(str, Enum):
    """Conversation roles"""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"


class ToolErrorKind(str, Enum):
    """Failure categories for a tool execution"""

    INVALID_ARGUMENTS = "invalid_arguments"
    EXECUTION_FAILED = "execution_failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


# ============================================================================
# Content blocks
# ============================================================================


class TextBlock(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ReasoningBlock(BaseModel):
    """Model reasoning ("thinking") content, kept for replay fidelity."""

    model_config = ConfigDict(frozen=True)

    type: Literal["reasoning"] = "reasoning"
    text: str
    signature: str | None = None


class ToolCallBlock(BaseModel):
    """
    A model-issued tool call.

    raw_arguments is only set when the streamed argument JSON could not be
    parsed into an object; the executor reports such calls as invalid.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    raw_arguments: str | None = None


class ToolResultBlock(BaseModel):
    """Outcome of one tool call, correlated by call_id."""

    model_config = ConfigDict(frozen=True)

    type: Literal["tool_result"] = "tool_result"
    call_id: str
    tool_name: str = ""
    output: str = ""
    is_error: bool = False
    error_kind: ToolErrorKind | None = None
    details: dict[str, Any] | None = None


class UnknownBlock(BaseModel):
    """
    Block of a type this version does not understand.

    Every field is retained and written back unchanged, so newer session
    files survive a round trip through an older reader.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    type: str


KNOWN_BLOCK_TYPES = frozenset({"text", "reasoning", "tool_call", "tool_result"})


def _block_tag(value: Any) -> str:
    if isinstance(value, dict):
        block_type = value.get("type")
    else:
        block_type = getattr(value, "type", None)
    return block_type if block_type in KNOWN_BLOCK_TYPES else "unknown"


ContentBlock = Annotated[
    Union[
        Annotated[TextBlock, Tag("text")],
        Annotated[ReasoningBlock, Tag("reasoning")],
        Annotated[ToolCallBlock, Tag("tool_call")],
        Annotated[ToolResultBlock, Tag("tool_result")],
        Annotated[UnknownBlock, Tag("unknown")],
    ],
    Discriminator(_block_tag),
]


# ============================================================================
# Usage
# ============================================================================


class Usage(BaseModel):
    """Token usage reported by the provider for one completion."""

    model_config = ConfigDict(frozen=True)

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_write_tokens
        )

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_write_tokens=self.cache_write_tokens + other.cache_write_tokens,
        )


# ============================================================================
# Message
# ============================================================================


class Message(BaseModel):
    """
    Payload of a session node.

    Examples:
        Message.user("Refactor utils.py")

        Message.assistant(
            [
                TextBlock(text="Reading the file first."),
                ToolCallBlock(id="call_1", name="read", arguments={"path": "utils.py"}),
            ],
            usage=Usage(input_tokens=120, output_tokens=30),
        )

        Message.tool_result("call_1", "read", "def helper(): ...")
    """

    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: tuple[ContentBlock, ...] = ()
    usage: Usage | None = None
    stop_reason: str | None = None

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            return (TextBlock(text=value),)
        return value

    # --- Constructors ---

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(role=MessageRole.SYSTEM, content=(TextBlock(text=text),))

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role=MessageRole.USER, content=(TextBlock(text=text),))

    @classmethod
    def assistant(
        cls,
        content: "list[ContentBlock] | tuple[ContentBlock, ...] | str",
        usage: Usage | None = None,
        stop_reason: str | None = None,
    ) -> "Message":
        return cls(
            role=MessageRole.ASSISTANT,
            content=content,
            usage=usage,
            stop_reason=stop_reason,
        )

    @classmethod
    def tool_result(
        cls,
        call_id: str,
        tool_name: str,
        output: str,
        is_error: bool = False,
        error_kind: ToolErrorKind | None = None,
        details: dict[str, Any] | None = None,
    ) -> "Message":
        return cls(
            role=MessageRole.TOOL_RESULT,
            content=(
                ToolResultBlock(
                    call_id=call_id,
                    tool_name=tool_name,
                    output=output,
                    is_error=is_error,
                    error_kind=error_kind,
                    details=details,
                ),
            ),
        )

    # --- Accessors ---

    @property
    def text(self) -> str:
        """Concatenated text blocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def reasoning(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, ReasoningBlock))

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.content if isinstance(b, ToolCallBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    def has_tool_calls(self) -> bool:
        """Check if this is an assistant message that requests tools"""
        return self.role == MessageRole.ASSISTANT and bool(self.tool_calls)

    def is_tool_result(self) -> bool:
        return self.role == MessageRole.TOOL_RESULT


__all__ = [
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
]
