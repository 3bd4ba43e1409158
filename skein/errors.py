"""Exception hierarchy for skein."""

import re


class SkeinError(Exception):
    """Base exception for all skein errors."""

    pass


# ============================================================================
# Session integrity
# ============================================================================


class SessionError(SkeinError):
    """Base exception for session tree and session file errors."""

    pass


class UnknownParentError(SessionError):
    """Append referenced a parent node that is not in the tree."""

    def __init__(self, parent_id: str | None):
        self.parent_id = parent_id
        super().__init__(f"Unknown parent node: {parent_id}")


class UnknownNodeError(SessionError):
    """Referenced node is not in the tree."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Unknown node: {node_id}")


class CorruptLogError(SessionError):
    """Persisted session log contains a record that cannot be replayed."""

    def __init__(self, message: str, line_number: int | None = None):
        self.line_number = line_number
        if line_number is not None:
            message = f"{message} (line {line_number})"
        super().__init__(message)


class SessionNotFoundError(SessionError):
    """Session file does not exist."""

    pass


class SessionExistsError(SessionError):
    """Session file already exists."""

    pass


class InvalidSessionIdError(SessionError):
    """Session id contains characters outside [A-Za-z0-9_-]."""

    pass


class SessionBusyError(SessionError):
    """Another run already holds write access to the session."""

    pass


# ============================================================================
# Provider
# ============================================================================

# Phrases providers use when the prompt does not fit the context window
CONTEXT_OVERFLOW_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"prompt is too long",
        r"input is too long for requested model",
        r"exceeds the context window",
        r"input token count.*exceeds the maximum",
        r"maximum prompt length is \d+",
        r"reduce the length of the messages",
        r"maximum context length is \d+ tokens",
        r"exceeds the limit of \d+",
        r"exceeds the available context size",
        r"greater than the context length",
        r"context window exceeds limit",
        r"exceeded model token limit",
        r"context[_ ]length[_ ]exceeded",
        r"too many tokens",
        r"token limit exceeded",
    )
]


class ProviderError(SkeinError):
    """Unrecoverable failure reported by the model provider."""

    def __init__(self, message: str, cause: BaseException | None = None):
        self.cause = cause
        super().__init__(message)

    @property
    def is_context_overflow(self) -> bool:
        """Whether the provider rejected the request for exceeding its context window."""
        message = str(self)
        return any(p.search(message) for p in CONTEXT_OVERFLOW_PATTERNS)


# ============================================================================
# Streaming / cancellation
# ============================================================================


class StreamClosedError(SkeinError):
    """Event stream already terminated, or already has a reader."""

    pass


class ToolCancelledError(SkeinError):
    """Raised at a tool checkpoint once the run's cancellation signal fired."""

    def __init__(self, reason: str | None = None):
        self.reason = reason
        super().__init__(reason or "Tool execution cancelled")


class RunCancelledError(SkeinError):
    """Raised inside the agent loop when cancellation is observed mid-step."""

    def __init__(self, reason: str | None = None):
        self.reason = reason
        super().__init__(reason or "Run cancelled")


__all__ = [
    "SkeinError",
    "SessionError",
    "UnknownParentError",
    "UnknownNodeError",
    "CorruptLogError",
    "SessionNotFoundError",
    "SessionExistsError",
    "InvalidSessionIdError",
    "SessionBusyError",
    "ProviderError",
    "StreamClosedError",
    "ToolCancelledError",
    "RunCancelledError",
    "CONTEXT_OVERFLOW_PATTERNS",
]
