"""
Skein - execution core for a coding agent

Top-level exports for easy access to core functionality.
"""

# Domain models
from skein.domain import (
    Event,
    EventType,
    Message,
    MessageRole,
    RunErrorKind,
    ToolErrorKind,
    ToolResult,
    Usage,
)

# Providers
from skein.providers.llm import Model, StreamChunk, ToolCallFragment
from skein.providers.tools import BaseTool, ToolInvocation, ToolRegistry

# Session
from skein.session import InMemorySessionStore, JsonlSessionStore, Session, SessionManager

# Runtime
from skein.runtime import (
    AgentLoop,
    AgentRunner,
    CancellationSignal,
    EventStream,
    RunOutcome,
    SummaryCompactor,
)

# Config
from skein.config import CompactionConfig, ExecutionConfig, settings

__version__ = "0.1.0"

__all__ = [
    # Domain
    "Message",
    "MessageRole",
    "Usage",
    "ToolResult",
    "ToolErrorKind",
    "Event",
    "EventType",
    "RunErrorKind",
    # Providers
    "Model",
    "StreamChunk",
    "ToolCallFragment",
    "BaseTool",
    "ToolInvocation",
    "ToolRegistry",
    # Session
    "Session",
    "SessionManager",
    "InMemorySessionStore",
    "JsonlSessionStore",
    # Runtime
    "AgentLoop",
    "AgentRunner",
    "CancellationSignal",
    "EventStream",
    "RunOutcome",
    "SummaryCompactor",
    # Config
    "ExecutionConfig",
    "CompactionConfig",
    "settings",
]
