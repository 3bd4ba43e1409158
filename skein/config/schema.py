"""
Runtime configuration models.
"""

from enum import Enum

from pydantic import BaseModel, Field, model_validator

from skein.config.settings import SkeinSettings, settings as default_settings


class QueueMode(str, Enum):
    """How many queued user messages are delivered at each delivery point"""

    ALL = "all"
    ONE_AT_A_TIME = "one_at_a_time"


class CompactionConfig(BaseModel):
    """
    Context compaction configuration.

    Compaction triggers when the estimated context exceeds
    context_window - reserve_tokens.
    """

    enabled: bool = Field(default=True, description="Enable automatic compaction")
    context_window: int = Field(default=128_000, ge=1, description="Model context window (tokens)")
    reserve_tokens: int = Field(
        default=16_384, ge=0, description="Tokens reserved for the model's response"
    )
    keep_recent_tokens: int = Field(
        default=20_000, ge=1, description="Recent context kept verbatim after compaction"
    )

    @property
    def budget(self) -> int:
        """Token budget for the context sent to the model."""
        return max(1, self.context_window - self.reserve_tokens)

    @classmethod
    def from_settings(cls, s: SkeinSettings | None = None) -> "CompactionConfig":
        s = s or default_settings
        return cls(
            enabled=s.compaction_enabled,
            context_window=s.context_window,
            reserve_tokens=s.reserve_tokens,
            keep_recent_tokens=s.keep_recent_tokens,
        )


class ExecutionConfig(BaseModel):
    """
    Runtime execution configuration.
    """

    # Loop configuration
    max_turns: int = Field(default=30, ge=1, description="Maximum model completions per run")

    # Tool execution
    max_parallel_tools: int = Field(default=8, ge=1, description="Maximum concurrent tools")
    tool_timeout: float | None = Field(
        default=None, gt=0, description="Tool execution timeout (seconds), overrides tool default"
    )
    cancel_grace_period: float = Field(
        default=2.0,
        ge=0,
        description="Seconds a tool may run after cancellation before its task is cancelled",
    )

    # Event stream
    event_buffer_size: int = Field(
        default=64, ge=1, description="Events buffered before the producer suspends"
    )

    # Queued user messages
    steering_mode: QueueMode = Field(
        default=QueueMode.ONE_AT_A_TIME, description="Delivery of steering messages"
    )
    follow_up_mode: QueueMode = Field(
        default=QueueMode.ONE_AT_A_TIME, description="Delivery of follow-up messages"
    )

    # Context
    system_prompt: str | None = Field(
        default=None, description="System prompt used when the session has no system root"
    )
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)

    @model_validator(mode="after")
    def _check_compaction(self) -> "ExecutionConfig":
        if self.compaction.keep_recent_tokens > self.compaction.budget:
            self.compaction.keep_recent_tokens = self.compaction.budget
        return self

    @classmethod
    def from_settings(cls, s: SkeinSettings | None = None) -> "ExecutionConfig":
        """Build an ExecutionConfig from environment settings."""
        s = s or default_settings
        return cls(
            max_turns=s.max_turns,
            max_parallel_tools=s.max_parallel_tools,
            tool_timeout=s.tool_timeout,
            cancel_grace_period=s.cancel_grace_period,
            event_buffer_size=s.event_buffer_size,
            steering_mode=QueueMode(s.steering_mode),
            follow_up_mode=QueueMode(s.follow_up_mode),
            compaction=CompactionConfig.from_settings(s),
        )


__all__ = ["ExecutionConfig", "CompactionConfig", "QueueMode"]
