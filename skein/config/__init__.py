"""
Configuration module.

- SkeinSettings / settings: environment-driven global settings
- ExecutionConfig: per-run loop, tool and stream limits
- CompactionConfig: context budget and compaction thresholds
- QueueMode: delivery of queued steering and follow-up messages
"""

from skein.config.schema import CompactionConfig, ExecutionConfig, QueueMode
from skein.config.settings import SkeinSettings, settings

__all__ = [
    "SkeinSettings",
    "settings",
    "ExecutionConfig",
    "CompactionConfig",
    "QueueMode",
]
