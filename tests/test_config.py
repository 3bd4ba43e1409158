"""
Tests for settings and runtime configuration models
"""

import pytest
from pydantic import ValidationError

from skein.config import CompactionConfig, ExecutionConfig, QueueMode, SkeinSettings


def test_execution_config_defaults():
    """Test ExecutionConfig defaults."""
    config = ExecutionConfig()
    assert config.max_turns == 30
    assert config.max_parallel_tools == 8
    assert config.tool_timeout is None
    assert config.event_buffer_size == 64
    assert config.compaction.enabled is True


def test_execution_config_bounds():
    """Test ExecutionConfig rejects out-of-range values."""
    with pytest.raises(ValidationError):
        ExecutionConfig(max_turns=0)
    with pytest.raises(ValidationError):
        ExecutionConfig(max_parallel_tools=0)
    with pytest.raises(ValidationError):
        ExecutionConfig(tool_timeout=0)


def test_compaction_budget():
    config = CompactionConfig(context_window=1000, reserve_tokens=200, keep_recent_tokens=100)
    assert config.budget == 800


def test_keep_recent_clamped_to_budget():
    """Test keep_recent_tokens never exceeds the budget."""
    config = ExecutionConfig(
        compaction=CompactionConfig(context_window=1000, reserve_tokens=200, keep_recent_tokens=5000)
    )
    assert config.compaction.keep_recent_tokens == 800


def test_settings_from_env(monkeypatch):
    """Test SKEIN_ environment variables reach ExecutionConfig."""
    monkeypatch.setenv("SKEIN_MAX_TURNS", "5")
    monkeypatch.setenv("SKEIN_TOOL_TIMEOUT", "12.5")
    monkeypatch.setenv("SKEIN_CONTEXT_WINDOW", "4096")
    monkeypatch.setenv("SKEIN_RESERVE_TOKENS", "1024")
    monkeypatch.setenv("SKEIN_KEEP_RECENT_TOKENS", "512")

    s = SkeinSettings(_env_file=None)
    config = ExecutionConfig.from_settings(s)

    assert config.max_turns == 5
    assert config.tool_timeout == 12.5
    assert config.compaction.budget == 3072
    assert config.compaction.keep_recent_tokens == 512


def test_settings_reject_bad_log_level(monkeypatch):
    monkeypatch.setenv("SKEIN_LOG_LEVEL", "LOUD")
    with pytest.raises(ValidationError):
        SkeinSettings(_env_file=None)


def test_queue_modes_from_env(monkeypatch):
    """Test queue delivery modes default to one at a time and follow SKEIN_ variables"""
    assert ExecutionConfig().steering_mode == QueueMode.ONE_AT_A_TIME

    monkeypatch.setenv("SKEIN_STEERING_MODE", "all")
    config = ExecutionConfig.from_settings(SkeinSettings(_env_file=None))

    assert config.steering_mode == QueueMode.ALL
    assert config.follow_up_mode == QueueMode.ONE_AT_A_TIME
