"""
Provider capability consumed by the agent loop.
"""

from skein.providers.llm.base import Model, StreamChunk, ToolCallFragment

__all__ = ["Model", "StreamChunk", "ToolCallFragment"]
