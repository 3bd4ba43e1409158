"""
Tool contract and registry.
"""

from skein.providers.tools.base import BaseTool, ToolDefinition, ToolInvocation
from skein.providers.tools.registry import ToolRegistry

__all__ = ["BaseTool", "ToolDefinition", "ToolInvocation", "ToolRegistry"]
