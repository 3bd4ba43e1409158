"""
Tool Registry - name to tool instance mapping.

The agent loop resolves every tool_call block through a registry. A name that
is not registered is reported back to the model as invalid arguments rather
than failing the run.
"""

from typing import Iterable, Iterator

from skein.providers.tools.base import BaseTool, ToolDefinition
from skein.utils.logging import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """
    Registry of tool instances available to a run.

    Supports:
    - Registering and unregistering tools by name
    - Lookup for dispatch
    - Tool definitions for the provider request
    """

    def __init__(self, tools: Iterable[BaseTool] | None = None) -> None:
        self._tools: dict[str, BaseTool] = {}
        for tool in tools or ():
            self.register(tool)

    def register(self, tool: BaseTool) -> None:
        """Register a tool instance under its name, replacing any previous one."""
        if tool.name in self._tools:
            logger.warning("tool_overridden", tool_name=tool.name)
        self._tools[tool.name] = tool
        logger.debug("tool_registered", tool_name=tool.name)

    def unregister(self, name: str) -> bool:
        """Unregister a tool. Returns False if it was not registered."""
        if self._tools.pop(name, None) is None:
            return False
        logger.debug("tool_unregistered", tool_name=name)
        return True

    def get(self, name: str) -> BaseTool | None:
        """Get tool by name, or None if not registered."""
        return self._tools.get(name)

    def is_registered(self, name: str) -> bool:
        return name in self._tools

    def list_available(self) -> list[str]:
        """List all registered tool names."""
        return sorted(self._tools)

    def definitions(self) -> list[ToolDefinition]:
        """Tool definitions to declare to the model, in registration order."""
        return [tool.get_definition() for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[BaseTool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)


__all__ = ["ToolRegistry"]
