"""Tool registry for discovering and managing available tools."""

from __future__ import annotations

from streamchat.ai.tools.base import Tool
from streamchat.log import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """Registry of all available tools."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool
        logger.info("tool_registered", tool_name=tool.name)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_tools_by_names(self, names: list[str]) -> list[Tool]:
        """Get a subset of tools by name list, skipping unknown names."""
        missing = [n for n in names if n not in self._tools]
        if missing:
            logger.warning("tools_not_registered", names=missing)
        return [self._tools[n] for n in names if n in self._tools]

    def all_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def discover_and_register(self) -> None:
        """Import and register all built-in tools."""
        from streamchat.ai.tools.clock import CurrentTimeTool

        self.register(CurrentTimeTool())
