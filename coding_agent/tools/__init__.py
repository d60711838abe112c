"""Tools package for Coding Agent."""

from pathlib import Path

from coding_agent.tools.registry import (
    Tool,
    ToolContext,
    ToolRegistry,
)
from coding_agent.tools.read import ReadFileTool
from coding_agent.tools.list_dir import ListFileTool
from coding_agent.tools.grep import GrepFileTool
from coding_agent.tools.write import WriteFileTool
from coding_agent.tools.patch import PatchFileTool

DEFAULT_TOOLS: tuple[type[Tool], ...] = (
    ReadFileTool,
    ListFileTool,
    GrepFileTool,
    WriteFileTool,
    PatchFileTool,
)


def build_default_registry(
    base_path: Path | str | None = None,
    timeout_seconds: float | None = None,
) -> ToolRegistry:
    """Build the closed registry of filesystem tools."""
    registry = ToolRegistry(base_path=base_path, timeout_seconds=timeout_seconds)
    for tool_cls in DEFAULT_TOOLS:
        registry.register(tool_cls())
    return registry


__all__ = [
    "DEFAULT_TOOLS",
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "build_default_registry",
    "ReadFileTool",
    "ListFileTool",
    "GrepFileTool",
    "WriteFileTool",
    "PatchFileTool",
]
