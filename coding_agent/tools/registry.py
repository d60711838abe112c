"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, ValidationError

from coding_agent.exceptions import (
    DecodeError,
    ToolError,
    ToolExecutionError,
    UnknownToolError,
)
from coding_agent.llm import ToolDefinition
from coding_agent.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class ToolContext:
    """Per-invocation environment handed to a tool."""

    base_path: Path

    def resolve(self, raw_path: str) -> Path:
        """Resolve a model-supplied path against the runtime base path."""
        candidate = Path(raw_path).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.base_path / candidate


class Tool(ABC):
    """Base class for all tools.

    Subclasses pair an ``args_model`` used to decode the model's JSON arguments
    with an ``execute`` coroutine returning a pydantic result model.
    """

    name: str = ""
    description: str = ""
    args_model: type[BaseModel]
    # None: run to completion. Tools that write files use it.
    timeout_seconds: float | None = 30.0

    @abstractmethod
    async def execute(self, args: BaseModel, context: ToolContext) -> BaseModel:
        """Execute the tool.

        Args:
            args: Decoded instance of ``args_model``
            context: Invocation context (base path for relative paths)

        Returns:
            Tool-specific result model
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for the model backend."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.args_model.model_json_schema(),
        )

    def decode_arguments(self, arguments: str) -> BaseModel:
        """Decode a JSON argument payload into ``args_model``.

        Raises:
            DecodeError if the payload is not valid JSON for the model
        """
        try:
            return self.args_model.model_validate_json(arguments or "{}")
        except ValidationError as e:
            raise DecodeError(self.name, str(e)) from e


class ToolRegistry:
    """Registry mapping tool names to implementations."""

    def __init__(self, base_path: Path | str | None = None, timeout_seconds: float | None = None):
        self._tools: dict[str, Tool] = {}
        self._timeout_seconds = timeout_seconds
        self._runtime_base_path = Path.cwd()
        self.set_runtime_base_path(base_path or Path.cwd())

    def set_runtime_base_path(self, base_path: Path | str) -> None:
        """Set the directory relative tool paths are resolved against."""
        self._runtime_base_path = Path(base_path).expanduser().resolve()

    @property
    def runtime_base_path(self) -> Path:
        """Directory relative tool paths are resolved against."""
        return self._runtime_base_path

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")
        args_model = getattr(tool, "args_model", None)
        if not (isinstance(args_model, type) and issubclass(args_model, BaseModel)):
            raise ValueError(f"Tool '{tool.name}' must declare a pydantic args_model")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            UnknownToolError if not found
        """
        if name not in self._tools:
            raise UnknownToolError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List all registered tool names in registration order."""
        return list(self._tools)

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for the model backend."""
        return [tool.get_definition() for tool in self._tools.values()]

    def _effective_timeout(self, tool: Tool) -> float | None:
        """Return the tool's limit, raised to the configured minimum."""
        if tool.timeout_seconds is None:
            return None
        return max(1.0, float(tool.timeout_seconds), float(self._timeout_seconds or 0.0))

    async def invoke(self, name: str, arguments: str) -> str:
        """Run a tool and return its result as canonical JSON text.

        Args:
            name: Tool name
            arguments: Raw JSON argument payload from the model

        Returns:
            JSON serialization of the tool's result model

        Raises:
            UnknownToolError if tool not found
            DecodeError if arguments do not decode
            ToolExecutionError if execution fails or times out
            PatchError subclasses from the patch tool
        """
        tool = self.get(name)
        args = tool.decode_arguments(arguments)
        context = ToolContext(base_path=self.runtime_base_path)

        timeout_seconds = self._effective_timeout(tool)
        log.info("Tool called", tool=name)
        try:
            result = await asyncio.wait_for(tool.execute(args, context), timeout=timeout_seconds)
        except TimeoutError as e:
            if timeout_seconds is None:
                raise ToolExecutionError(name, str(e) or "timed out") from e
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s") from e
        except ToolError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e

        if not isinstance(result, BaseModel):
            raise ToolExecutionError(name, "Tool returned invalid result payload")
        log.debug("Tool executed", tool=name)
        return result.model_dump_json()

