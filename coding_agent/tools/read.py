"""Read tool for reading file contents."""

import asyncio

from pydantic import BaseModel, Field

from coding_agent.exceptions import ToolExecutionError
from coding_agent.tools.registry import Tool, ToolContext


class ReadFileArgs(BaseModel):
    path: str = Field(description="Path of the file to read")


class ReadFileResult(BaseModel):
    content: str


class ReadFileTool(Tool):
    """Read a whole file."""

    name = "read_file"
    description = "Read the entire content of the given file."
    args_model = ReadFileArgs

    async def execute(self, args: ReadFileArgs, context: ToolContext) -> ReadFileResult:
        file_path = context.resolve(args.path)
        loop = asyncio.get_running_loop()
        try:
            data = await loop.run_in_executor(None, file_path.read_bytes)
        except OSError as e:
            raise ToolExecutionError(
                self.name,
                f"failed to read file {args.path!r}: {e.strerror or e}",
            ) from e
        return ReadFileResult(content=data.decode("utf-8", errors="replace"))
