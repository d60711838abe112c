"""Write tool for creating files."""

import asyncio
from pathlib import Path

from pydantic import BaseModel, Field

from coding_agent.exceptions import ToolExecutionError
from coding_agent.fsutil import write_atomic
from coding_agent.tools.registry import Tool, ToolContext


class WriteFileArgs(BaseModel):
    path: str = Field(description="Path of the file to create or overwrite")
    content: str = Field(description="Full content to write to the file")


class WriteFileResult(BaseModel):
    success: bool = True
    message: str


def _write(file_path: Path, content: str) -> int:
    file_path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    write_atomic(file_path, data)
    return len(data)


class WriteFileTool(Tool):
    """Create or overwrite a file."""

    name = "write_file"
    description = (
        "Create a new file at the given path and write the content to it. "
        "Missing parent directories are created; an existing file is replaced."
    )
    args_model = WriteFileArgs
    timeout_seconds = None

    async def execute(self, args: WriteFileArgs, context: ToolContext) -> WriteFileResult:
        file_path = context.resolve(args.path)
        loop = asyncio.get_running_loop()
        try:
            written = await loop.run_in_executor(None, _write, file_path, args.content)
        except OSError as e:
            raise ToolExecutionError(
                self.name,
                f"failed to write file {args.path!r}: {e.strerror or e}",
            ) from e
        return WriteFileResult(
            success=True,
            message=f"File {args.path!r} written successfully ({written} bytes)",
        )
