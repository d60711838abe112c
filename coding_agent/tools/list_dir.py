"""List tool for directory contents."""

import asyncio
import os
from pathlib import Path

from pydantic import BaseModel, Field

from coding_agent.exceptions import ToolExecutionError
from coding_agent.tools.registry import Tool, ToolContext


class ListFileArgs(BaseModel):
    path: str = Field(description="Directory whose entries should be listed")


class FileEntry(BaseModel):
    name: str
    is_dir: bool


class ListFileResult(BaseModel):
    entries: list[FileEntry]


def _scan(directory: Path) -> list[FileEntry]:
    with os.scandir(directory) as it:
        entries = [FileEntry(name=entry.name, is_dir=entry.is_dir()) for entry in it]
    return sorted(entries, key=lambda entry: entry.name)


class ListFileTool(Tool):
    """List files and directories directly inside a directory."""

    name = "list_file"
    description = "List the files and directories inside the given directory."
    args_model = ListFileArgs

    async def execute(self, args: ListFileArgs, context: ToolContext) -> ListFileResult:
        directory = context.resolve(args.path)
        loop = asyncio.get_running_loop()
        try:
            entries = await loop.run_in_executor(None, _scan, directory)
        except OSError as e:
            raise ToolExecutionError(
                self.name,
                f"failed to read directory {args.path!r}: {e.strerror or e}",
            ) from e
        return ListFileResult(entries=entries)
