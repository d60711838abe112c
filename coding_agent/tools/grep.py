"""Grep tool for finding lines containing a keyword."""

import asyncio
import os
from pathlib import Path

from pydantic import BaseModel, Field

from coding_agent.exceptions import ToolExecutionError
from coding_agent.logging import get_logger
from coding_agent.tools.registry import Tool, ToolContext

log = get_logger(__name__)


class GrepFileArgs(BaseModel):
    path: str = Field(description="File or directory to search recursively")
    keyword: str = Field(description="Text to look for in each line")
    case_sensitive: bool = Field(default=False, description="Match case exactly")


class GrepMatch(BaseModel):
    file_path: str
    line_number: int
    line: str


class GrepFileResult(BaseModel):
    matches: list[GrepMatch]


def _iter_files(root: Path):
    """Yield files under ``root`` in lexical order; ``root`` may itself be a file."""
    if root.is_file():
        yield root
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            yield Path(dirpath) / filename


def _search_file(path: Path, needle: str, case_sensitive: bool) -> list[GrepMatch]:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        # Unreadable and binary files are skipped.
        return []

    lines = text.split("\n")
    if lines[-1] == "":
        # A trailing newline ends the last line; it does not start a new one.
        lines.pop()

    matches: list[GrepMatch] = []
    for line_number, line in enumerate(lines, start=1):
        line = line.rstrip("\r")
        haystack = line if case_sensitive else line.lower()
        if needle in haystack:
            matches.append(GrepMatch(file_path=str(path), line_number=line_number, line=line))
    return matches


def _grep(root: Path, keyword: str, case_sensitive: bool) -> list[GrepMatch]:
    if not root.exists():
        raise FileNotFoundError(2, "No such file or directory", str(root))
    needle = keyword if case_sensitive else keyword.lower()
    matches: list[GrepMatch] = []
    for path in _iter_files(root):
        matches.extend(_search_file(path, needle, case_sensitive))
    return matches


class GrepFileTool(Tool):
    """Search a directory tree for lines containing a keyword."""

    name = "grep_file"
    description = (
        "Recursively search the given directory for files whose lines contain the keyword."
    )
    args_model = GrepFileArgs
    timeout_seconds = 60.0

    async def execute(self, args: GrepFileArgs, context: ToolContext) -> GrepFileResult:
        root = context.resolve(args.path)
        loop = asyncio.get_running_loop()
        try:
            matches = await loop.run_in_executor(
                None,
                lambda: _grep(root, args.keyword, args.case_sensitive),
            )
        except OSError as e:
            raise ToolExecutionError(
                self.name,
                f"failed to search directory {args.path!r}: {e.strerror or e}",
            ) from e
        log.debug("Grep finished", path=str(root), matches=len(matches))
        return GrepFileResult(matches=matches)
