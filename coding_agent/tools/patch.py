"""Patch tool for editing files with unified diffs."""

import asyncio

from pydantic import BaseModel, Field

from coding_agent.exceptions import ToolExecutionError
from coding_agent.patching import apply_patch_to_file
from coding_agent.tools.registry import Tool, ToolContext


class PatchFileArgs(BaseModel):
    path: str = Field(description="Path of the existing file to edit")
    patch: str = Field(
        description="Unified diff with ---/+++ file headers and @@ hunks against the current content"
    )


class PatchFileResult(BaseModel):
    success: bool = True
    message: str


class PatchFileTool(Tool):
    """Edit one file by applying a unified diff."""

    name = "patch_file"
    description = (
        "Edit a file by applying a patch in unified diff format. "
        "Only the first file section of the diff is applied, to the given path; "
        "hunk context must match the current file content exactly."
    )
    args_model = PatchFileArgs
    timeout_seconds = None

    async def execute(self, args: PatchFileArgs, context: ToolContext) -> PatchFileResult:
        file_path = context.resolve(args.path)
        loop = asyncio.get_running_loop()
        try:
            outcome = await loop.run_in_executor(None, apply_patch_to_file, file_path, args.patch)
        except OSError as e:
            raise ToolExecutionError(
                self.name,
                f"failed to patch file {args.path!r}: {e.strerror or e}",
            ) from e

        message = f"Applied {outcome.hunks_applied} hunk(s) to {args.path!r}"
        if outcome.ignored_files:
            message += f"; ignored {outcome.ignored_files} additional file section(s) in the diff"
        return PatchFileResult(success=True, message=message)
