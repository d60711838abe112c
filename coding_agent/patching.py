"""Unified diff parsing and single-file patch application.

Only the first file patch of a diff is ever applied: ``patch_file`` edits one
file per call, and any further file sections in the same diff are reported as
ignored rather than written.

Hunks are matched strictly at the position their header names, with no fuzz or
offset search, so applying the same diff twice fails the second time.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from coding_agent.exceptions import EmptyPatchError, PatchApplyError, PatchParseError
from coding_agent.fsutil import write_atomic
from coding_agent.logging import get_logger

log = get_logger(__name__)

_HUNK_HEADER_RE = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? \+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@"
)
_NO_NEWLINE_MARKER = "\\"
_DEV_NULL = "/dev/null"
# Content is decoded this way so arbitrary bytes survive the round trip.
_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


@dataclass(frozen=True)
class HunkLine:
    op: str  # " ", "-", "+"
    text: str  # includes the line terminator unless the line ends the file without one


@dataclass
class Hunk:
    header: str
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[HunkLine] = field(default_factory=list)

    def old_lines(self) -> list[str]:
        return [line.text for line in self.lines if line.op != "+"]


@dataclass
class FilePatch:
    old_path: str
    new_path: str
    hunks: list[Hunk] = field(default_factory=list)

    @property
    def path(self) -> str:
        """Best display path for the patched file."""
        return self.new_path if self.new_path != _DEV_NULL else self.old_path


@dataclass
class PatchOutcome:
    """Summary of one applied file patch."""

    path: Path
    hunks_applied: int
    ignored_files: int
    bytes_written: int


def split_lines(text: str) -> list[str]:
    """Split text on ``\\n`` keeping terminators; a missing final newline is preserved."""
    if not text:
        return []
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def _strip_path(raw: str) -> str:
    path = raw.split("\t", 1)[0].strip()
    if path != _DEV_NULL and (path.startswith("a/") or path.startswith("b/")):
        path = path[2:]
    return path


def _parse_hunk(lines: list[str], index: int) -> tuple[Hunk, int]:
    header = lines[index].rstrip("\r\n")
    match = _HUNK_HEADER_RE.match(header)
    if not match:
        raise PatchParseError(f"malformed hunk header {header!r}", line_number=index + 1)

    old_count = int(match.group("old_count")) if match.group("old_count") is not None else 1
    new_count = int(match.group("new_count")) if match.group("new_count") is not None else 1
    hunk = Hunk(
        header=header,
        old_start=int(match.group("old_start")),
        old_count=old_count,
        new_start=int(match.group("new_start")),
        new_count=new_count,
    )

    old_left, new_left = old_count, new_count
    index += 1
    while old_left > 0 or new_left > 0:
        if index >= len(lines):
            raise PatchParseError(f"hunk {header!r} ends before its declared length")
        line = lines[index]
        if line in ("\n", "\r\n"):
            # Some generators drop the leading space of empty context lines.
            op, text = " ", line
        else:
            op, text = line[0], line[1:]

        if op == " ":
            old_left -= 1
            new_left -= 1
        elif op == "-":
            old_left -= 1
        elif op == "+":
            new_left -= 1
        elif op == _NO_NEWLINE_MARKER and hunk.lines:
            _drop_final_newline(hunk)
            index += 1
            continue
        else:
            raise PatchParseError(f"unexpected line in hunk {header!r}: {line.rstrip()!r}", line_number=index + 1)

        if old_left < 0 or new_left < 0:
            raise PatchParseError(f"hunk {header!r} has more lines than declared", line_number=index + 1)
        hunk.lines.append(HunkLine(op=op, text=text))
        index += 1

    if index < len(lines) and lines[index].startswith(_NO_NEWLINE_MARKER):
        _drop_final_newline(hunk)
        index += 1

    return hunk, index


def _drop_final_newline(hunk: Hunk) -> None:
    last = hunk.lines[-1]
    hunk.lines[-1] = HunkLine(op=last.op, text=last.text.rstrip("\r\n"))


def parse_unified_diff(text: str) -> list[FilePatch]:
    """Parse every ``---``/``+++`` file section of a unified diff.

    Text outside file sections (``diff --git`` lines, index lines, prose) is
    skipped. Returns an empty list when no file header is present.
    """
    if text and not text.endswith("\n"):
        text += "\n"
    lines = split_lines(text)

    patches: list[FilePatch] = []
    index = 0
    while index < len(lines):
        line = lines[index]
        if not (line.startswith("--- ") and index + 1 < len(lines) and lines[index + 1].startswith("+++ ")):
            index += 1
            continue

        file_patch = FilePatch(
            old_path=_strip_path(line[4:]),
            new_path=_strip_path(lines[index + 1][4:]),
        )
        index += 2
        while index < len(lines) and lines[index].startswith("@@"):
            hunk, index = _parse_hunk(lines, index)
            file_patch.hunks.append(hunk)

        if not file_patch.hunks:
            raise PatchParseError(f"no hunks following file header for {file_patch.path!r}", line_number=index)
        patches.append(file_patch)

    return patches


def apply_file_patch(content: str, file_patch: FilePatch) -> str:
    """Apply one file patch to ``content`` and return the post-image."""
    source = split_lines(content)
    result: list[str] = []
    position = 0

    for hunk in file_patch.hunks:
        if hunk.old_start == 0:
            if hunk.old_count != 0 or source:
                raise PatchApplyError(
                    "hunk creates content but the file is not empty",
                    hunk_header=hunk.header,
                )
            start = 0
        else:
            # A zero-length old range names the line after which to insert.
            start = hunk.old_start - 1 if hunk.old_count > 0 else hunk.old_start

        if start < position:
            raise PatchApplyError("hunks overlap or are out of order", hunk_header=hunk.header)
        if start > len(source):
            raise PatchApplyError(
                f"hunk starts at line {hunk.old_start} but the file has {len(source)} lines",
                hunk_header=hunk.header,
            )

        result.extend(source[position:start])
        position = start

        for line in hunk.lines:
            if line.op == "+":
                result.append(line.text)
                continue
            actual = source[position] if position < len(source) else None
            if actual != line.text:
                raise PatchApplyError(
                    f"context mismatch at line {position + 1}",
                    hunk_header=hunk.header,
                    expected=line.text,
                    actual=actual,
                )
            if line.op == " ":
                result.append(actual)
            position += 1

    result.extend(source[position:])
    return "".join(result)


def apply_patch_to_file(path: Path, diff_text: str) -> PatchOutcome:
    """Apply the first file patch in ``diff_text`` to ``path`` and rewrite it atomically."""
    original = path.read_bytes()

    file_patches = parse_unified_diff(diff_text)
    if not file_patches:
        raise EmptyPatchError()

    first = file_patches[0]
    ignored = len(file_patches) - 1
    if ignored:
        log.warning(
            "Diff touches several files; only the first is applied",
            applied=first.path,
            ignored=[patch.path for patch in file_patches[1:]],
        )

    patched = apply_file_patch(original.decode(_ENCODING, _ERRORS), first)
    data = patched.encode(_ENCODING, _ERRORS)
    write_atomic(path, data)

    return PatchOutcome(
        path=path,
        hunks_applied=len(first.hunks),
        ignored_files=ignored,
        bytes_written=len(data),
    )
