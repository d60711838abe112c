"""System prompt templates.

Templates are markdown files with ``{placeholder}`` fields. A file in the
personal directory (``~/.coding-agent/instructions/``) shadows the packaged
copy in ``coding_agent/prompts/``. ``CODING_AGENT_INSTRUCTIONS_DIR`` replaces
the packaged directory.
"""

from __future__ import annotations

import os
from pathlib import Path

from coding_agent.exceptions import ConfigurationError
from coding_agent.logging import get_logger

log = get_logger(__name__)

PROMPTS_DIR_ENV = "CODING_AGENT_INSTRUCTIONS_DIR"
SYSTEM_PROMPT_TEMPLATE = "system_prompt.md"

_PACKAGED_DIR = Path(__file__).resolve().parent / "prompts"
_PERSONAL_DIR = Path("~/.coding-agent/instructions").expanduser()


class _KeepUnknownFields(dict[str, str]):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Find prompt templates, searching the personal directory first."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        packaged = base_dir or os.getenv(PROMPTS_DIR_ENV) or _PACKAGED_DIR
        personal = personal_dir if personal_dir is not None else _PERSONAL_DIR
        self.search_path: tuple[Path, ...] = tuple(
            Path(directory).expanduser().resolve() for directory in (personal, packaged)
        )
        self._templates: dict[str, str] = {}

    def locate(self, name: str) -> Path:
        """Return the first existing file called ``name`` on the search path.

        Raises:
            ConfigurationError if no directory holds the template
        """
        for directory in self.search_path:
            candidate = directory / name
            if candidate.is_file():
                return candidate
        searched = ", ".join(str(directory) for directory in self.search_path)
        raise ConfigurationError(f"prompt template {name!r} not found in: {searched}")

    def load(self, name: str) -> str:
        if name not in self._templates:
            path = self.locate(name)
            self._templates[name] = path.read_text(encoding="utf-8").strip()
            log.debug("Loaded prompt template", path=str(path))
        return self._templates[name]

    def render(self, name: str, **variables: object) -> str:
        """Fill the template's placeholders; unknown ones are left as written."""
        fields = _KeepUnknownFields({key: str(value) for key, value in variables.items()})
        return self.load(name).format_map(fields)


def load_system_prompt(base_path: Path | str, loader: InstructionLoader | None = None) -> str:
    """Render the system prompt for a session rooted at ``base_path``."""
    return (loader or InstructionLoader()).render(
        SYSTEM_PROMPT_TEMPLATE,
        base_path=str(base_path),
    )
