"""Terminal rendering for the interactive coding agent."""

import atexit
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from coding_agent.config import Config, get_config
from coding_agent.logging import get_logger
from coding_agent.session import ConversationTurn, SessionSummary, ToolCallRecord

log = get_logger(__name__)

CMD_EXIT = "EXIT"
CMD_SESSION = "SESSION"
CMD_HISTORY = "HISTORY"

_TRACE_PREVIEW_CHARS = 200
_HISTORY_PREVIEW_CHARS = 100


def _preview(text: str, limit: int) -> str:
    text = text.replace("\n", " ")
    return text[:limit] + "..." if len(text) > limit else text


class TerminalUI:
    """Terminal UI built on a rich console."""

    def __init__(
        self,
        console: Console | None = None,
        config: Config | None = None,
        enable_readline: bool = True,
    ):
        self.config = config or get_config()
        self.console = console or Console(
            no_color=not self.config.ui.colors,
            highlight=False,
        )
        self._special_commands = ["/help", "/session", "/history", "/exit", "/quit"]
        self._readline = None
        self._history_file = Path("~/.coding-agent/history").expanduser()
        if enable_readline:
            self._setup_readline()

    def _setup_readline(self) -> None:
        """Set up line editing, history, and command completion."""
        try:
            import readline
        except ImportError:
            return

        self._readline = readline
        try:
            self._history_file.parent.mkdir(parents=True, exist_ok=True)
            if self._history_file.exists():
                readline.read_history_file(str(self._history_file))
            readline.set_history_length(1000)
            if hasattr(readline, "set_auto_history"):
                readline.set_auto_history(False)
            readline.parse_and_bind("tab: complete")
            readline.set_completer(self._complete_special_command)
            atexit.register(self._save_history)
        except OSError as e:
            log.debug("Readline setup failed", error=str(e))

    def _save_history(self) -> None:
        """Persist readline history to disk."""
        if self._readline is None:
            return
        try:
            self._readline.write_history_file(str(self._history_file))
        except OSError as e:
            log.debug("Failed to save history", error=str(e))

    def _complete_special_command(self, text: str, state: int) -> str | None:
        """Readline completer for slash commands."""
        if not text.startswith("/"):
            return None
        matches = [cmd for cmd in self._special_commands if cmd.startswith(text)]
        if state < len(matches):
            return matches[state]
        return None

    def print_welcome(self, session_id: str, base_path: Path | str | None = None) -> None:
        """Print welcome banner."""
        lines = [f"Session: [bold]{escape(session_id)}[/bold]"]
        if base_path is not None:
            lines.append(f"Working directory: {escape(str(base_path))}")
        lines.append("Type [bold]/help[/bold] for commands, [bold]/exit[/bold] to quit.")
        self.console.print(Panel("\n".join(lines), title="Coding Agent", expand=False))

    def print_help(self) -> None:
        """Print help message."""
        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_row("/help", "Show this help message")
        table.add_row("/session", "Show the current session id")
        table.add_row("/history", "Show conversation history")
        table.add_row("/exit, /quit", "Exit the application")
        self.console.print(table)
        self.console.print("Anything else is sent to the agent.")

    def print_message(self, role: str, content: str) -> None:
        """Print a message with a role prefix."""
        styles = {"user": "bold cyan", "assistant": "bold green"}
        style = styles.get(role, "bold")
        self.console.print(f"[{style}]{escape(role.capitalize())}:[/{style}] {escape(content)}")

    def print_assistant(self, content: str) -> None:
        self.print_message("assistant", content)

    def print_error(self, error: str, kind: str | None = None) -> None:
        """Print an error message."""
        label = f"Error ({kind})" if kind else "Error"
        self.console.print(f"[bold red]{label}:[/bold red] {escape(error)}")

    def print_success(self, message: str) -> None:
        self.console.print(f"[green]OK:[/green] {escape(message)}")

    def print_tool_calls(self, tool_calls: Sequence[ToolCallRecord]) -> None:
        """Print a compact trace of the tool calls made during an exchange."""
        if not self.config.ui.show_tool_calls:
            return
        for call in tool_calls:
            arguments = _preview(call.arguments, _TRACE_PREVIEW_CHARS)
            result = _preview(call.result, _TRACE_PREVIEW_CHARS)
            self.console.print(f"[dim]{escape(f'[TOOL] {call.name} {arguments}')}[/dim]")
            self.console.print(f"[dim]{escape(f'[TOOL RESULT] {result}')}[/dim]")

    def print_history(self, turns: Sequence[ConversationTurn]) -> None:
        """Print conversation history."""
        if not turns:
            self.console.print("No conversation history yet.")
            return
        self.console.print("[bold]=== Conversation History ===[/bold]")
        for i, turn in enumerate(turns, start=1):
            line = f"[{i}] {turn.role}: {_preview(turn.content, _HISTORY_PREVIEW_CHARS)}"
            if turn.tool_calls:
                names = ", ".join(call.name for call in turn.tool_calls)
                line += f" (tools: {names})"
            self.console.print(escape(line))

    def print_session_info(self, session_id: str, turn_count: int) -> None:
        self.console.print(f"Session: {escape(session_id)}")
        self.console.print(f"Turns: {turn_count}")

    def print_sessions(self, sessions: Sequence[SessionSummary]) -> None:
        """Print a table of stored sessions, most recent first."""
        if not sessions:
            self.console.print("No sessions found.")
            return
        table = Table(title="Sessions")
        table.add_column("Session")
        table.add_column("Turns", justify="right")
        table.add_column("Last activity")
        for summary in sessions:
            table.add_row(
                summary.session_id,
                str(summary.turn_count),
                summary.last_activity or "-",
            )
        self.console.print(table)

    @contextmanager
    def thinking(self, message: str = "Thinking...") -> Iterator[None]:
        """Show a spinner while an exchange is in flight."""
        with self.console.status(message):
            yield

    def prompt(self, prompt_text: str = "> ") -> str:
        """Prompt for input."""
        value = self.console.input(prompt_text)
        if self._readline is not None and value.strip():
            self._readline.add_history(value)
        return value

    def handle_special_command(self, cmd: str) -> str | None:
        """Handle slash commands.

        Returns the input unchanged when it is not a command, a ``CMD_*``
        token for commands the caller has to act on, or ``None`` when the
        command was fully handled here.
        """
        cmd = cmd.strip()
        if not cmd.startswith("/"):
            return cmd

        command = cmd.split(None, 1)[0].lower()
        if command in ("/help", "/h", "/?"):
            self.print_help()
            return None
        if command == "/session":
            return CMD_SESSION
        if command == "/history":
            return CMD_HISTORY
        if command in ("/exit", "/quit", "/q"):
            return CMD_EXIT
        self.print_error(f"Unknown command: {command}")
        return None


# Global UI instance
_ui: TerminalUI | None = None


def get_ui() -> TerminalUI:
    """Get the global UI instance."""
    global _ui
    if _ui is None:
        _ui = TerminalUI()
    return _ui
