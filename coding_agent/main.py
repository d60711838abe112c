"""Command-line entry point for Coding Agent."""

import asyncio
import sys
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import typer

from coding_agent import __version__
from coding_agent.cli import TerminalUI, get_ui
from coding_agent.config import Config, set_config
from coding_agent.conversation import Conversation
from coding_agent.exceptions import CodingAgentError
from coding_agent.llm import create_provider
from coding_agent.logging import configure_logging, get_logger
from coding_agent.orchestrator import TurnOrchestrator
from coding_agent.session import (
    SessionID,
    Store,
    create_session_store,
    ensure_session_id,
    new_session_id,
)
from coding_agent.tools import build_default_registry

log = get_logger(__name__)

T = TypeVar("T")

app = typer.Typer(help="Coding Agent - a terminal coding assistant backed by a hosted model")


def _load_config(
    config: str = "",
    model: str = "",
    db: str = "",
    memory: bool = False,
) -> Config:
    """Load configuration and apply command-line overrides."""
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            log.error("Failed to load config", path=config, error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model
    if db:
        cfg.session.storage = "sqlite"
        cfg.session.path = db
    if memory:
        cfg.session.storage = "memory"

    set_config(cfg)
    return cfg


async def run_interactive(cfg: Config, session_id: SessionID, ui: TerminalUI) -> None:
    """Wire store, provider, tools and orchestrator, then run the conversation loop."""
    provider = create_provider(cfg)
    store = create_session_store(cfg)
    try:
        registry = build_default_registry(
            base_path=cfg.resolved_tools_base_path(),
            timeout_seconds=cfg.tools.timeout_seconds,
        )
        orchestrator = TurnOrchestrator.from_config(provider, store, registry, cfg)
        ui.print_welcome(session_id, registry.runtime_base_path)
        await Conversation(orchestrator, store, session_id, ui).run()
    finally:
        await store.close()
        await provider.close()


def _run_with_store(cfg: Config, work: Callable[[Store], Awaitable[T]]) -> T:
    async def _runner() -> T:
        store = create_session_store(cfg)
        try:
            return await work(store)
        finally:
            await store.close()

    return asyncio.run(_runner())


def _fail(ui: TerminalUI, error: Exception) -> None:
    ui.print_error(str(error), kind=type(error).__name__)
    raise typer.Exit(code=1)


def main(
    config: str = "",
    model: str = "",
    session: str = "",
    db: str = "",
    memory: bool = False,
    verbose: bool = False,
) -> None:
    """Start an interactive session."""
    cfg = _load_config(config, model, db, memory)
    configure_logging("DEBUG" if verbose else None)
    ui = get_ui()

    try:
        session_id = ensure_session_id(session) if session else new_session_id()
        asyncio.run(run_interactive(cfg, session_id, ui))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(0)
    except CodingAgentError as e:
        log.error("Fatal error", error=str(e))
        _fail(ui, e)


@app.callback(invoke_without_command=True)
def default(ctx: typer.Context) -> None:
    """Start an interactive session when no command is given."""
    if ctx.invoked_subcommand is None:
        main()


@app.command()
def run(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    session: str = typer.Option("", "-s", "--session", help="Resume an existing session id"),
    db: str = typer.Option("", "--db", help="SQLite database path"),
    memory: bool = typer.Option(False, "--memory", help="Keep the conversation in memory only"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive session."""
    main(config, model, session, db, memory, verbose)


@app.command()
def history(
    session: str = typer.Argument(..., help="Session id"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    db: str = typer.Option("", "--db", help="SQLite database path"),
) -> None:
    """Print the stored turns of a session."""
    cfg = _load_config(config, db=db)
    configure_logging()
    ui = get_ui()
    try:
        session_id = ensure_session_id(session)
        turns = _run_with_store(cfg, lambda store: store.list(session_id))
    except CodingAgentError as e:
        _fail(ui, e)
        return
    ui.print_history(turns)


@app.command()
def sessions(
    limit: int = typer.Option(10, "-n", "--limit", help="Maximum number of sessions"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    db: str = typer.Option("", "--db", help="SQLite database path"),
) -> None:
    """List the most recently active sessions."""
    cfg = _load_config(config, db=db)
    configure_logging()
    ui = get_ui()
    try:
        summaries = _run_with_store(cfg, lambda store: store.list_sessions(limit))
    except CodingAgentError as e:
        _fail(ui, e)
        return
    ui.print_sessions(summaries)


@app.command()
def delete(
    session: str = typer.Argument(..., help="Session id"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    db: str = typer.Option("", "--db", help="SQLite database path"),
) -> None:
    """Delete every stored turn of a session."""
    cfg = _load_config(config, db=db)
    configure_logging()
    ui = get_ui()
    try:
        session_id = ensure_session_id(session)
        _run_with_store(cfg, lambda store: store.delete(session_id))
    except CodingAgentError as e:
        _fail(ui, e)
        return
    ui.print_success(f"Deleted session {session_id}")


@app.command()
def version() -> None:
    """Show version information."""
    print(f"Coding Agent v{__version__}")


if __name__ == "__main__":
    app()
