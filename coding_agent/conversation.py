"""Interactive read-eval loop around a response generator.

Input is read on a daemon thread so a blocking ``input()`` never stalls the
event loop. The thread only prompts when the loop asks for the next line and
hands it over through a single-slot queue. A shutdown event (SIGINT, SIGTERM,
``/exit`` or end of input) stops the loop; if an exchange is in flight at that
point its abort event is set so the outbound model request is dropped.
"""

import asyncio
import signal
import threading
from typing import Any, Callable, TypeVar

from coding_agent.cli import CMD_EXIT, CMD_HISTORY, CMD_SESSION, TerminalUI
from coding_agent.exceptions import CodingAgentError, ExchangeCancelledError
from coding_agent.logging import get_logger
from coding_agent.orchestrator import ResponseGenerator
from coding_agent.session import SessionID, Store

log = get_logger(__name__)

T = TypeVar("T")

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Conversation:
    """Drive one interactive session until the user or a signal stops it."""

    def __init__(
        self,
        generator: ResponseGenerator,
        store: Store,
        session_id: SessionID,
        ui: TerminalUI,
        *,
        read_line: Callable[[], str] | None = None,
        install_signal_handlers: bool = True,
    ):
        self.generator = generator
        self.store = store
        self.session_id = session_id
        self.ui = ui
        self.read_line = read_line or (lambda: ui.prompt("> "))
        self.install_signal_handlers = install_signal_handlers
        self.shutdown = asyncio.Event()
        self._input_requested = threading.Event()
        self._installed_signals: list[signal.Signals] = []

    async def run(self) -> None:
        """Run the loop until shutdown."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=1)
        reader = threading.Thread(
            target=self._read_input,
            args=(loop, queue),
            name="coding-agent-input",
            daemon=True,
        )

        self._add_signal_handlers(loop)
        try:
            reader.start()
            while not self.shutdown.is_set():
                line = await self._next_line(queue)
                if line is None:
                    break
                await self._handle_line(line)
        finally:
            self._remove_signal_handlers(loop)
            self.shutdown.set()
            self._input_requested.set()
        log.debug("Conversation loop stopped", session_id=self.session_id)

    def _read_input(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[str | None]) -> None:
        """Reader thread: prompt on request and hand each line to the loop."""
        while True:
            self._input_requested.wait()
            self._input_requested.clear()
            if self.shutdown.is_set():
                return
            try:
                line: str | None = self.read_line()
            except (EOFError, KeyboardInterrupt):
                line = None
            try:
                asyncio.run_coroutine_threadsafe(queue.put(line), loop).result()
            except RuntimeError:
                # Event loop already closed.
                return
            if line is None:
                return

    async def _next_line(self, queue: asyncio.Queue[str | None]) -> str | None:
        self._input_requested.set()
        return await self._until_shutdown(asyncio.create_task(queue.get()))

    async def _until_shutdown(self, task: asyncio.Task[T]) -> T | None:
        """Wait for ``task`` or shutdown; on shutdown the task is cancelled."""
        stop_task = asyncio.create_task(self.shutdown.wait())
        try:
            done, _ = await asyncio.wait({task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return None

    async def _handle_line(self, raw: str) -> None:
        line = self.ui.handle_special_command(raw)
        if line is None or not line.strip():
            return
        if line == CMD_EXIT:
            self.shutdown.set()
            return
        if line == CMD_SESSION:
            turns = await self.store.list(self.session_id)
            self.ui.print_session_info(self.session_id, len(turns))
            return
        if line == CMD_HISTORY:
            self.ui.print_history(await self.store.list(self.session_id))
            return
        await self._exchange(line)

    async def _exchange(self, user_input: str) -> None:
        abort_event = asyncio.Event()
        task = asyncio.create_task(
            self.generator.generate_response(user_input, self.session_id, abort_event=abort_event)
        )
        stop_task = asyncio.create_task(self.shutdown.wait())
        try:
            with self.ui.thinking():
                done, _ = await asyncio.wait({task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
                if task not in done:
                    abort_event.set()
                    await asyncio.wait({task})
        finally:
            stop_task.cancel()

        try:
            text = task.result()
        except ExchangeCancelledError:
            log.info("Exchange cancelled", session_id=self.session_id)
            return
        except CodingAgentError as e:
            self.ui.print_error(str(e), kind=type(e).__name__)
            return
        except Exception as e:
            log.error("Exchange failed", session_id=self.session_id, error=str(e), exc_info=True)
            self.ui.print_error(str(e), kind=type(e).__name__)
            return

        await self._print_tool_trace()
        self.ui.print_assistant(text)

    async def _print_tool_trace(self) -> None:
        if not self.ui.config.ui.show_tool_calls:
            return
        try:
            turns = await self.store.list(self.session_id)
        except CodingAgentError as e:
            log.warning("Could not load tool trace", error=str(e))
            return
        if turns and turns[-1].tool_calls:
            self.ui.print_tool_calls(turns[-1].tool_calls)

    def _add_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        if not self.install_signal_handlers:
            return
        for sig in _SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                log.debug("Signal handler unavailable", signal=sig.name, error=str(e))
                continue
            self._installed_signals.append(sig)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        while self._installed_signals:
            loop.remove_signal_handler(self._installed_signals.pop())

    def _on_signal(self, sig: Any) -> None:
        log.info("Shutdown signal received", signal=getattr(sig, "name", str(sig)))
        self.shutdown.set()
