"""Turn orchestration: model calls, tool resolution and turn persistence.

One exchange turns a user input into exactly two stored turns:

1. load the session history and pick the newest usable response id,
2. send the input to the model (chained to that id when it still exists),
3. while the model asks for tools, run them and send every result back in a
   single follow-up request chained to the latest response,
4. append the user turn and the assistant turn together in one store write
   (final text, every tool call of the exchange in invocation order, latest
   response id in metadata).

Nothing is written unless step 3 completes; tool failures are reported to the
model as ``"Error: ..."`` results instead of failing the exchange.
"""

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Protocol, Sequence, TypeVar

import structlog

from coding_agent.config import Config, get_config
from coding_agent.exceptions import (
    BackendError,
    ConfigurationError,
    ExchangeCancelledError,
    PersistenceError,
    ToolError,
    ToolLoopExceededError,
)
from coding_agent.instructions import load_system_prompt
from coding_agent.llm import (
    FunctionCall,
    FunctionCallOutput,
    InputItem,
    LLMProvider,
    ModelResponse,
    ToolDefinition,
    UserMessage,
)
from coding_agent.logging import get_logger
from coding_agent.session import (
    PREVIOUS_RESPONSE_ID_KEY,
    ROLE_ASSISTANT,
    ROLE_USER,
    ConversationTurn,
    SessionID,
    Store,
    ToolCallRecord,
)
from coding_agent.tools.registry import ToolRegistry

log = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_TOOL_ROUNDS = 16


class ExchangeState(enum.Enum):
    AWAITING_MODEL = "awaiting_model"
    RESOLVING_TOOLS = "resolving_tools"
    COMPLETE = "complete"


@dataclass
class ExchangeResult:
    """Outcome of one completed exchange."""

    text: str
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    response_id: str = ""


class ResponseGenerator(Protocol):
    """What the interactive surface needs from an orchestrator."""

    async def generate_response(
        self,
        user_input: str,
        session_id: SessionID,
        *,
        abort_event: asyncio.Event | None = None,
    ) -> str: ...


def latest_response_id(turns: Sequence[ConversationTurn]) -> str | None:
    """Return the response id stored on the newest assistant turn that has one."""
    for turn in reversed(turns):
        if turn.role != ROLE_ASSISTANT or PREVIOUS_RESPONSE_ID_KEY not in turn.metadata:
            continue
        return turn.metadata[PREVIOUS_RESPONSE_ID_KEY] or None
    return None


async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        log.debug("Cancelled task raised while unwinding", error=str(e))


class TurnOrchestrator:
    """Drives exchanges between the user, the model backend and the tools."""

    def __init__(
        self,
        provider: LLMProvider,
        store: Store,
        registry: ToolRegistry,
        *,
        instructions: str,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        parallel_tool_calls: bool = False,
        model_timeout_seconds: float | None = None,
    ):
        if max_tool_rounds < 1:
            raise ValueError("max_tool_rounds must be at least 1")
        self.provider = provider
        self.store = store
        self.registry = registry
        self.instructions = instructions
        self.max_tool_rounds = max_tool_rounds
        self.parallel_tool_calls = parallel_tool_calls
        self.model_timeout_seconds = model_timeout_seconds

    @classmethod
    def from_config(
        cls,
        provider: LLMProvider,
        store: Store,
        registry: ToolRegistry,
        config: Config | None = None,
    ) -> "TurnOrchestrator":
        cfg = config or get_config()
        try:
            instructions = load_system_prompt(registry.runtime_base_path)
        except OSError as e:
            raise ConfigurationError(f"cannot load system prompt: {e}") from e
        return cls(
            provider,
            store,
            registry,
            instructions=instructions,
            max_tool_rounds=cfg.orchestrator.max_tool_rounds,
            parallel_tool_calls=cfg.orchestrator.parallel_tool_calls,
            model_timeout_seconds=cfg.orchestrator.model_timeout_seconds,
        )

    async def generate_response(
        self,
        user_input: str,
        session_id: SessionID,
        *,
        abort_event: asyncio.Event | None = None,
    ) -> str:
        """Run one exchange and return only the assistant's text."""
        result = await self.run_exchange(user_input, session_id, abort_event=abort_event)
        return result.text

    async def run_exchange(
        self,
        user_input: str,
        session_id: SessionID,
        *,
        abort_event: asyncio.Event | None = None,
    ) -> ExchangeResult:
        """Run one exchange and persist its user and assistant turns.

        Args:
            user_input: The user's request
            session_id: Session whose history provides continuity
            abort_event: Optional event that aborts in-flight model calls

        Returns:
            ExchangeResult with final text, tool calls and latest response id

        Raises:
            BackendError if a model call fails or times out
            PersistenceError if history cannot be read or the turns cannot be written
            ToolLoopExceededError if the model keeps requesting tools
            ExchangeCancelledError if ``abort_event`` fires before the model answers
        """
        with structlog.contextvars.bound_contextvars(session_id=str(session_id)):
            history = await self._load_history(session_id)
            previous_response_id = await self._resolve_continuation(history, abort_event)

            tools = self.registry.get_definitions()
            self._transition(ExchangeState.AWAITING_MODEL, chained=previous_response_id is not None)
            response = await self._call_model(
                [UserMessage(content=user_input)],
                tools,
                previous_response_id,
                abort_event,
                step="initial request",
            )
            result = await self._resolve_tool_calls(response, tools, abort_event)

            # Both turns land even if the caller is cancelled mid-write.
            await asyncio.shield(self._persist(session_id, user_input, result))
            return result

    async def _load_history(self, session_id: SessionID) -> list[ConversationTurn]:
        try:
            return await self.store.list(session_id)
        except Exception as e:
            raise PersistenceError(f"failed to list conversation history: {e}") from e

    async def _resolve_continuation(
        self,
        history: Sequence[ConversationTurn],
        abort_event: asyncio.Event | None,
    ) -> str | None:
        """Return the stored response id if the backend still knows it."""
        candidate = latest_response_id(history)
        if candidate is None:
            return None
        try:
            valid = await self._await_abortable(self.provider.probe(candidate), abort_event)
        except ExchangeCancelledError:
            raise
        except Exception as e:
            log.warning("Continuation probe failed; starting without it", response_id=candidate, error=str(e))
            return None
        if not valid:
            log.warning("Stored response id is no longer valid; starting without it", response_id=candidate)
            return None
        return candidate

    async def _call_model(
        self,
        input_items: list[InputItem],
        tools: list[ToolDefinition],
        previous_response_id: str | None,
        abort_event: asyncio.Event | None,
        *,
        step: str,
    ) -> ModelResponse:
        try:
            return await self._await_abortable(
                self.provider.send(
                    instructions=self.instructions,
                    input_items=input_items,
                    tools=tools,
                    previous_response_id=previous_response_id,
                ),
                abort_event,
            )
        except BackendError as e:
            e.add_note(f"during model {step}")
            raise
        except ExchangeCancelledError:
            raise
        except Exception as e:
            raise BackendError(f"model {step} failed: {e}") from e

    async def _await_abortable(self, work: Awaitable[T], abort_event: asyncio.Event | None) -> T:
        """Await ``work`` unless ``abort_event`` fires or the model timeout expires first."""
        if abort_event is None and self.model_timeout_seconds is None:
            return await work

        work_task: asyncio.Task[T] = asyncio.ensure_future(work)
        abort_task = asyncio.create_task(abort_event.wait()) if abort_event is not None else None
        waiters: set[asyncio.Future[Any]] = {work_task}
        if abort_task is not None:
            waiters.add(abort_task)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.model_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if work_task in done:
                return work_task.result()

            await _cancel_task(work_task)
            if abort_task is not None and abort_task in done:
                raise ExchangeCancelledError()
            raise BackendError(f"model call timed out after {self.model_timeout_seconds}s")
        except asyncio.CancelledError:
            await _cancel_task(work_task)
            raise
        finally:
            await _cancel_task(abort_task)

    async def _resolve_tool_calls(
        self,
        response: ModelResponse,
        tools: list[ToolDefinition],
        abort_event: asyncio.Event | None,
    ) -> ExchangeResult:
        records: list[ToolCallRecord] = []
        rounds = 0
        while True:
            calls = response.function_calls
            if not calls:
                self._transition(ExchangeState.COMPLETE, rounds=rounds, tool_calls=len(records))
                return ExchangeResult(
                    text=response.output_text,
                    tool_calls=records,
                    response_id=response.id,
                )

            if rounds >= self.max_tool_rounds:
                raise ToolLoopExceededError(self.max_tool_rounds)
            rounds += 1

            self._transition(ExchangeState.RESOLVING_TOOLS, round=rounds, calls=len(calls))
            results = await self._run_tools(calls)
            records.extend(
                ToolCallRecord(name=call.name, arguments=call.arguments, result=result)
                for call, result in zip(calls, results)
            )
            outputs: list[InputItem] = [
                FunctionCallOutput(call_id=call.call_id, output=result)
                for call, result in zip(calls, results)
            ]

            self._transition(ExchangeState.AWAITING_MODEL, round=rounds)
            response = await self._call_model(
                outputs,
                tools,
                response.id,
                abort_event,
                step=f"follow-up request (round {rounds})",
            )

    async def _run_tools(self, calls: list[FunctionCall]) -> list[str]:
        """Run tool calls and return their results in the order the model listed them."""
        if self.parallel_tool_calls and len(calls) > 1:
            return list(await asyncio.gather(*(self._run_tool(call) for call in calls)))
        return [await self._run_tool(call) for call in calls]

    async def _run_tool(self, call: FunctionCall) -> str:
        try:
            return await self.registry.invoke(call.name, call.arguments)
        except ToolError as e:
            log.warning("Tool call failed", tool=call.name, call_id=call.call_id, error=str(e))
            return f"Error: {e}"

    async def _persist(self, session_id: SessionID, user_input: str, result: ExchangeResult) -> None:
        user_turn = ConversationTurn(role=ROLE_USER, content=user_input)
        metadata = {PREVIOUS_RESPONSE_ID_KEY: result.response_id} if result.response_id else {}
        assistant_turn = ConversationTurn(
            role=ROLE_ASSISTANT,
            content=result.text,
            tool_calls=list(result.tool_calls),
            metadata=metadata,
        )

        try:
            await self.store.append_many(session_id, [user_turn, assistant_turn])
        except Exception as e:
            raise PersistenceError(f"failed to append exchange turns: {e}") from e

    @staticmethod
    def _transition(state: ExchangeState, **details: Any) -> None:
        log.debug("Exchange state", state=state.value, **details)
