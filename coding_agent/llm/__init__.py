"""Model backend interface and OpenAI Responses API provider."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Sequence

import httpx

from coding_agent.config import Config, get_config
from coding_agent.exceptions import BackendAPIError, BackendError, ConfigurationError
from coding_agent.logging import get_logger

log = get_logger(__name__)


OPENAI_BASE_URL = "https://api.openai.com/v1"


@dataclass(frozen=True)
class FunctionCall:
    """Output item asking the client to run a tool."""

    call_id: str
    name: str
    arguments: str  # raw JSON text as produced by the model


@dataclass(frozen=True)
class OutputText:
    """Output item carrying assistant text."""

    text: str


OutputItem = FunctionCall | OutputText


@dataclass(frozen=True)
class UserMessage:
    """Input item with the user's request."""

    content: str


@dataclass(frozen=True)
class FunctionCallOutput:
    """Input item returning a tool result for an earlier function call."""

    call_id: str
    output: str


InputItem = UserMessage | FunctionCallOutput


@dataclass
class ModelResponse:
    """Response from the model backend."""

    id: str
    output: list[OutputItem] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def function_calls(self) -> list[FunctionCall]:
        return [item for item in self.output if isinstance(item, FunctionCall)]

    @property
    def output_text(self) -> str:
        return "".join(item.text for item in self.output if isinstance(item, OutputText))


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


class LLMProvider(ABC):
    """Abstract base class for model backends with server-side conversation state."""

    @abstractmethod
    async def send(
        self,
        *,
        instructions: str,
        input_items: Sequence[InputItem],
        tools: Sequence[ToolDefinition],
        previous_response_id: str | None = None,
    ) -> ModelResponse:
        """Create a response, optionally chained to an earlier one."""

    @abstractmethod
    async def probe(self, response_id: str) -> bool:
        """Return whether ``response_id`` can still be used to resume a conversation."""

    async def close(self) -> None:
        return None


class OpenAIResponsesProvider(LLMProvider):
    """OpenAI Responses API provider over plain HTTP."""

    def __init__(
        self,
        model: str = "gpt-4.1",
        api_key: str = "",
        base_url: str = OPENAI_BASE_URL,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the provider.

        Args:
            model: Model name (e.g., 'gpt-4.1')
            api_key: API key sent as a bearer token
            base_url: API base URL including the version segment
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        if not api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY environment variable is not set "
                "(export OPENAI_API_KEY=... or set model.api_key in config.yaml)"
            )
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

        self.client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
        )

    @staticmethod
    def _convert_input(items: Sequence[InputItem]) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = []
        for item in items:
            if isinstance(item, UserMessage):
                result.append({"type": "message", "role": "user", "content": item.content})
            else:
                result.append({
                    "type": "function_call_output",
                    "call_id": item.call_id,
                    "output": item.output,
                })
        return result

    @staticmethod
    def _convert_tools(tools: Sequence[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            }
            for tool in tools
        ]

    @staticmethod
    def _decode_output(raw_items: list[dict[str, Any]]) -> list[OutputItem]:
        """Turn tagged JSON output items into the two-case output union."""
        items: list[OutputItem] = []
        for raw in raw_items:
            item_type = raw.get("type")
            if item_type == "function_call":
                arguments = raw.get("arguments", "")
                if not isinstance(arguments, str):
                    arguments = json.dumps(arguments)
                items.append(FunctionCall(
                    call_id=str(raw.get("call_id", "")),
                    name=str(raw.get("name", "")),
                    arguments=arguments,
                ))
            elif item_type == "message":
                for part in raw.get("content") or []:
                    part_type = part.get("type")
                    if part_type == "output_text":
                        items.append(OutputText(text=part.get("text", "")))
                    elif part_type == "refusal":
                        items.append(OutputText(text=part.get("refusal", "")))
        return items

    async def send(
        self,
        *,
        instructions: str,
        input_items: Sequence[InputItem],
        tools: Sequence[ToolDefinition],
        previous_response_id: str | None = None,
    ) -> ModelResponse:
        """Generate a response."""
        url = f"{self.base_url}/responses"
        body: dict[str, Any] = {
            "model": self.model,
            "instructions": instructions,
            "input": self._convert_input(input_items),
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        if previous_response_id:
            body["previous_response_id"] = previous_response_id

        try:
            log.debug(
                "Calling Responses API",
                model=self.model,
                items=len(input_items),
                chained=bool(previous_response_id),
            )
            response = await self.client.post(url, json=body)
        except httpx.HTTPError as e:
            raise BackendError(f"failed to call response API: {e}") from e

        if not response.is_success:
            raise BackendAPIError(
                f"failed to call response API: status {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise BackendError(f"response API returned invalid JSON: {e}") from e

        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise BackendError(f"response API reported an error: {message}")

        return ModelResponse(
            id=str(data.get("id", "")),
            output=self._decode_output(data.get("output") or []),
            model=str(data.get("model", self.model)),
            usage={
                key: int(value)
                for key, value in (data.get("usage") or {}).items()
                if isinstance(value, int)
            },
        )

    async def probe(self, response_id: str) -> bool:
        """Check that a stored response still exists."""
        url = f"{self.base_url}/responses/{response_id}"
        try:
            response = await self.client.get(url)
        except httpx.HTTPError as e:
            raise BackendError(f"failed to probe response {response_id}: {e}") from e

        if response.status_code == 404:
            return False
        if not response.is_success:
            raise BackendAPIError(
                f"failed to probe response {response_id}: status {response.status_code}",
                status_code=response.status_code,
            )
        return True

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(config: Config | None = None) -> LLMProvider:
    """Create an LLM provider from configuration.

    Args:
        config: Optional configuration (defaults to the global config)

    Returns:
        Configured LLMProvider instance
    """
    cfg = config or get_config()
    provider = cfg.model.provider.strip().lower()
    if provider == "openai":
        return OpenAIResponsesProvider(
            model=cfg.model.model,
            api_key=cfg.model.resolved_api_key(),
            base_url=cfg.model.base_url or OPENAI_BASE_URL,
            timeout=cfg.model.timeout,
        )
    raise ConfigurationError(f"Provider '{cfg.model.provider}' not supported. Use 'openai'.")

