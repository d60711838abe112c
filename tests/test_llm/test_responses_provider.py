import json

import httpx
import pytest

from coding_agent.config import Config
from coding_agent.exceptions import BackendAPIError, BackendError, ConfigurationError
from coding_agent.llm import (
    FunctionCall,
    FunctionCallOutput,
    OpenAIResponsesProvider,
    OutputText,
    ToolDefinition,
    UserMessage,
    create_provider,
)


def _provider(handler) -> OpenAIResponsesProvider:
    return OpenAIResponsesProvider(
        model="gpt-test",
        api_key="sk-test",
        base_url="https://api.example.test/v1/",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_send_builds_request_body_and_decodes_output_items():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": "resp_2",
                "model": "gpt-test",
                "output": [
                    {"type": "reasoning", "summary": []},
                    {
                        "type": "function_call",
                        "call_id": "call_1",
                        "name": "read_file",
                        "arguments": '{"path": "a.txt"}',
                    },
                    {
                        "type": "message",
                        "role": "assistant",
                        "content": [{"type": "output_text", "text": "Reading it."}],
                    },
                ],
                "usage": {"input_tokens": 10, "output_tokens": 4},
            },
        )

    provider = _provider(handler)
    try:
        response = await provider.send(
            instructions="be helpful",
            input_items=[
                UserMessage(content="hello"),
                FunctionCallOutput(call_id="call_0", output='{"content":"x"}'),
            ],
            tools=[ToolDefinition(name="read_file", description="Read", parameters={"type": "object"})],
            previous_response_id="resp_1",
        )
    finally:
        await provider.close()

    assert captured["method"] == "POST"
    assert captured["url"] == "https://api.example.test/v1/responses"
    assert captured["auth"] == "Bearer sk-test"
    assert captured["body"] == {
        "model": "gpt-test",
        "instructions": "be helpful",
        "input": [
            {"type": "message", "role": "user", "content": "hello"},
            {"type": "function_call_output", "call_id": "call_0", "output": '{"content":"x"}'},
        ],
        "tools": [
            {
                "type": "function",
                "name": "read_file",
                "description": "Read",
                "parameters": {"type": "object"},
            }
        ],
        "previous_response_id": "resp_1",
    }
    assert response.id == "resp_2"
    assert response.output == [
        FunctionCall(call_id="call_1", name="read_file", arguments='{"path": "a.txt"}'),
        OutputText(text="Reading it."),
    ]
    assert response.function_calls[0].name == "read_file"
    assert response.output_text == "Reading it."
    assert response.usage == {"input_tokens": 10, "output_tokens": 4}


@pytest.mark.asyncio
async def test_send_omits_optional_fields_when_unset():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "resp_1", "output": []})

    provider = _provider(handler)
    try:
        response = await provider.send(instructions="x", input_items=[UserMessage(content="hi")], tools=[])
    finally:
        await provider.close()

    assert "tools" not in bodies[0]
    assert "previous_response_id" not in bodies[0]
    assert response.output_text == ""


@pytest.mark.asyncio
async def test_send_maps_http_status_errors():
    provider = _provider(lambda request: httpx.Response(429, text="slow down"))
    try:
        with pytest.raises(BackendAPIError) as exc_info:
            await provider.send(instructions="x", input_items=[UserMessage(content="hi")], tools=[])
    finally:
        await provider.close()

    assert exc_info.value.status_code == 429
    assert "slow down" in str(exc_info.value)


@pytest.mark.asyncio
async def test_send_maps_transport_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler)
    try:
        with pytest.raises(BackendError, match="connection refused"):
            await provider.send(instructions="x", input_items=[UserMessage(content="hi")], tools=[])
    finally:
        await provider.close()


@pytest.mark.asyncio
async def test_send_reports_error_payload():
    provider = _provider(lambda request: httpx.Response(200, json={"error": {"message": "bad input"}}))
    try:
        with pytest.raises(BackendError, match="bad input"):
            await provider.send(instructions="x", input_items=[UserMessage(content="hi")], tools=[])
    finally:
        await provider.close()


@pytest.mark.asyncio
async def test_probe_maps_status_codes():
    statuses = {"resp_ok": 200, "resp_gone": 404, "resp_err": 500}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        response_id = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(statuses[response_id], json={"id": response_id})

    provider = _provider(handler)
    try:
        assert await provider.probe("resp_ok") is True
        assert await provider.probe("resp_gone") is False
        with pytest.raises(BackendAPIError):
            await provider.probe("resp_err")
    finally:
        await provider.close()


def test_provider_requires_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    cfg = Config()
    cfg.model.api_key = ""

    with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
        create_provider(cfg)


def test_create_provider_reads_env_key_and_model(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    cfg = Config()
    cfg.model.model = "gpt-4.1-mini"

    provider = create_provider(cfg)

    assert isinstance(provider, OpenAIResponsesProvider)
    assert provider.model == "gpt-4.1-mini"
    assert provider.api_key == "sk-env"
    assert provider.base_url == "https://api.openai.com/v1"


def test_create_provider_rejects_unknown_provider():
    cfg = Config()
    cfg.model.provider = "anthropic"
    cfg.model.api_key = "sk"

    with pytest.raises(ConfigurationError, match="not supported"):
        create_provider(cfg)
