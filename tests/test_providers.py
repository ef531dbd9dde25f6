"""
Tests for the OpenAI completion provider.

The real SDK is driven against an httpx MockTransport so request mapping,
response mapping and error classification are exercised end to end.
"""

import json
from typing import Any, Optional

import httpx
import pytest

from agentrelay.domain import CompletionRequest, ProviderKind, VirtualAgent
from agentrelay.domain.schemas import AgentParameters
from agentrelay.exceptions import ProviderError
from agentrelay.providers import BaseCompletionProvider, CompletionProviderConfig, OpenAIProvider


def _agent(**params: Any) -> VirtualAgent:
    return VirtualAgent(
        tenant_id="tenant-1",
        name="Helper",
        model="gpt-4o-mini",
        api_key_encrypted="unused",
        parameters=AgentParameters(**params),
        endpoint_url="https://llm.example/v1",
    )


def _chat_response(
    content: Optional[str] = "Hello!",
    tool_calls: Optional[list[dict[str, Any]]] = None,
    finish_reason: str = "stop",
) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-4o-mini-2024-07-18",
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 11, "completion_tokens": 5, "total_tokens": 16},
    }


class FakeOpenAI:
    """MockTransport handler answering /chat/completions."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status = 200
        self.body: Any = _chat_response()
        self.headers: dict[str, str] = {}
        self.raise_connect = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_connect:
            raise httpx.ConnectError("connection refused", request=request)
        if isinstance(self.body, str):
            return httpx.Response(self.status, text=self.body, headers=self.headers)
        return httpx.Response(self.status, json=self.body, headers=self.headers)

    @property
    def last_payload(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


@pytest.fixture
def openai_provider(fake_openai):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_openai))
    return OpenAIProvider(CompletionProviderConfig(timeout=5.0), http_client=client)


def _request(agent: Optional[VirtualAgent] = None, **kwargs: Any) -> CompletionRequest:
    kwargs.setdefault("context_messages", [{"role": "system", "content": "Be brief."}])
    return CompletionRequest(agent=agent or _agent(), api_key="sk-test", **kwargs)


# ============================================
# Request mapping
# ============================================

class TestRequestMapping:
    """Agent configuration becomes chat completion parameters."""

    @pytest.mark.asyncio
    async def test_model_key_endpoint_and_messages(self, openai_provider, fake_openai):
        await openai_provider.generate_completion(_request(user_message="Hi"))

        request = fake_openai.requests[-1]
        assert str(request.url) == "https://llm.example/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        payload = fake_openai.last_payload
        assert payload["model"] == "gpt-4o-mini"
        assert payload["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
        ]
        assert payload["temperature"] == 0.7
        assert "tools" not in payload

    @pytest.mark.asyncio
    async def test_optional_sampling_parameters(self, openai_provider, fake_openai):
        agent = _agent(temperature=0.2, max_tokens=256, top_p=0.9)

        await openai_provider.generate_completion(_request(agent))

        payload = fake_openai.last_payload
        assert (payload["temperature"], payload["max_tokens"], payload["top_p"]) == (0.2, 256, 0.9)
        assert "frequency_penalty" not in payload

    @pytest.mark.asyncio
    async def test_tools_are_offered_with_auto_choice(self, openai_provider, fake_openai):
        tools = [{"type": "function", "function": {"name": "mcp_a_b", "parameters": {}}}]

        await openai_provider.generate_completion(_request(tools=tools))

        assert fake_openai.last_payload["tools"] == tools
        assert fake_openai.last_payload["tool_choice"] == "auto"

    def test_user_message_not_duplicated(self):
        request = _request(
            context_messages=[{"role": "user", "content": "Hi"}], user_message="Hi"
        )

        assert BaseCompletionProvider.assemble_messages(request) == [
            {"role": "user", "content": "Hi"}
        ]


# ============================================
# Response mapping
# ============================================

class TestResponseMapping:
    """Chat completion responses become CompletionResult."""

    @pytest.mark.asyncio
    async def test_text_reply(self, openai_provider):
        result = await openai_provider.generate_completion(_request())

        assert result.reply_text == "Hello!"
        assert result.tool_calls == []
        assert result.finish_reason == "stop"
        assert result.model == "gpt-4o-mini-2024-07-18"
        assert (result.usage.prompt_tokens, result.usage.total_tokens) == (11, 16)

    @pytest.mark.asyncio
    async def test_tool_calls(self, openai_provider, fake_openai):
        fake_openai.body = _chat_response(
            content=None,
            finish_reason="tool_calls",
            tool_calls=[
                {
                    "id": "call_1",
                    "type": "function",
                    "function": {"name": "mcp_search_lookup", "arguments": '{"query": "x"}'},
                }
            ],
        )

        result = await openai_provider.generate_completion(_request())

        assert result.reply_text is None
        assert [(c.id, c.name, c.arguments) for c in result.tool_calls] == [
            ("call_1", "mcp_search_lookup", '{"query": "x"}')
        ]

    @pytest.mark.asyncio
    async def test_empty_choices_is_recoverable_error(self, openai_provider, fake_openai):
        fake_openai.body = {**_chat_response(), "choices": []}

        with pytest.raises(ProviderError) as exc_info:
            await openai_provider.generate_completion(_request())

        assert exc_info.value.recoverable is True

    @pytest.mark.asyncio
    async def test_stream_yields_text_deltas(self, openai_provider, fake_openai):
        chunks = [
            {
                "id": "c",
                "object": "chat.completion.chunk",
                "created": 1,
                "model": "gpt-4o-mini",
                "choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}],
            }
            for text in ("Hel", "lo")
        ]
        fake_openai.body = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks) + "data: [DONE]\n\n"
        fake_openai.headers = {"content-type": "text/event-stream"}

        parts = [part async for part in openai_provider.stream_completion(_request())]

        assert parts == ["Hel", "lo"]
        assert fake_openai.last_payload["stream"] is True


# ============================================
# Error classification
# ============================================

class TestErrorMapping:
    """SDK errors become ProviderError with a recoverable flag."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, recoverable, code",
        [
            (429, True, "PROVIDER_RATE_LIMITED"),
            (500, True, "PROVIDER_ERROR"),
            (401, False, "PROVIDER_AUTH_ERROR"),
            (400, False, "PROVIDER_ERROR"),
        ],
    )
    async def test_status_errors(self, openai_provider, fake_openai, status, recoverable, code):
        fake_openai.status = status
        fake_openai.body = {"error": {"message": "nope", "type": "error"}}

        with pytest.raises(ProviderError) as exc_info:
            await openai_provider.generate_completion(_request())

        assert exc_info.value.recoverable is recoverable
        assert exc_info.value.code == code
        assert exc_info.value.details["status_code"] == status
        assert len(fake_openai.requests) == 1

    @pytest.mark.asyncio
    async def test_connection_error_is_recoverable(self, openai_provider, fake_openai):
        fake_openai.raise_connect = True

        with pytest.raises(ProviderError) as exc_info:
            await openai_provider.generate_completion(_request())

        assert exc_info.value.recoverable is True
        assert exc_info.value.code == "PROVIDER_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_api_key_not_in_error(self, openai_provider, fake_openai):
        fake_openai.status = 401
        fake_openai.body = {"error": {"message": "Incorrect API key provided", "type": "auth"}}

        with pytest.raises(ProviderError) as exc_info:
            await openai_provider.generate_completion(_request())

        assert "sk-test" not in str(exc_info.value)

    def test_kind(self, openai_provider):
        assert openai_provider.kind == ProviderKind.OPENAI
