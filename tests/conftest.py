"""Shared fixtures: in-memory repositories, a recording Telegram transport
and a scripted completion provider wired into a ConversationOrchestrator."""

import itertools
import json
from datetime import datetime, timedelta
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from agentrelay.channels import ChannelRegistry, TelegramAdapter
from agentrelay.domain import (
    Channel,
    CompletionResult,
    ICompletionProvider,
    IToolServerClient,
    ProviderKind,
    TokenUsage,
    ToolDefinition,
    VirtualAgent,
)
from agentrelay.domain.schemas import AgentParameters, TelegramChannelConfig
from agentrelay.orchestrator import ContextBuilder, ConversationOrchestrator, OrchestratorConfig
from agentrelay.persistence import (
    InMemoryAgentRepository,
    InMemoryChannelRepository,
    InMemoryConversationRepository,
    InMemoryMessageRepository,
)
from agentrelay.providers import ProviderFactory
from agentrelay.security import EncryptionService
from agentrelay.tools import ToolAdapter, ToolServerRegistry

TENANT_ID = "tenant-1"
BOT_TOKEN = "123456:test-bot-token"
API_KEY = "sk-test-key"


# ============================================
# Telegram
# ============================================

class TelegramRecorder:
    """httpx transport handler that records Bot API calls."""

    def __init__(self):
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.fail_methods: dict[str, tuple[int, str]] = {}
        self.results: dict[str, Any] = {}
        self._ids = itertools.count(1000)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content) if request.content else {}
        self.requests.append((method, body))

        if method in self.fail_methods:
            code, description = self.fail_methods[method]
            return httpx.Response(
                code, json={"ok": False, "error_code": code, "description": description}
            )
        if method in self.results:
            return httpx.Response(200, json={"ok": True, "result": self.results[method]})
        if method == "getMe":
            return httpx.Response(
                200, json={"ok": True, "result": {"id": 1, "username": "relay_bot"}}
            )
        return httpx.Response(200, json={"ok": True, "result": {"message_id": next(self._ids)}})

    def sent(self, method: str = "sendMessage") -> list[dict[str, Any]]:
        return [body for m, body in self.requests if m == method]


@pytest.fixture
def telegram_recorder():
    return TelegramRecorder()


@pytest.fixture
def telegram_adapter(telegram_recorder):
    client = httpx.AsyncClient(transport=httpx.MockTransport(telegram_recorder))
    return TelegramAdapter(client)


@pytest.fixture
def make_update():
    """Build a Telegram Update carrying a message."""
    update_ids = itertools.count(1)
    message_ids = itertools.count(1)

    def _make(
        text: Optional[str] = "Hello",
        chat_id: int = 111,
        chat_type: str = "private",
        user_id: int = 42,
        username: Optional[str] = "alice",
        message_id: Optional[int] = None,
        **extra: Any,
    ) -> dict[str, Any]:
        sender = {"id": user_id, "is_bot": False, "first_name": "Alice"}
        if username:
            sender["username"] = username
        message: dict[str, Any] = {
            "message_id": message_id if message_id is not None else next(message_ids),
            "date": 1700000000,
            "chat": {"id": chat_id, "type": chat_type},
            "from": sender,
        }
        if text is not None:
            message["text"] = text
        message.update(extra)
        return {"update_id": next(update_ids), "message": message}

    return _make


# ============================================
# Secrets and records
# ============================================

@pytest.fixture
def secrets():
    return EncryptionService(EncryptionService.generate_key())


@pytest.fixture
def agent(secrets):
    return VirtualAgent(
        tenant_id=TENANT_ID,
        name="Helper",
        model="gpt-4o-mini",
        api_key_encrypted=secrets.encrypt(API_KEY),
        parameters=AgentParameters(system_prompt="You are helpful."),
        created_at=datetime.utcnow() - timedelta(days=1),
    )


@pytest.fixture
def channel(secrets, agent):
    return Channel(
        tenant_id=TENANT_ID,
        name="relaybot",
        config=TelegramChannelConfig(bot_token=secrets.encrypt(BOT_TOKEN)),
        default_agent_id=agent.id,
    )


# ============================================
# Provider and tools
# ============================================

def completion(text: Optional[str] = "Hi there!", tool_calls=None, tokens: int = 10) -> CompletionResult:
    return CompletionResult(
        reply_text=text,
        tool_calls=tool_calls or [],
        finish_reason="tool_calls" if tool_calls else "stop",
        usage=TokenUsage(prompt_tokens=tokens, completion_tokens=tokens, total_tokens=2 * tokens),
        model="gpt-4o-mini",
    )


@pytest.fixture
def provider():
    """Provider mock replying "Hi there!" unless reconfigured."""
    mock = MagicMock(spec=ICompletionProvider)
    mock.kind = ProviderKind.OPENAI
    mock.generate_completion = AsyncMock(return_value=completion())
    return mock


@pytest.fixture
def tool_client():
    client = MagicMock(spec=IToolServerClient)
    client.server_name = "search"
    client.list_tools = AsyncMock(
        return_value=[
            ToolDefinition(
                name="lookup",
                description="Look something up",
                input_schema={
                    "type": "object",
                    "properties": {"query": {"type": "string"}},
                    "required": ["query"],
                },
                server_name="search",
            )
        ]
    )
    client.call_tool = AsyncMock(return_value={"answer": 42})
    client.close = AsyncMock()
    return client


@pytest.fixture
def tool_registry(tool_client):
    registry = ToolServerRegistry()
    registry.add_client(tool_client)
    return registry


# ============================================
# Orchestrator
# ============================================

@pytest.fixture
def repos(channel, agent):
    return {
        "channels": InMemoryChannelRepository([channel]),
        "conversations": InMemoryConversationRepository(),
        "messages": InMemoryMessageRepository(),
        "agents": InMemoryAgentRepository([agent]),
    }


@pytest.fixture
def orchestrator(repos, telegram_adapter, provider, secrets, tool_registry):
    return ConversationOrchestrator(
        channels=repos["channels"],
        conversations=repos["conversations"],
        messages=repos["messages"],
        agents=repos["agents"],
        channel_registry=ChannelRegistry([telegram_adapter]),
        providers=ProviderFactory([provider]),
        secrets=secrets,
        context_builder=ContextBuilder(repos["messages"]),
        tool_adapter=ToolAdapter(tool_registry),
        config=OrchestratorConfig(provider_max_attempts=2, retry_initial_delay=0.0),
    )


@pytest.fixture
def make_completion():
    return completion
