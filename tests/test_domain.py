"""
Tests for domain entities, per-chat locks and the in-memory repositories.
"""

import asyncio
import uuid
from datetime import datetime, timedelta

import pytest

from agentrelay.domain import (
    AuthorRole,
    Channel,
    Conversation,
    ConversationStatus,
    ConversationType,
    Message,
    MessageStatus,
    MessageType,
    Participant,
    TokenUsage,
    ToolCall,
    ToolResult,
    VirtualAgent,
)
from agentrelay.domain.schemas import AgentParameters, TelegramChannelConfig
from agentrelay.exceptions import InvalidStatusTransitionError, NotFoundError
from agentrelay.orchestrator import KeyedLocks
from agentrelay.persistence import (
    InMemoryAgentRepository,
    InMemoryChannelRepository,
    InMemoryConversationRepository,
    InMemoryMessageRepository,
)

TENANT_ID = "tenant-1"


def _conversation(**kwargs) -> Conversation:
    kwargs.setdefault("tenant_id", TENANT_ID)
    kwargs.setdefault("channel_id", uuid.uuid4())
    kwargs.setdefault("external_channel_id", "111")
    return Conversation(**kwargs)


def _message(conversation_id, **kwargs) -> Message:
    kwargs.setdefault("tenant_id", TENANT_ID)
    kwargs.setdefault("role", AuthorRole.USER)
    return Message(conversation_id=conversation_id, **kwargs)


def _agent(name: str, created_at: datetime, **kwargs) -> VirtualAgent:
    return VirtualAgent(
        tenant_id=kwargs.pop("tenant_id", TENANT_ID),
        name=name,
        model="gpt-4o-mini",
        api_key_encrypted="enc",
        parameters=AgentParameters(),
        created_at=created_at,
        **kwargs,
    )


# ============================================
# Entities
# ============================================

class TestConversationEntity:
    """Conversation status lifecycle and participants."""

    @pytest.mark.parametrize(
        "chat_type, expected",
        [
            ("private", ConversationType.PRIVATE),
            ("group", ConversationType.GROUP),
            ("supergroup", ConversationType.GROUP),
            ("channel", ConversationType.BROADCAST),
            (None, ConversationType.PRIVATE),
            ("unknown", ConversationType.PRIVATE),
        ],
    )
    def test_chat_type_mapping(self, chat_type, expected):
        assert ConversationType.from_chat_type(chat_type) == expected

    def test_allowed_transitions(self):
        conversation = _conversation()

        conversation.transition_to(ConversationStatus.PAUSED)
        conversation.transition_to(ConversationStatus.OPEN)
        conversation.transition_to(ConversationStatus.CLOSED)
        conversation.transition_to(ConversationStatus.ARCHIVED)

        assert conversation.status == ConversationStatus.ARCHIVED

    @pytest.mark.parametrize(
        "start, target",
        [
            (ConversationStatus.CLOSED, ConversationStatus.OPEN),
            (ConversationStatus.ARCHIVED, ConversationStatus.OPEN),
            (ConversationStatus.OPEN, ConversationStatus.ARCHIVED),
        ],
    )
    def test_rejected_transitions(self, start, target):
        conversation = _conversation(status=start)

        with pytest.raises(InvalidStatusTransitionError):
            conversation.transition_to(target)

        assert conversation.status == start

    def test_participants_are_unique_by_external_id(self):
        conversation = _conversation()

        assert conversation.add_participant(Participant("42", "alice")) is True
        assert conversation.add_participant(Participant("42", "alice again")) is False

        assert [p.display_name for p in conversation.participants] == ["alice"]

    def test_leave_and_return(self):
        conversation = _conversation(participants=[Participant("42", "alice")])

        assert conversation.remove_participant("42") is True
        assert conversation.remove_participant("42") is False
        assert conversation.participants[0].left_at is not None

        assert conversation.add_participant(Participant("42", "alice")) is True
        assert conversation.participants[0].left_at is None
        assert len(conversation.participants) == 1

    def test_record_activity(self):
        conversation = _conversation()
        at = datetime(2026, 3, 1, 9, 30)

        conversation.record_activity(at)

        assert conversation.message_count == 1
        assert conversation.last_activity_at == at

    def test_participant_dict_round_trip(self):
        participant = Participant("42", "alice", left_at=datetime(2026, 1, 2))

        assert Participant.from_dict(participant.to_dict()) == participant


class TestMessageEntity:
    """Message delivery status and tool records."""

    def test_mark_sent(self):
        message = _message(uuid.uuid4(), role=AuthorRole.AGENT)

        message.mark_sent("1000")

        assert message.status == MessageStatus.SENT
        assert message.external_message_id == "1000"

    def test_terminal_status_is_final(self):
        message = _message(uuid.uuid4(), role=AuthorRole.AGENT)
        message.mark_failed("blocked")

        with pytest.raises(InvalidStatusTransitionError):
            message.mark_sent("1")

        assert message.metadata["delivery_error"] == "blocked"

    def test_tool_records_from_metadata(self):
        message = _message(
            uuid.uuid4(),
            role=AuthorRole.AGENT,
            metadata={
                "tool_calls": [
                    {"id": "c1", "type": "function", "function": {"name": "mcp_a_b", "arguments": ""}}
                ],
                "tool_results": [{"call_id": "c1", "name": "mcp_a_b", "content": "ok"}],
            },
        )

        assert message.tool_calls == [ToolCall("c1", "mcp_a_b", "{}")]
        assert message.tool_results == [ToolResult("c1", "mcp_a_b", "ok")]

    def test_has_text(self):
        assert _message(uuid.uuid4(), content="hi").has_text
        assert not _message(uuid.uuid4(), content="  ").has_text
        assert not _message(uuid.uuid4()).has_text

    def test_unknown_type_string_parses_as_text(self):
        assert MessageType.parse("hologram") == MessageType.TEXT
        assert MessageType.parse("voice") == MessageType.VOICE

    def test_token_usage_sums(self):
        total = TokenUsage(1, 2, 3) + TokenUsage(10, 20, 30)

        assert total.to_dict() == {"prompt": 11, "completion": 22, "total": 33}

    def test_tool_result_error_detection(self):
        assert ToolResult("c1", "t", {"error": "x", "recoverable": True}).is_error
        assert not ToolResult("c1", "t", {"answer": 1}).is_error
        assert ToolResult("c1", "t", {"answer": 1}).content_as_text() == '{"answer": 1}'


# ============================================
# Locks
# ============================================

class TestKeyedLocks:
    """One lock per key, released when idle."""

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLocks()
        events: list[str] = []

        async def worker(name: str):
            async with locks.hold("chat-1"):
                events.append(f"{name}-start")
                await asyncio.sleep(0.01)
                events.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert events == ["a-start", "a-end", "b-start", "b-end"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        locks = KeyedLocks()
        both_inside = asyncio.Event()
        inside = 0

        async def worker(key: str):
            nonlocal inside
            async with locks.hold(key):
                inside += 1
                if inside == 2:
                    both_inside.set()
                await asyncio.wait_for(both_inside.wait(), timeout=1.0)

        await asyncio.gather(worker("chat-1"), worker("chat-2"))

        assert both_inside.is_set()

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        locks = KeyedLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold("chat-1"):
                assert locks.is_locked("chat-1")
                raise RuntimeError("boom")

        assert not locks.is_locked("chat-1")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_turns_run_in_reservation_order(self):
        locks = KeyedLocks()
        events: list[str] = []
        first = locks.reserve("chat-1")
        second = locks.reserve("chat-1")

        async def worker(name: str, turn):
            async with turn:
                events.append(name)
                await asyncio.sleep(0)

        await asyncio.gather(worker("second", second), worker("first", first))

        assert events == ["first", "second"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_keeps_queue_order(self):
        locks = KeyedLocks()
        events: list[str] = []
        release = asyncio.Event()

        async def holder():
            async with locks.hold("chat-1"):
                await release.wait()
                events.append("holder")

        async def waiter(name: str):
            async with locks.hold("chat-1"):
                events.append(name)

        holding = asyncio.create_task(holder())
        await asyncio.sleep(0)
        cancelled = asyncio.create_task(waiter("cancelled"))
        last = asyncio.create_task(waiter("last"))
        await asyncio.sleep(0)

        cancelled.cancel()
        await asyncio.sleep(0)
        assert events == []

        release.set()
        await asyncio.gather(holding, last)
        with pytest.raises(asyncio.CancelledError):
            await cancelled

        assert events == ["holder", "last"]
        assert len(locks) == 0


# ============================================
# In-memory repositories
# ============================================

class TestInMemoryConversationRepository:
    """Uniqueness and tenant isolation."""

    @pytest.mark.asyncio
    async def test_create_is_idempotent_per_external_chat(self):
        repo = InMemoryConversationRepository()
        channel_id = uuid.uuid4()

        first = await repo.create(_conversation(channel_id=channel_id))
        second = await repo.create(_conversation(channel_id=channel_id))

        assert second.id == first.id
        assert repo.count() == 1

    @pytest.mark.asyncio
    async def test_tenant_isolation(self):
        repo = InMemoryConversationRepository()
        conversation = await repo.create(_conversation())

        assert await repo.get("tenant-2", conversation.id) is None
        assert (
            await repo.find_by_external_id("tenant-2", conversation.channel_id, "111") is None
        )
        assert (await repo.get(TENANT_ID, conversation.id)).id == conversation.id

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self):
        repo = InMemoryConversationRepository()
        conversation = await repo.create(_conversation())

        loaded = await repo.get(TENANT_ID, conversation.id)
        loaded.participants.append(Participant("42"))

        assert (await repo.get(TENANT_ID, conversation.id)).participants == []

    @pytest.mark.asyncio
    async def test_update_unknown_conversation(self):
        with pytest.raises(NotFoundError):
            await InMemoryConversationRepository().update(_conversation())


class TestInMemoryMessageRepository:
    """Ordering, limits and duplicate detection."""

    @pytest.mark.asyncio
    async def test_newest_first_with_insertion_tie_break(self):
        repo = InMemoryMessageRepository()
        conversation_id = uuid.uuid4()
        same_time = datetime(2026, 1, 1)
        for text in ("a", "b", "c"):
            await repo.create(_message(conversation_id, content=text, created_at=same_time))

        found = await repo.find_by_conversation(TENANT_ID, conversation_id, limit=2)

        assert [m.content for m in found] == ["c", "b"]

    @pytest.mark.asyncio
    async def test_exists_external_id(self):
        repo = InMemoryMessageRepository()
        conversation_id = uuid.uuid4()
        await repo.create(_message(conversation_id, external_message_id="7"))

        assert await repo.exists_external_id(TENANT_ID, conversation_id, "7")
        assert not await repo.exists_external_id(TENANT_ID, conversation_id, "8")
        assert not await repo.exists_external_id(TENANT_ID, uuid.uuid4(), "7")
        assert not await repo.exists_external_id("tenant-2", conversation_id, "7")


class TestInMemoryAgentAndChannelRepositories:
    @pytest.mark.asyncio
    async def test_first_active_agent_is_oldest(self):
        now = datetime(2026, 1, 10)
        repo = InMemoryAgentRepository(
            [
                _agent("newer", now),
                _agent("older", now - timedelta(days=3)),
                _agent("oldest-inactive", now - timedelta(days=9), is_active=False),
                _agent("other-tenant", now - timedelta(days=30), tenant_id="tenant-2"),
            ]
        )

        first = await repo.find_first_active(TENANT_ID)

        assert first.name == "older"

    @pytest.mark.asyncio
    async def test_no_active_agent(self):
        assert await InMemoryAgentRepository().find_first_active(TENANT_ID) is None

    @pytest.mark.asyncio
    async def test_list_active_channels(self):
        config = TelegramChannelConfig(bot_token="enc")
        active = Channel(tenant_id=TENANT_ID, name="a", config=config)
        inactive = Channel(tenant_id=TENANT_ID, name="b", config=config, is_active=False)
        repo = InMemoryChannelRepository([active, inactive])

        assert [c.name for c in await repo.list_active()] == ["a"]
        assert await repo.get("tenant-2", active.id) is None
