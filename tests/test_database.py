#!/usr/bin/env python3
"""Integration tests for the PostgreSQL repositories.

Tests cover:
    - Schema creation
    - Conversation uniqueness per (channel, external chat)
    - Message ordering, limits and duplicate detection
    - Channel and agent reads with typed config
    - Tenant isolation on every read

TEST ISOLATION:
    1. Every test runs under a fresh random tenant id
    2. Rows for that tenant are deleted after the test
    3. DATABASE_URL is loaded from .env for local dev; without it the
       module is skipped

NOTE: Requires a running PostgreSQL instance.
"""
import os
import uuid
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from dotenv import load_dotenv

from agentrelay.domain import (
    AuthorRole,
    Conversation,
    ConversationStatus,
    Message,
    MessageStatus,
    Participant,
)
from agentrelay.domain.schemas import TelegramChannelConfig
from agentrelay.exceptions import NotFoundError
from agentrelay.persistence import (
    PostgresAgentRepository,
    PostgresChannelRepository,
    PostgresConversationRepository,
    PostgresMessageRepository,
    create_pool,
    ensure_schema,
)

load_dotenv()

pytestmark = pytest.mark.skipif(
    not os.getenv("DATABASE_URL"),
    reason="DATABASE_URL not set",
)


# ============================================
# Fixtures
# ============================================

@pytest_asyncio.fixture
async def db_pool():
    """Create a pool and make sure the schema exists."""
    pool = await create_pool(os.environ["DATABASE_URL"], min_size=1, max_size=5)
    await ensure_schema(pool)
    yield pool
    await pool.close()


@pytest_asyncio.fixture
async def tenant_id(db_pool):
    """A throwaway tenant whose rows are removed afterwards."""
    tenant = f"TEST-{uuid.uuid4()}"
    yield tenant
    async with db_pool.acquire() as conn:
        await conn.execute("DELETE FROM relay_messages WHERE tenant_id = $1", tenant)
        await conn.execute("DELETE FROM relay_conversations WHERE tenant_id = $1", tenant)
        await conn.execute("DELETE FROM relay_channels WHERE tenant_id = $1", tenant)
        await conn.execute("DELETE FROM relay_agents WHERE tenant_id = $1", tenant)


@pytest_asyncio.fixture
async def conversation(db_pool, tenant_id):
    repo = PostgresConversationRepository(db_pool)
    return await repo.create(
        Conversation(tenant_id=tenant_id, channel_id=uuid.uuid4(), external_channel_id="111")
    )


# ============================================
# Schema Tests
# ============================================

class TestSchema:
    """ensure_schema creates every table."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "table", ["relay_channels", "relay_agents", "relay_conversations", "relay_messages"]
    )
    async def test_table_exists(self, db_pool, table):
        async with db_pool.acquire() as conn:
            result = await conn.fetchval(
                "SELECT EXISTS (SELECT FROM information_schema.tables WHERE table_name = $1)",
                table,
            )
        assert result is True

    @pytest.mark.asyncio
    async def test_ensure_schema_is_idempotent(self, db_pool):
        await ensure_schema(db_pool)


# ============================================
# Conversation Tests
# ============================================

class TestConversations:
    """Conversation persistence."""

    @pytest.mark.asyncio
    async def test_create_returns_existing_on_conflict(self, db_pool, tenant_id, conversation):
        repo = PostgresConversationRepository(db_pool)

        again = await repo.create(
            Conversation(
                tenant_id=tenant_id,
                channel_id=conversation.channel_id,
                external_channel_id="111",
            )
        )

        assert again.id == conversation.id

    @pytest.mark.asyncio
    async def test_update_round_trips_participants(self, db_pool, tenant_id, conversation):
        repo = PostgresConversationRepository(db_pool)
        conversation.add_participant(Participant("42", "alice"))
        conversation.transition_to(ConversationStatus.PAUSED)
        conversation.record_activity()

        await repo.update(conversation)
        loaded = await repo.get(tenant_id, conversation.id)

        assert loaded.status == ConversationStatus.PAUSED
        assert [p.display_name for p in loaded.participants] == ["alice"]
        assert loaded.message_count == 1

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, db_pool, conversation):
        repo = PostgresConversationRepository(db_pool)

        assert await repo.get("TEST-other", conversation.id) is None
        assert (
            await repo.find_by_external_id("TEST-other", conversation.channel_id, "111") is None
        )

    @pytest.mark.asyncio
    async def test_update_missing_conversation(self, db_pool, tenant_id):
        repo = PostgresConversationRepository(db_pool)

        with pytest.raises(NotFoundError):
            await repo.update(
                Conversation(tenant_id=tenant_id, channel_id=uuid.uuid4(), external_channel_id="x")
            )


# ============================================
# Message Tests
# ============================================

class TestMessages:
    """Message persistence."""

    @pytest.mark.asyncio
    async def test_newest_first_with_limit(self, db_pool, tenant_id, conversation):
        repo = PostgresMessageRepository(db_pool)
        start = datetime(2026, 1, 1)
        for i in range(3):
            await repo.create(
                Message(
                    conversation_id=conversation.id,
                    tenant_id=tenant_id,
                    role=AuthorRole.USER,
                    content=f"m{i}",
                    created_at=start + timedelta(seconds=i),
                )
            )

        found = await repo.find_by_conversation(tenant_id, conversation.id, limit=2)

        assert [m.content for m in found] == ["m2", "m1"]

    @pytest.mark.asyncio
    async def test_status_and_metadata_update(self, db_pool, tenant_id, conversation):
        repo = PostgresMessageRepository(db_pool)
        message = await repo.create(
            Message(
                conversation_id=conversation.id,
                tenant_id=tenant_id,
                role=AuthorRole.AGENT,
                content="Hi",
                metadata={"tokens": {"total": 20}},
            )
        )
        message.mark_sent("1000")

        await repo.update(message)
        [loaded] = await repo.find_by_conversation(tenant_id, conversation.id, limit=1)

        assert loaded.status == MessageStatus.SENT
        assert loaded.external_message_id == "1000"
        assert loaded.metadata == {"tokens": {"total": 20}}

    @pytest.mark.asyncio
    async def test_exists_external_id(self, db_pool, tenant_id, conversation):
        repo = PostgresMessageRepository(db_pool)
        await repo.create(
            Message(
                conversation_id=conversation.id,
                tenant_id=tenant_id,
                role=AuthorRole.USER,
                external_message_id="7",
            )
        )

        assert await repo.exists_external_id(tenant_id, conversation.id, "7")
        assert not await repo.exists_external_id(tenant_id, conversation.id, "8")


# ============================================
# Channel and Agent Tests
# ============================================

class TestChannelsAndAgents:
    """Read-only configuration records."""

    @pytest.mark.asyncio
    async def test_channel_config_is_typed(self, db_pool, tenant_id):
        channel_id = uuid.uuid4()
        async with db_pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO relay_channels (id, tenant_id, name, config) VALUES ($1, $2, $3, $4)",
                channel_id,
                tenant_id,
                "relaybot",
                {"type": "telegram", "bot_token": "enc", "max_context_messages": 5},
            )

        channel = await PostgresChannelRepository(db_pool).get(tenant_id, channel_id)

        assert isinstance(channel.config, TelegramChannelConfig)
        assert channel.max_context_messages == 5
        assert await PostgresChannelRepository(db_pool).get("TEST-other", channel_id) is None

    @pytest.mark.asyncio
    async def test_first_active_agent(self, db_pool, tenant_id):
        now = datetime(2026, 1, 10)
        async with db_pool.acquire() as conn:
            for name, age, active in (("new", 0, True), ("old", 5, True), ("off", 9, False)):
                await conn.execute(
                    """
                    INSERT INTO relay_agents (id, tenant_id, name, provider, model,
                        api_key_encrypted, endpoint_url, parameters, is_active, created_at)
                    VALUES ($1, $2, $3, 'openai', 'gpt-4o-mini', 'enc',
                        'https://api.openai.com/v1', $4, $5, $6)
                    """,
                    uuid.uuid4(),
                    tenant_id,
                    name,
                    {"temperature": 0.2},
                    active,
                    now - timedelta(days=age),
                )

        agent = await PostgresAgentRepository(db_pool).find_first_active(tenant_id)

        assert agent.name == "old"
        assert agent.parameters.temperature == 0.2
