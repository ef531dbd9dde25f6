"""
PostgreSQL Repositories.

asyncpg-backed repositories with tenant isolation. Every transaction
sets the app.tenant_id session variable for row-level security and
every query filters on tenant_id as well.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Protocol
from uuid import UUID

import asyncpg

from ..domain.entities import (
    Attachment,
    AuthorRole,
    Channel,
    Conversation,
    ConversationStatus,
    ConversationType,
    Message,
    MessageStatus,
    MessageType,
    Participant,
    ProviderKind,
    VirtualAgent,
)
from ..domain.ports import (
    IAgentRepository,
    IChannelRepository,
    IConversationRepository,
    IMessageRepository,
)
from ..domain.schemas import AgentParameters, parse_channel_config
from ..exceptions import NotFoundError

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS relay_channels (
    id UUID PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    config JSONB NOT NULL,
    default_agent_id UUID,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMP NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS relay_agents (
    id UUID PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    api_key_encrypted TEXT NOT NULL,
    endpoint_url TEXT NOT NULL,
    parameters JSONB NOT NULL DEFAULT '{}',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMP NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS relay_conversations (
    id UUID PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    channel_id UUID NOT NULL,
    external_channel_id TEXT NOT NULL,
    agent_id UUID,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    participants JSONB NOT NULL DEFAULT '[]',
    context JSONB NOT NULL DEFAULT '{}',
    last_activity_at TIMESTAMP,
    message_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP NOT NULL,
    UNIQUE (channel_id, external_channel_id)
);

CREATE TABLE IF NOT EXISTS relay_messages (
    id UUID PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    conversation_id UUID NOT NULL REFERENCES relay_conversations(id),
    seq BIGSERIAL,
    role TEXT NOT NULL,
    type TEXT NOT NULL,
    content TEXT,
    attachments JSONB NOT NULL DEFAULT '[]',
    external_message_id TEXT,
    author_id TEXT,
    author_name TEXT,
    status TEXT NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_relay_messages_conversation
    ON relay_messages (conversation_id, created_at DESC, seq DESC);
CREATE INDEX IF NOT EXISTS idx_relay_messages_external
    ON relay_messages (conversation_id, external_message_id);
"""


class IAsyncDBPool(Protocol):
    """Protocol for async database pool."""

    def acquire(self): ...


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


async def create_pool(dsn: str, min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    """Create a connection pool with JSONB codecs installed."""
    pool = await asyncpg.create_pool(
        dsn, min_size=min_size, max_size=max_size, init=_init_connection
    )
    logger.info(f"Database pool created (min={min_size}, max={max_size})")
    return pool


async def ensure_schema(pool: IAsyncDBPool) -> None:
    """Create tables and indexes if missing."""
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)


class _TenantScopedRepository:
    def __init__(self, db_pool: IAsyncDBPool):
        """Initialize the repository.

        Args:
            db_pool: Async database connection pool
        """
        self.db = db_pool

    async def _set_tenant_context(self, conn, tenant_id: str) -> None:
        """Set the tenant context for RLS policies (transaction-local)."""
        await conn.execute("SELECT set_config('app.tenant_id', $1, true)", tenant_id)


# ============================================
# Conversations
# ============================================


def _row_to_conversation(row: Any) -> Conversation:
    return Conversation(
        id=row["id"],
        tenant_id=row["tenant_id"],
        channel_id=row["channel_id"],
        external_channel_id=row["external_channel_id"],
        agent_id=row["agent_id"],
        type=ConversationType(row["type"]),
        status=ConversationStatus(row["status"]),
        participants=[Participant.from_dict(p) for p in row["participants"] or []],
        context=row["context"] or {},
        last_activity_at=row["last_activity_at"],
        message_count=row["message_count"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


CONVERSATION_COLUMNS = """
    id, tenant_id, channel_id, external_channel_id, agent_id, type, status,
    participants, context, last_activity_at, message_count, created_at, updated_at
"""


class PostgresConversationRepository(_TenantScopedRepository, IConversationRepository):
    """PostgreSQL-based conversation repository.

    Uniqueness of (channel_id, external_channel_id) is enforced by the
    table constraint; create() uses ON CONFLICT DO NOTHING and falls
    back to reading the winner.
    """

    async def get(self, tenant_id: str, conversation_id: UUID) -> Optional[Conversation]:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await self._set_tenant_context(conn, tenant_id)
                row = await conn.fetchrow(
                    f"SELECT {CONVERSATION_COLUMNS} FROM relay_conversations "
                    "WHERE id = $1 AND tenant_id = $2",
                    conversation_id,
                    tenant_id,
                )
        return _row_to_conversation(row) if row else None

    async def find_by_external_id(
        self, tenant_id: str, channel_id: UUID, external_channel_id: str
    ) -> Optional[Conversation]:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await self._set_tenant_context(conn, tenant_id)
                row = await conn.fetchrow(
                    f"SELECT {CONVERSATION_COLUMNS} FROM relay_conversations "
                    "WHERE tenant_id = $1 AND channel_id = $2 AND external_channel_id = $3",
                    tenant_id,
                    channel_id,
                    external_channel_id,
                )
        return _row_to_conversation(row) if row else None

    async def create(self, conversation: Conversation) -> Conversation:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await self._set_tenant_context(conn, conversation.tenant_id)
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO relay_conversations ({CONVERSATION_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                    ON CONFLICT (channel_id, external_channel_id) DO NOTHING
                    RETURNING {CONVERSATION_COLUMNS}
                    """,
                    conversation.id,
                    conversation.tenant_id,
                    conversation.channel_id,
                    conversation.external_channel_id,
                    conversation.agent_id,
                    conversation.type.value,
                    conversation.status.value,
                    [p.to_dict() for p in conversation.participants],
                    conversation.context,
                    conversation.last_activity_at,
                    conversation.message_count,
                    conversation.created_at,
                    conversation.updated_at,
                )
                if row is None:
                    row = await conn.fetchrow(
                        f"SELECT {CONVERSATION_COLUMNS} FROM relay_conversations "
                        "WHERE tenant_id = $1 AND channel_id = $2 AND external_channel_id = $3",
                        conversation.tenant_id,
                        conversation.channel_id,
                        conversation.external_channel_id,
                    )
                    if row is None:
                        raise NotFoundError(
                            "Conversation", f"{conversation.channel_id}/{conversation.external_channel_id}"
                        )
                    logger.debug(f"Conversation {row['id']} already existed")
                else:
                    logger.info(
                        f"Created conversation {conversation.id} for chat "
                        f"{conversation.external_channel_id}"
                    )
        return _row_to_conversation(row)

    async def update(self, conversation: Conversation) -> Conversation:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await self._set_tenant_context(conn, conversation.tenant_id)
                result = await conn.execute(
                    """
                    UPDATE relay_conversations
                    SET agent_id = $3, status = $4, participants = $5, context = $6,
                        last_activity_at = $7, message_count = $8, updated_at = $9
                    WHERE id = $1 AND tenant_id = $2
                    """,
                    conversation.id,
                    conversation.tenant_id,
                    conversation.agent_id,
                    conversation.status.value,
                    [p.to_dict() for p in conversation.participants],
                    conversation.context,
                    conversation.last_activity_at,
                    conversation.message_count,
                    conversation.updated_at,
                )
        if result.endswith(" 0"):
            raise NotFoundError("Conversation", conversation.id)
        return conversation


# ============================================
# Messages
# ============================================


MESSAGE_COLUMNS = """
    id, tenant_id, conversation_id, role, type, content, attachments,
    external_message_id, author_id, author_name, status, metadata, created_at
"""


def _row_to_message(row: Any) -> Message:
    return Message(
        id=row["id"],
        tenant_id=row["tenant_id"],
        conversation_id=row["conversation_id"],
        role=AuthorRole(row["role"]),
        type=MessageType.parse(row["type"]),
        content=row["content"],
        attachments=[Attachment.from_dict(a) for a in row["attachments"] or []],
        external_message_id=row["external_message_id"],
        author_id=row["author_id"],
        author_name=row["author_name"],
        status=MessageStatus(row["status"]),
        metadata=row["metadata"] or {},
        created_at=row["created_at"],
    )


class PostgresMessageRepository(_TenantScopedRepository, IMessageRepository):
    """PostgreSQL-based message repository."""

    async def create(self, message: Message) -> Message:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await self._set_tenant_context(conn, message.tenant_id)
                await conn.execute(
                    f"""
                    INSERT INTO relay_messages ({MESSAGE_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                    """,
                    message.id,
                    message.tenant_id,
                    message.conversation_id,
                    message.role.value,
                    message.type.value,
                    message.content,
                    [a.to_dict() for a in message.attachments],
                    message.external_message_id,
                    message.author_id,
                    message.author_name,
                    message.status.value,
                    message.metadata,
                    message.created_at,
                )
        logger.debug(
            f"Added {message.role.value} message to conversation {message.conversation_id}"
        )
        return message

    async def find_by_conversation(
        self, tenant_id: str, conversation_id: UUID, limit: int
    ) -> list[Message]:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await self._set_tenant_context(conn, tenant_id)
                rows = await conn.fetch(
                    f"""
                    SELECT {MESSAGE_COLUMNS} FROM relay_messages
                    WHERE tenant_id = $1 AND conversation_id = $2
                    ORDER BY created_at DESC, seq DESC
                    LIMIT $3
                    """,
                    tenant_id,
                    conversation_id,
                    limit,
                )
        return [_row_to_message(row) for row in rows]

    async def update(self, message: Message) -> Message:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await self._set_tenant_context(conn, message.tenant_id)
                result = await conn.execute(
                    """
                    UPDATE relay_messages
                    SET status = $3, external_message_id = $4, metadata = $5
                    WHERE id = $1 AND tenant_id = $2
                    """,
                    message.id,
                    message.tenant_id,
                    message.status.value,
                    message.external_message_id,
                    message.metadata,
                )
        if result.endswith(" 0"):
            raise NotFoundError("Message", message.id)
        return message

    async def exists_external_id(
        self, tenant_id: str, conversation_id: UUID, external_message_id: str
    ) -> bool:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await self._set_tenant_context(conn, tenant_id)
                found = await conn.fetchval(
                    """
                    SELECT 1 FROM relay_messages
                    WHERE tenant_id = $1 AND conversation_id = $2 AND external_message_id = $3
                    LIMIT 1
                    """,
                    tenant_id,
                    conversation_id,
                    external_message_id,
                )
        return found is not None


# ============================================
# Channels and Agents (read-only)
# ============================================


def _row_to_channel(row: Any) -> Channel:
    return Channel(
        id=row["id"],
        tenant_id=row["tenant_id"],
        name=row["name"],
        config=parse_channel_config(row["config"]),
        default_agent_id=row["default_agent_id"],
        is_active=row["is_active"],
    )


def _row_to_agent(row: Any) -> VirtualAgent:
    return VirtualAgent(
        id=row["id"],
        tenant_id=row["tenant_id"],
        name=row["name"],
        provider=ProviderKind(row["provider"]),
        model=row["model"],
        api_key_encrypted=row["api_key_encrypted"],
        endpoint_url=row["endpoint_url"],
        parameters=AgentParameters.model_validate(row["parameters"] or {}),
        is_active=row["is_active"],
        created_at=row["created_at"],
    )


class PostgresChannelRepository(_TenantScopedRepository, IChannelRepository):
    """Channel records; config is validated into its typed variant on load."""

    async def get(self, tenant_id: str, channel_id: UUID) -> Optional[Channel]:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await self._set_tenant_context(conn, tenant_id)
                row = await conn.fetchrow(
                    "SELECT id, tenant_id, name, config, default_agent_id, is_active "
                    "FROM relay_channels WHERE id = $1 AND tenant_id = $2",
                    channel_id,
                    tenant_id,
                )
        return _row_to_channel(row) if row else None

    async def list_active(self) -> list[Channel]:
        # Startup scan across tenants; runs outside any tenant context
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id, tenant_id, name, config, default_agent_id, is_active "
                "FROM relay_channels WHERE is_active ORDER BY created_at"
            )
        return [_row_to_channel(row) for row in rows]


class PostgresAgentRepository(_TenantScopedRepository, IAgentRepository):
    AGENT_COLUMNS = (
        "id, tenant_id, name, provider, model, api_key_encrypted, endpoint_url, "
        "parameters, is_active, created_at"
    )

    async def get(self, tenant_id: str, agent_id: UUID) -> Optional[VirtualAgent]:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await self._set_tenant_context(conn, tenant_id)
                row = await conn.fetchrow(
                    f"SELECT {self.AGENT_COLUMNS} FROM relay_agents "
                    "WHERE id = $1 AND tenant_id = $2",
                    agent_id,
                    tenant_id,
                )
        return _row_to_agent(row) if row else None

    async def find_first_active(self, tenant_id: str) -> Optional[VirtualAgent]:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await self._set_tenant_context(conn, tenant_id)
                row = await conn.fetchrow(
                    f"SELECT {self.AGENT_COLUMNS} FROM relay_agents "
                    "WHERE tenant_id = $1 AND is_active ORDER BY created_at LIMIT 1",
                    tenant_id,
                )
        return _row_to_agent(row) if row else None
