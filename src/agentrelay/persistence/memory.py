"""
In-Memory Repositories.

Tenant-scoped repositories backed by dictionaries. Used when no
database is configured and throughout the test suite. Records are
copied on the way in and out so callers never share state with the
store, the same as with a real database.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from typing import Iterable, Optional
from uuid import UUID

from ..domain.entities import Channel, Conversation, Message, VirtualAgent
from ..domain.ports import (
    IAgentRepository,
    IChannelRepository,
    IConversationRepository,
    IMessageRepository,
)
from ..exceptions import NotFoundError

logger = logging.getLogger(__name__)


async def _yield() -> None:
    # Every call is a suspension point, like a database round trip
    await asyncio.sleep(0)


class InMemoryConversationRepository(IConversationRepository):
    """Conversations keyed by id with a unique (channel, external chat) index."""

    def __init__(self):
        self._rows: dict[UUID, Conversation] = {}
        self._by_external: dict[tuple[UUID, str], UUID] = {}

    async def get(self, tenant_id: str, conversation_id: UUID) -> Optional[Conversation]:
        await _yield()
        row = self._rows.get(conversation_id)
        if row is None or row.tenant_id != tenant_id:
            return None
        return copy.deepcopy(row)

    async def find_by_external_id(
        self, tenant_id: str, channel_id: UUID, external_channel_id: str
    ) -> Optional[Conversation]:
        await _yield()
        conversation_id = self._by_external.get((channel_id, external_channel_id))
        if conversation_id is None:
            return None
        row = self._rows[conversation_id]
        if row.tenant_id != tenant_id:
            return None
        return copy.deepcopy(row)

    async def create(self, conversation: Conversation) -> Conversation:
        await _yield()
        key = (conversation.channel_id, conversation.external_channel_id)
        existing_id = self._by_external.get(key)
        if existing_id is not None:
            logger.debug(f"Conversation for {key} already exists, returning {existing_id}")
            return copy.deepcopy(self._rows[existing_id])

        self._rows[conversation.id] = copy.deepcopy(conversation)
        self._by_external[key] = conversation.id
        return copy.deepcopy(conversation)

    async def update(self, conversation: Conversation) -> Conversation:
        await _yield()
        row = self._rows.get(conversation.id)
        if row is None or row.tenant_id != conversation.tenant_id:
            raise NotFoundError("Conversation", conversation.id)
        self._rows[conversation.id] = copy.deepcopy(conversation)
        return copy.deepcopy(conversation)

    def count(self) -> int:
        return len(self._rows)


class InMemoryMessageRepository(IMessageRepository):
    """Messages with insertion order as the tie-breaker for equal timestamps."""

    def __init__(self):
        self._rows: dict[UUID, Message] = {}
        self._sequence: dict[UUID, int] = {}
        self._counter = itertools.count()

    async def create(self, message: Message) -> Message:
        await _yield()
        self._rows[message.id] = copy.deepcopy(message)
        self._sequence[message.id] = next(self._counter)
        return copy.deepcopy(message)

    async def find_by_conversation(
        self, tenant_id: str, conversation_id: UUID, limit: int
    ) -> list[Message]:
        await _yield()
        rows = [
            m
            for m in self._rows.values()
            if m.conversation_id == conversation_id and m.tenant_id == tenant_id
        ]
        rows.sort(key=lambda m: (m.created_at, self._sequence[m.id]), reverse=True)
        return [copy.deepcopy(m) for m in rows[:limit]]

    async def update(self, message: Message) -> Message:
        await _yield()
        row = self._rows.get(message.id)
        if row is None or row.tenant_id != message.tenant_id:
            raise NotFoundError("Message", message.id)
        self._rows[message.id] = copy.deepcopy(message)
        return copy.deepcopy(message)

    async def exists_external_id(
        self, tenant_id: str, conversation_id: UUID, external_message_id: str
    ) -> bool:
        await _yield()
        return any(
            m.conversation_id == conversation_id
            and m.tenant_id == tenant_id
            and m.external_message_id == external_message_id
            for m in self._rows.values()
        )

    def all(self) -> list[Message]:
        """Every stored message in insertion order."""
        return [
            copy.deepcopy(m)
            for m in sorted(self._rows.values(), key=lambda m: self._sequence[m.id])
        ]


class InMemoryChannelRepository(IChannelRepository):
    def __init__(self, channels: Iterable[Channel] = ()):
        self._rows: dict[UUID, Channel] = {c.id: c for c in channels}

    def add(self, channel: Channel) -> None:
        self._rows[channel.id] = channel

    async def get(self, tenant_id: str, channel_id: UUID) -> Optional[Channel]:
        await _yield()
        row = self._rows.get(channel_id)
        if row is None or row.tenant_id != tenant_id:
            return None
        return copy.deepcopy(row)

    async def list_active(self) -> list[Channel]:
        await _yield()
        return [copy.deepcopy(c) for c in self._rows.values() if c.is_active]


class InMemoryAgentRepository(IAgentRepository):
    def __init__(self, agents: Iterable[VirtualAgent] = ()):
        self._rows: dict[UUID, VirtualAgent] = {a.id: a for a in agents}

    def add(self, agent: VirtualAgent) -> None:
        self._rows[agent.id] = agent

    async def get(self, tenant_id: str, agent_id: UUID) -> Optional[VirtualAgent]:
        await _yield()
        row = self._rows.get(agent_id)
        if row is None or row.tenant_id != tenant_id:
            return None
        return copy.deepcopy(row)

    async def find_first_active(self, tenant_id: str) -> Optional[VirtualAgent]:
        await _yield()
        candidates = [a for a in self._rows.values() if a.tenant_id == tenant_id and a.is_active]
        if not candidates:
            return None
        return copy.deepcopy(min(candidates, key=lambda a: a.created_at))
