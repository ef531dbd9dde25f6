"""
Conversation Manager.

Handles conversation lifecycle: lookup or creation per external chat,
participant bookkeeping and message storage.

Every method here assumes the caller holds the per-conversation lock;
the read-modify-write on participants is not safe otherwise.
"""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from ..domain.entities import (
    AuthorRole,
    Channel,
    Conversation,
    ConversationType,
    MemberEvent,
    Message,
    MessageStatus,
    MessageType,
    NormalizedMessage,
    Participant,
    VirtualAgent,
)
from ..domain.ports import IAgentRepository, IConversationRepository, IMessageRepository

logger = logging.getLogger(__name__)


class ConversationManager:
    """Manages conversation lifecycle operations.

    Usage:
        manager = ConversationManager(conversations, messages, agents)

        conversation, created = await manager.get_or_create(tenant_id, channel, normalized)
        conversation = await manager.add_participant_if_new(conversation, normalized)
        message = await manager.add_user_message(conversation, normalized)
    """

    def __init__(
        self,
        conversations: IConversationRepository,
        messages: IMessageRepository,
        agents: IAgentRepository,
    ):
        self.conversations = conversations
        self.messages = messages
        self.agents = agents

    async def resolve_default_agent(self, tenant_id: str, channel: Channel) -> Optional[UUID]:
        """The channel's default agent, else the tenant's first active agent."""
        if channel.default_agent_id is not None:
            return channel.default_agent_id
        agent = await self.agents.find_first_active(tenant_id)
        return agent.id if agent else None

    async def get_or_create(
        self,
        tenant_id: str,
        channel: Channel,
        normalized: NormalizedMessage,
    ) -> tuple[Conversation, bool]:
        """Get the conversation for an external chat, creating it on first contact.

        Args:
            tenant_id: Tenant for isolation
            channel: Channel the event arrived on
            normalized: The normalized inbound event

        Returns:
            (conversation, created)
        """
        conversation = await self.conversations.find_by_external_id(
            tenant_id, channel.id, normalized.external_channel_id
        )
        if conversation is not None:
            return conversation, False

        candidate = Conversation(
            tenant_id=tenant_id,
            channel_id=channel.id,
            external_channel_id=normalized.external_channel_id,
            type=ConversationType.from_chat_type(normalized.chat_type),
            agent_id=await self.resolve_default_agent(tenant_id, channel),
            participants=[
                Participant(
                    external_id=normalized.author_id,
                    display_name=normalized.author_name,
                )
            ],
        )
        conversation = await self.conversations.create(candidate)
        created = conversation.id == candidate.id
        if created:
            logger.info(
                f"Created {conversation.type.value} conversation {conversation.id} "
                f"for chat {normalized.external_channel_id} on channel {channel.id}"
            )
        return conversation, created

    async def add_participant_if_new(
        self, conversation: Conversation, normalized: NormalizedMessage
    ) -> Conversation:
        """Append the sender to a group conversation they have not posted in.

        Failures are logged and swallowed; they never block the message.
        """
        if not conversation.is_group:
            return conversation
        try:
            added = conversation.add_participant(
                Participant(external_id=normalized.author_id, display_name=normalized.author_name)
            )
            if added:
                conversation = await self.conversations.update(conversation)
                logger.info(
                    f"Added participant {normalized.author_id} to conversation {conversation.id}"
                )
        except Exception as e:
            logger.warning(
                f"Failed to add participant {normalized.author_id} "
                f"to conversation {conversation.id}: {e}"
            )
        return conversation

    async def apply_member_event(
        self, conversation: Conversation, event: MemberEvent
    ) -> Conversation:
        """Record joins and leaves on a group conversation."""
        changed = False
        for participant in event.joined:
            changed = conversation.add_participant(participant) or changed
        for external_id in event.left:
            changed = conversation.remove_participant(external_id) or changed
        if changed:
            conversation = await self.conversations.update(conversation)
            logger.info(
                f"Conversation {conversation.id}: {len(event.joined)} joined, "
                f"{len(event.left)} left"
            )
        return conversation

    async def is_duplicate(self, conversation: Conversation, normalized: NormalizedMessage) -> bool:
        """True when this platform message id was already stored."""
        if not normalized.external_message_id:
            return False
        return await self.messages.exists_external_id(
            conversation.tenant_id, conversation.id, normalized.external_message_id
        )

    async def add_user_message(
        self, conversation: Conversation, normalized: NormalizedMessage
    ) -> Message:
        """Persist an inbound message and account for it on the conversation."""
        message = await self.messages.create(
            Message(
                conversation_id=conversation.id,
                tenant_id=conversation.tenant_id,
                role=AuthorRole.USER,
                type=MessageType.parse(normalized.type),
                content=normalized.content,
                attachments=list(normalized.attachments),
                external_message_id=normalized.external_message_id,
                author_id=normalized.author_id,
                author_name=normalized.author_name,
                status=MessageStatus.DELIVERED,
                metadata=dict(normalized.metadata),
            )
        )
        await self._record_activity(conversation)
        logger.debug(f"Stored {message.type.value} message {message.id} in {conversation.id}")
        return message

    async def add_agent_message(
        self,
        conversation: Conversation,
        agent: VirtualAgent,
        text: str,
        metadata: dict,
    ) -> Message:
        """Persist a generated reply before it is dispatched."""
        message = await self.messages.create(
            Message(
                conversation_id=conversation.id,
                tenant_id=conversation.tenant_id,
                role=AuthorRole.AGENT,
                type=MessageType.TEXT,
                content=text,
                author_id=str(agent.id),
                author_name=agent.name,
                status=MessageStatus.PENDING,
                metadata=metadata,
            )
        )
        await self._record_activity(conversation)
        return message

    async def get_last_message(self, tenant_id: str, conversation_id: UUID) -> Optional[Message]:
        latest = await self.messages.find_by_conversation(tenant_id, conversation_id, 1)
        return latest[0] if latest else None

    async def _record_activity(self, conversation: Conversation) -> None:
        conversation.record_activity()
        await self.conversations.update(conversation)
