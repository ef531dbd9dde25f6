"""
Conversation Orchestrator.

Main orchestration logic for inbound chat traffic. Coordinates:
- Channel resolution and event normalization
- Conversation lookup/creation and participant tracking
- Message persistence
- Reply generation through the bounded agentic loop
- Dispatch back through the channel adapter
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Hashable, Optional
from uuid import UUID

from ..channels.registry import ChannelRegistry
from ..domain.entities import (
    Channel,
    CompletionRequest,
    Conversation,
    MemberEvent,
    Message,
    NormalizedMessage,
    OutboundMessage,
)
from ..domain.ports import (
    IAgentRepository,
    IChannelAdapter,
    IChannelRepository,
    IConversationRepository,
    IMessageRepository,
    ISecretStore,
)
from ..domain.schemas import DEFAULT_CONTEXT_MESSAGES, BaseChannelConfig
from ..exceptions import ChannelDeliveryError, ChannelError, NotFoundError
from ..providers.factory import ProviderFactory
from ..resilience import with_timeout
from ..tools.adapter import ToolAdapter
from .agent_loop import AgenticLoop
from .context_builder import ContextBuilder
from .conversation_manager import ConversationManager
from .locks import KeyedLocks, Turn
from .tool_executor import ToolExecutor

logger = logging.getLogger(__name__)


class IncomingOutcome(str, Enum):
    """How an inbound event was resolved."""

    REPLIED = "replied"
    INACTIVE = "inactive"
    NO_AGENT = "no_agent"
    NOT_ADDRESSED = "not_addressed"
    DUPLICATE = "duplicate"
    NO_TEXT = "no_text"
    NO_REPLY = "no_reply"
    MEMBERSHIP = "membership"


@dataclass
class IncomingResult:
    """Result of handling one inbound event.

    Attributes:
        outcome: How the event was resolved
        conversation: The conversation the event belongs to
        message: The persisted user message, if one was stored
        reply: The persisted agent reply, if one was generated
    """

    outcome: IncomingOutcome
    conversation: Optional[Conversation] = None
    message: Optional[Message] = None
    reply: Optional[Message] = None

    @property
    def replied(self) -> bool:
        return self.outcome == IncomingOutcome.REPLIED


@dataclass
class OrchestratorConfig:
    """Configuration for the conversation orchestrator.

    Attributes:
        default_context_limit: History window when a channel sets none
        provider_max_attempts: Completion attempts per call for recoverable errors
        response_deadline: Seconds allowed for one generate-and-send cycle
        retry_initial_delay: First backoff delay between completion attempts
    """

    default_context_limit: int = DEFAULT_CONTEXT_MESSAGES
    provider_max_attempts: int = 2
    response_deadline: Optional[float] = 120.0
    retry_initial_delay: float = 1.0


@dataclass
class _Admission:
    """A normalized event holding its reserved place on the chat."""

    channel: Channel
    adapter: IChannelAdapter
    turn: Turn
    config: Optional[BaseChannelConfig] = None
    normalized: Optional[NormalizedMessage] = None
    member_event: Optional[MemberEvent] = None


class ConversationOrchestrator:
    """Routes inbound channel events to agents and replies back.

    Usage:
        orchestrator = ConversationOrchestrator(
            channels=channel_repo,
            conversations=conversation_repo,
            messages=message_repo,
            agents=agent_repo,
            channel_registry=channel_registry,
            providers=provider_factory,
            secrets=encryption_service,
            context_builder=ContextBuilder(message_repo, media_processor),
            tool_adapter=tool_adapter,
        )

        result = await orchestrator.handle_incoming_message(tenant_id, channel_id, update)

    Architecture:
        - Channel lookup and normalization run under a short per-channel
          lock that reserves the chat's turn, so events on one chat are
          processed in the order they were received
        - Everything from conversation lookup to dispatch runs under the
          lock for (tenant, channel, external chat), so history order
          matches request order and participant writes never interleave
        - Reply generation runs under a deadline; cancellation reaches
          every network call and nothing is dispatched afterwards
        - Secrets are decrypted per call and never stored on self
    """

    def __init__(
        self,
        channels: IChannelRepository,
        conversations: IConversationRepository,
        messages: IMessageRepository,
        agents: IAgentRepository,
        channel_registry: ChannelRegistry,
        providers: ProviderFactory,
        secrets: ISecretStore,
        context_builder: Optional[ContextBuilder] = None,
        tool_adapter: Optional[ToolAdapter] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.channels = channels
        self.conversations = conversations
        self.messages = messages
        self.agents = agents
        self.channel_registry = channel_registry
        self.providers = providers
        self.secrets = secrets
        self.context_builder = context_builder or ContextBuilder(messages)
        self.tool_adapter = tool_adapter
        self.config = config or OrchestratorConfig()

        self.manager = ConversationManager(conversations, messages, agents)
        self.loop = AgenticLoop(
            tool_executor=ToolExecutor(tool_adapter) if tool_adapter else None,
            max_attempts=self.config.provider_max_attempts,
            retry_initial_delay=self.config.retry_initial_delay,
        )
        self.locks = KeyedLocks()

    # ============================================
    # Inbound
    # ============================================

    async def handle_event(
        self, tenant_id: str, channel_id: UUID, raw_event: dict[str, Any]
    ) -> IncomingResult:
        """Route a raw event to member handling or message handling."""
        admission = await self._admit(tenant_id, channel_id, raw_event, detect_members=True)
        async with admission.turn:
            if admission.member_event is not None:
                conversation = await self._apply_member_event(
                    tenant_id, admission.channel, admission.member_event
                )
                return IncomingResult(IncomingOutcome.MEMBERSHIP, conversation=conversation)
            return await self._handle_message(tenant_id, admission)

    async def handle_incoming_message(
        self, tenant_id: str, channel_id: UUID, raw_event: dict[str, Any]
    ) -> IncomingResult:
        """Process one inbound event end to end.

        Args:
            tenant_id: Tenant owning the channel
            channel_id: Channel the event arrived on
            raw_event: Channel-specific payload, interpreted by the adapter

        Returns:
            IncomingResult describing what happened

        Raises:
            NotFoundError: If the channel does not exist for the tenant
            UnsupportedChannelError: If no adapter serves the channel type
            UnsupportedPayloadError: If the adapter cannot normalize the event
            CredentialError: If a stored secret cannot be decrypted
            ProviderError: If generation fails after retries
            ChannelDeliveryError: If the generated reply cannot be dispatched
        """
        admission = await self._admit(tenant_id, channel_id, raw_event)
        async with admission.turn:
            return await self._handle_message(tenant_id, admission)

    async def _admit(
        self,
        tenant_id: str,
        channel_id: UUID,
        raw_event: dict[str, Any],
        detect_members: bool = False,
    ) -> _Admission:
        """Load the channel, normalize the event and reserve the chat's turn.

        Runs under a short per-channel lock, so events on one channel
        reserve their chat turn in call order even when the channel
        lookup takes longer for an earlier event than for a later one.
        """
        async with self.locks.hold(self._arrival_key(tenant_id, channel_id)):
            channel = await self._load_channel(tenant_id, channel_id)
            adapter = self.channel_registry.resolve(channel.type)

            if detect_members:
                member_event = adapter.detect_member_event(raw_event)
                if member_event is not None:
                    key = self._lock_key(tenant_id, channel.id, member_event.external_channel_id)
                    return _Admission(
                        channel, adapter, self.locks.reserve(key), member_event=member_event
                    )

            config = channel.config.with_decrypted_secrets(self.secrets.decrypt)
            normalized = await adapter.receive_message(config, raw_event)
            key = self._lock_key(tenant_id, channel.id, normalized.external_channel_id)
            return _Admission(
                channel, adapter, self.locks.reserve(key), config=config, normalized=normalized
            )

    async def _handle_message(self, tenant_id: str, admission: _Admission) -> IncomingResult:
        channel = admission.channel
        normalized = admission.normalized

        conversation, created = await self.manager.get_or_create(tenant_id, channel, normalized)
        if not created:
            conversation = await self.manager.add_participant_if_new(conversation, normalized)

        if await self.manager.is_duplicate(conversation, normalized):
            logger.info(
                f"Ignoring duplicate message {normalized.external_message_id} "
                f"in conversation {conversation.id}"
            )
            return IncomingResult(IncomingOutcome.DUPLICATE, conversation=conversation)

        message = await self.manager.add_user_message(conversation, normalized)
        result = IncomingResult(IncomingOutcome.REPLIED, conversation, message)

        if not conversation.is_open:
            logger.debug(
                f"Conversation {conversation.id} is {conversation.status.value}, not replying"
            )
            result.outcome = IncomingOutcome.INACTIVE
            return result

        if conversation.agent_id is None:
            logger.debug(f"Conversation {conversation.id} has no agent assigned")
            result.outcome = IncomingOutcome.NO_AGENT
            return result

        if conversation.is_group and not self._is_addressed(channel, message):
            result.outcome = IncomingOutcome.NOT_ADDRESSED
            return result

        if not message.has_text:
            result.outcome = IncomingOutcome.NO_TEXT
            return result

        reply = await with_timeout(
            self._generate_and_send,
            self.config.response_deadline,
            conversation,
            conversation.agent_id,
            channel,
            admission.config,
            admission.adapter,
            normalized.external_channel_id,
        )
        result.reply = reply
        if reply is None:
            result.outcome = IncomingOutcome.NO_REPLY
        return result

    async def handle_member_event(
        self, tenant_id: str, channel: Channel, event: MemberEvent
    ) -> Optional[Conversation]:
        """Apply joins/leaves to an existing group conversation.

        Events for chats with no conversation yet are ignored; the
        conversation is created by the first message instead.
        """
        key = self._lock_key(tenant_id, channel.id, event.external_channel_id)
        async with self.locks.hold(key):
            return await self._apply_member_event(tenant_id, channel, event)

    async def _apply_member_event(
        self, tenant_id: str, channel: Channel, event: MemberEvent
    ) -> Optional[Conversation]:
        conversation = await self.conversations.find_by_external_id(
            tenant_id, channel.id, event.external_channel_id
        )
        if conversation is None or not conversation.is_group:
            logger.debug(
                f"No group conversation for chat {event.external_channel_id}, "
                "ignoring member event"
            )
            return conversation
        return await self.manager.apply_member_event(conversation, event)

    # ============================================
    # Outbound
    # ============================================

    async def generate_and_send_response(
        self,
        tenant_id: str,
        conversation_id: UUID,
        agent_id: UUID,
        channel: Channel,
        recipient_id: str,
    ) -> Optional[Message]:
        """Generate a reply to the latest message and dispatch it.

        Returns:
            The persisted agent message, or None if there was nothing to
            answer or the model produced no text

        Raises:
            NotFoundError: If the conversation or agent does not exist
            UnsupportedProviderError: If the agent's provider is not configured
            CredentialError: If the agent key or channel secret cannot be decrypted
            ProviderError: If generation fails after retries
            ChannelDeliveryError: If dispatch fails; the reply stays persisted
            asyncio.TimeoutError: If the response deadline passes
        """
        conversation = await self.conversations.get(tenant_id, conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation", conversation_id)

        adapter = self.channel_registry.resolve(channel.type)
        config = channel.config.with_decrypted_secrets(self.secrets.decrypt)

        key = self._lock_key(tenant_id, conversation.channel_id, conversation.external_channel_id)
        async with self.locks.hold(key):
            return await with_timeout(
                self._generate_and_send,
                self.config.response_deadline,
                conversation,
                agent_id,
                channel,
                config,
                adapter,
                recipient_id,
            )

    async def _generate_and_send(
        self,
        conversation: Conversation,
        agent_id: UUID,
        channel: Channel,
        config: BaseChannelConfig,
        adapter: IChannelAdapter,
        recipient_id: str,
    ) -> Optional[Message]:
        tenant_id = conversation.tenant_id

        last = await self.manager.get_last_message(tenant_id, conversation.id)
        if last is None or not last.has_text:
            logger.debug(f"Nothing to respond to in conversation {conversation.id}")
            return None

        agent = await self.agents.get(tenant_id, agent_id)
        if agent is None:
            raise NotFoundError("VirtualAgent", agent_id)

        provider = self.providers.get(agent.provider)
        api_key = self.secrets.decrypt(agent.api_key_encrypted)

        context = await self.context_builder.build_context(
            tenant_id,
            conversation.id,
            system_prompt=agent.parameters.system_prompt,
            limit=self._context_limit(channel),
            channel_config=config,
        )
        tools = []
        if self.tool_adapter is not None:
            tools = await self.tool_adapter.get_provider_schema(agent.parameters.mcp_server_names)

        outcome = await self.loop.run(
            provider,
            CompletionRequest(
                agent=agent,
                api_key=api_key,
                context_messages=context,
                user_message=last.content,
                tools=tools,
            ),
            conversation.id,
        )

        if not outcome.reply_text or not outcome.reply_text.strip():
            logger.warning(
                f"Agent {agent.id} returned no text for conversation {conversation.id} "
                f"(finish_reason={outcome.final.finish_reason})"
            )
            return None

        reply = await self.manager.add_agent_message(
            conversation, agent, outcome.reply_text, outcome.to_metadata()
        )
        return await self._dispatch(reply, config, adapter, recipient_id)

    async def _dispatch(
        self,
        reply: Message,
        config: BaseChannelConfig,
        adapter: IChannelAdapter,
        recipient_id: str,
    ) -> Message:
        """Send a persisted reply and record the outcome on it."""
        try:
            external_id = await adapter.send_message(
                config, recipient_id, OutboundMessage(text=reply.content)
            )
        except ChannelError as e:
            logger.error(f"Failed to deliver message {reply.id} to {recipient_id}: {e.message}")
            reply.mark_failed(e.message)
            await self.messages.update(reply)
            if isinstance(e, ChannelDeliveryError):
                raise
            raise ChannelDeliveryError(
                f"Failed to deliver message {reply.id}: {e.message}",
                channel_type=adapter.channel_type,
                cause=e,
            ) from e

        reply.mark_sent(external_id)
        reply = await self.messages.update(reply)
        logger.info(f"Delivered message {reply.id} as {external_id} to {recipient_id}")
        return reply

    # ============================================
    # Helpers
    # ============================================

    async def _load_channel(self, tenant_id: str, channel_id: UUID) -> Channel:
        channel = await self.channels.get(tenant_id, channel_id)
        if channel is None:
            raise NotFoundError("Channel", channel_id)
        return channel

    def _context_limit(self, channel: Channel) -> int:
        if "max_context_messages" in channel.config.model_fields_set:
            return channel.max_context_messages
        return self.config.default_context_limit

    @staticmethod
    def _is_addressed(channel: Channel, message: Message) -> bool:
        return channel.mention_token in (message.content or "")

    @staticmethod
    def _lock_key(tenant_id: str, channel_id: UUID, external_channel_id: str) -> Hashable:
        return (tenant_id, str(channel_id), external_channel_id)

    @staticmethod
    def _arrival_key(tenant_id: str, channel_id: UUID) -> Hashable:
        return ("arrival", tenant_id, str(channel_id))
