"""
Port interfaces (abstract base classes) for the orchestration engine.

These define the contracts that adapters must implement.
Following the Ports & Adapters (Hexagonal) architecture pattern.
Every repository call is tenant-scoped: the tenant id is part of
every filter.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional
from uuid import UUID

if TYPE_CHECKING:
    from .entities import (
        Attachment,
        Channel,
        CompletionRequest,
        CompletionResult,
        Conversation,
        MemberEvent,
        Message,
        MessageType,
        NormalizedMessage,
        OutboundMessage,
        ProcessedMedia,
        ProviderKind,
        ToolDefinition,
        VirtualAgent,
    )
    from .schemas import BaseChannelConfig


# ============================================
# Channel Adapter Interface
# ============================================


class IChannelAdapter(ABC):
    """Interface for one external messaging protocol.

    All config arrives decrypted, per call. Adapters never persist or
    log secrets.
    """

    @property
    @abstractmethod
    def channel_type(self) -> str:
        """Return the channel type this adapter serves."""
        pass

    @abstractmethod
    async def send_message(
        self,
        config: BaseChannelConfig,
        recipient_id: str,
        message: OutboundMessage,
    ) -> str:
        """Send a message and return the platform's message id.

        Raises:
            NoContentError: If the message has neither text nor attachments
            ChannelDeliveryError: On transport failure
        """
        pass

    @abstractmethod
    async def receive_message(
        self, config: BaseChannelConfig, raw_event: dict[str, Any]
    ) -> NormalizedMessage:
        """Normalize a raw inbound event.

        Raises:
            UnsupportedPayloadError: If the event shape is not recognized
        """
        pass

    @abstractmethod
    async def upload_document(
        self,
        config: BaseChannelConfig,
        recipient_id: str,
        url: str,
        file_name: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> str:
        """Upload a document and return the platform's file id."""
        pass

    @abstractmethod
    async def get_metadata(self, config: BaseChannelConfig) -> dict[str, Any]:
        """Report channel health as {is_healthy, last_error?, metadata?}.

        Never raises.
        """
        pass

    def detect_member_event(self, raw_event: dict[str, Any]) -> Optional[MemberEvent]:
        """Return a join/leave event if the raw event carries one."""
        return None


# ============================================
# Completion Provider Interface
# ============================================


class ICompletionProvider(ABC):
    """Interface for completion backends.

    One call in, one response out. Implementations never retry; the
    orchestrator owns retry policy. A provider instance is shared by all
    in-flight requests and holds no per-request state.
    """

    @property
    @abstractmethod
    def kind(self) -> ProviderKind:
        pass

    @abstractmethod
    async def generate_completion(self, request: CompletionRequest) -> CompletionResult:
        """Execute a single completion call.

        Raises:
            ProviderError: On any transport/auth error from the backend
        """
        pass

    async def stream_completion(self, request: CompletionRequest) -> AsyncIterator[str]:
        """Yield reply text deltas. Optional extension."""
        raise NotImplementedError(f"{type(self).__name__} does not stream")
        yield  # pragma: no cover


# ============================================
# Tool Server Interface
# ============================================


class IToolServerClient(ABC):
    """Interface for one connection to an external tool server."""

    @property
    @abstractmethod
    def server_name(self) -> str:
        pass

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection. Called once at startup."""
        pass

    @abstractmethod
    async def list_tools(self) -> list[ToolDefinition]:
        pass

    @abstractmethod
    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        """Invoke a tool.

        Raises:
            ToolExecutionError: On failure
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


# ============================================
# Repository Interfaces
# ============================================


class IConversationRepository(ABC):
    """Persistence for conversations."""

    @abstractmethod
    async def get(self, tenant_id: str, conversation_id: UUID) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def find_by_external_id(
        self, tenant_id: str, channel_id: UUID, external_channel_id: str
    ) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def create(self, conversation: Conversation) -> Conversation:
        """Insert a conversation.

        If one already exists for (channel_id, external_channel_id) the
        stored conversation is returned instead of inserting a second.
        """
        pass

    @abstractmethod
    async def update(self, conversation: Conversation) -> Conversation:
        pass


class IMessageRepository(ABC):
    """Persistence for messages."""

    @abstractmethod
    async def create(self, message: Message) -> Message:
        pass

    @abstractmethod
    async def find_by_conversation(
        self, tenant_id: str, conversation_id: UUID, limit: int
    ) -> list[Message]:
        """Return up to limit messages, newest first."""
        pass

    @abstractmethod
    async def update(self, message: Message) -> Message:
        pass

    @abstractmethod
    async def exists_external_id(
        self, tenant_id: str, conversation_id: UUID, external_message_id: str
    ) -> bool:
        pass


class IChannelRepository(ABC):
    """Read access to configured channels."""

    @abstractmethod
    async def get(self, tenant_id: str, channel_id: UUID) -> Optional[Channel]:
        pass

    @abstractmethod
    async def list_active(self) -> list[Channel]:
        """All active channels across tenants (listener startup)."""
        pass


class IAgentRepository(ABC):
    """Read access to virtual agents."""

    @abstractmethod
    async def get(self, tenant_id: str, agent_id: UUID) -> Optional[VirtualAgent]:
        pass

    @abstractmethod
    async def find_first_active(self, tenant_id: str) -> Optional[VirtualAgent]:
        """The tenant's oldest active agent."""
        pass


# ============================================
# Security / Media Interfaces
# ============================================


class ISecretStore(ABC):
    """Credential-at-rest encryption."""

    @abstractmethod
    def encrypt(self, plaintext: str) -> str:
        pass

    @abstractmethod
    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a credential.

        Raises:
            CredentialError: On any failure; never falls back
        """
        pass


class IMediaProcessor(ABC):
    """Turns an attachment reference into context-ready content."""

    @abstractmethod
    async def process(
        self,
        attachment: Attachment,
        media_type: MessageType,
        channel_config: Optional[BaseChannelConfig],
    ) -> Optional[ProcessedMedia]:
        """Return text or inline image data, or None if not processable."""
        pass
