"""
Domain entities for the conversation orchestration engine.

These are pure domain objects with no infrastructure dependencies.
They define the conversation state tracked per external chat, the
normalized channel message shape, and the value types exchanged with
completion providers and tool servers.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from ..exceptions import InvalidStatusTransitionError

if TYPE_CHECKING:
    from .schemas import AgentParameters, ChannelConfig


# ============================================
# Enumerations
# ============================================


class ConversationType(str, Enum):
    """Kind of external chat a conversation mirrors."""

    PRIVATE = "private"
    GROUP = "group"
    BROADCAST = "broadcast"

    @classmethod
    def from_chat_type(cls, chat_type: Optional[str]) -> "ConversationType":
        """Map a channel-reported chat type hint to a conversation type.

        Telegram reports private/group/supergroup/channel. Anything
        unknown or missing is treated as a private chat.
        """
        if chat_type in ("group", "supergroup"):
            return cls.GROUP
        if chat_type == "channel":
            return cls.BROADCAST
        return cls.PRIVATE


class ConversationStatus(str, Enum):
    """Lifecycle status of a conversation."""

    OPEN = "open"
    PAUSED = "paused"
    CLOSED = "closed"
    ARCHIVED = "archived"


ALLOWED_STATUS_TRANSITIONS: dict[ConversationStatus, frozenset[ConversationStatus]] = {
    ConversationStatus.OPEN: frozenset({ConversationStatus.PAUSED, ConversationStatus.CLOSED}),
    ConversationStatus.PAUSED: frozenset({ConversationStatus.OPEN, ConversationStatus.CLOSED}),
    ConversationStatus.CLOSED: frozenset({ConversationStatus.ARCHIVED}),
    ConversationStatus.ARCHIVED: frozenset(),
}


class ParticipantRole(str, Enum):
    """Role of a participant within a conversation."""

    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"
    ADMIN = "admin"


class AuthorRole(str, Enum):
    """Who authored a message."""

    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class MessageType(str, Enum):
    """Content type of a message."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VOICE = "voice"
    VIDEO = "video"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"
    COMMAND = "command"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: Optional[str]) -> "MessageType":
        """Parse a channel-reported type string, falling back to text."""
        try:
            return cls(value)
        except ValueError:
            return cls.TEXT


class MessageStatus(str, Enum):
    """Delivery status of a message."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    DELETED = "deleted"


TERMINAL_MESSAGE_STATUSES = frozenset(
    {MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED, MessageStatus.DELETED}
)


class ChannelType(str, Enum):
    """Supported external messaging platforms."""

    TELEGRAM = "telegram"
    WHATSAPP = "whatsapp"
    SLACK = "slack"
    WEB = "web"
    API = "api"


class ProviderKind(str, Enum):
    """Completion backends an agent can be configured with."""

    OPENAI = "openai"


# ============================================
# Conversation State
# ============================================


@dataclass
class Participant:
    """A member of a conversation, identified by the platform's user id.

    Attributes:
        external_id: Platform-native identity id
        display_name: Name shown in context blocks
        role: Participant role
        joined_at: When the participant was first seen
        left_at: When the participant left (group chats only)
    """

    external_id: str
    display_name: Optional[str] = None
    role: ParticipantRole = ParticipantRole.USER
    joined_at: Optional[datetime] = None
    left_at: Optional[datetime] = None

    def __post_init__(self):
        if self.joined_at is None:
            self.joined_at = datetime.utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "display_name": self.display_name,
            "role": self.role.value,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
            "left_at": self.left_at.isoformat() if self.left_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Participant":
        return cls(
            external_id=str(data["external_id"]),
            display_name=data.get("display_name"),
            role=ParticipantRole(data.get("role", "user")),
            joined_at=_parse_datetime(data.get("joined_at")),
            left_at=_parse_datetime(data.get("left_at")),
        )


@dataclass(frozen=True)
class Attachment:
    """A media reference attached to a message. Immutable once attached.

    Attributes:
        url: Content reference (platform file id or URL)
        mime_type: MIME type of the content
        file_name: Original file name
        size: Size in bytes
        width: Pixel width (images/video)
        height: Pixel height (images/video)
        duration: Duration in seconds (audio/video)
    """

    url: str
    mime_type: str
    file_name: Optional[str] = None
    size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Attachment":
        return cls(
            url=data["url"],
            mime_type=data.get("mime_type", "application/octet-stream"),
            file_name=data.get("file_name"),
            size=data.get("size"),
            width=data.get("width"),
            height=data.get("height"),
            duration=data.get("duration"),
        )


@dataclass
class Message:
    """A single message in a conversation.

    Attributes:
        conversation_id: Owning conversation
        tenant_id: Tenant for isolation
        role: Author role
        type: Content type
        content: Optional text content
        attachments: Ordered attachments
        external_message_id: The platform's own message id
        author_id: Platform identity of the author (user messages)
        author_name: Display name of the author
        status: Delivery status
        metadata: Model id, token usage, tool-call record, channel metadata
        id: Unique message identifier
        created_at: Creation timestamp
    """

    conversation_id: uuid.UUID
    tenant_id: str
    role: AuthorRole
    type: MessageType = MessageType.TEXT
    content: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)
    external_message_id: Optional[str] = None
    author_id: Optional[str] = None
    author_name: Optional[str] = None
    status: MessageStatus = MessageStatus.PENDING
    metadata: dict[str, Any] = field(default_factory=dict)
    id: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.id is None:
            self.id = uuid.uuid4()
        if self.created_at is None:
            self.created_at = datetime.utcnow()

    @property
    def has_text(self) -> bool:
        return bool(self.content and self.content.strip())

    @property
    def tool_calls(self) -> list[ToolCall]:
        """Tool calls the model emitted when producing this message."""
        return [ToolCall.from_dict(tc) for tc in self.metadata.get("tool_calls") or []]

    @property
    def tool_results(self) -> list[ToolResult]:
        return [ToolResult.from_dict(tr) for tr in self.metadata.get("tool_results") or []]

    def mark_sent(self, external_message_id: Optional[str]) -> None:
        """Record a successful dispatch."""
        self._transition(MessageStatus.SENT)
        self.external_message_id = external_message_id

    def mark_failed(self, reason: str) -> None:
        """Record a failed dispatch."""
        self._transition(MessageStatus.FAILED)
        self.metadata["delivery_error"] = reason

    def _transition(self, target: MessageStatus) -> None:
        if self.status in TERMINAL_MESSAGE_STATUSES:
            raise InvalidStatusTransitionError(self.status.value, target.value)
        self.status = target


@dataclass
class Conversation:
    """The persistent thread correlating one external chat with a tenant,
    channel and (optionally) agent.

    (channel_id, external_channel_id) is unique; repositories enforce it.

    Attributes:
        tenant_id: Tenant for isolation
        channel_id: Channel the chat belongs to
        external_channel_id: Platform-native chat id
        type: Conversation type
        status: Lifecycle status
        agent_id: Assigned virtual agent
        participants: Ordered participants
        context: Free-form context map
        last_activity_at: Timestamp of the last inbound/outbound message
        message_count: Number of persisted messages
        id: Unique conversation identifier
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    tenant_id: str
    channel_id: uuid.UUID
    external_channel_id: str
    type: ConversationType = ConversationType.PRIVATE
    status: ConversationStatus = ConversationStatus.OPEN
    agent_id: Optional[uuid.UUID] = None
    participants: list[Participant] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    last_activity_at: Optional[datetime] = None
    message_count: int = 0
    id: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.id is None:
            self.id = uuid.uuid4()
        if self.created_at is None:
            self.created_at = datetime.utcnow()
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def is_open(self) -> bool:
        return self.status == ConversationStatus.OPEN

    @property
    def is_group(self) -> bool:
        return self.type == ConversationType.GROUP

    def find_participant(self, external_id: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.external_id == external_id:
                return participant
        return None

    def has_participant(self, external_id: str) -> bool:
        return self.find_participant(external_id) is not None

    def add_participant(self, participant: Participant) -> bool:
        """Append a participant if unseen. Returns True if added.

        A returning participant who had left is re-activated instead.
        """
        existing = self.find_participant(participant.external_id)
        if existing is None:
            self.participants.append(participant)
            return True
        if existing.left_at is not None:
            existing.left_at = None
            return True
        return False

    def remove_participant(self, external_id: str, at: Optional[datetime] = None) -> bool:
        """Stamp left_at on a participant. Returns True if changed."""
        existing = self.find_participant(external_id)
        if existing is None or existing.left_at is not None:
            return False
        existing.left_at = at or datetime.utcnow()
        return True

    def record_activity(self, at: Optional[datetime] = None) -> None:
        """Account for one more persisted message."""
        self.message_count += 1
        self.last_activity_at = at or datetime.utcnow()
        self.updated_at = self.last_activity_at

    def transition_to(self, target: ConversationStatus) -> None:
        """Change status, enforcing the lifecycle.

        Raises:
            InvalidStatusTransitionError: If the transition is not allowed
        """
        if target == self.status:
            return
        if target not in ALLOWED_STATUS_TRANSITIONS[self.status]:
            raise InvalidStatusTransitionError(self.status.value, target.value)
        self.status = target
        self.updated_at = datetime.utcnow()


# ============================================
# Channel Messages
# ============================================


@dataclass
class NormalizedMessage:
    """A channel event reduced to the platform-independent shape.

    Attributes:
        external_channel_id: Platform chat id
        author_id: Platform user id of the sender
        type: Dominant content type
        author_name: Sender display name
        content: Text content (or caption)
        attachments: Media attached to the message
        external_message_id: Platform message id
        metadata: Platform extras; always carries chat_type
    """

    external_channel_id: str
    author_id: str
    type: MessageType = MessageType.TEXT
    author_name: Optional[str] = None
    content: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)
    external_message_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def chat_type(self) -> Optional[str]:
        return self.metadata.get("chat_type")


@dataclass
class MemberEvent:
    """Members joining or leaving a group chat."""

    external_channel_id: str
    joined: list[Participant] = field(default_factory=list)
    left: list[str] = field(default_factory=list)


@dataclass
class OutboundMessage:
    """Content to send through a channel adapter."""

    text: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.attachments


# ============================================
# Tools
# ============================================


@dataclass
class ToolDefinition:
    """A tool as declared by a tool server.

    Attributes:
        name: Tool name on its server
        description: Human description
        input_schema: JSON Schema for the arguments
        server_name: Server exposing the tool
    """

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)
    server_name: Optional[str] = None


@dataclass
class ToolCall:
    """A function call record exactly as the model emitted it.

    Arguments stay a raw JSON string so the record can be replayed
    verbatim to the provider.
    """

    id: str
    name: str
    arguments: str = "{}"

    def to_openai_format(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        # Accept both the flat stored shape and the provider's nested shape
        function = data.get("function")
        if function:
            return cls(id=data["id"], name=function["name"], arguments=function.get("arguments") or "{}")
        return cls(id=data["id"], name=data["name"], arguments=data.get("arguments") or "{}")


@dataclass(frozen=True)
class ToolInvocation:
    """A decoded call to one tool on one server. Never persisted."""

    server_name: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """Outcome of one tool call, fed back as a tool turn."""

    call_id: str
    name: str
    content: Any = None

    @property
    def is_error(self) -> bool:
        return isinstance(self.content, dict) and "error" in self.content

    def content_as_text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, default=str)

    def to_dict(self) -> dict[str, Any]:
        return {"call_id": self.call_id, "name": self.name, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolResult":
        return cls(call_id=data["call_id"], name=data["name"], content=data.get("content"))


# ============================================
# Completion
# ============================================


@dataclass
class TokenUsage:
    """Token accounting for one or more completion calls."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt": self.prompt_tokens,
            "completion": self.completion_tokens,
            "total": self.total_tokens,
        }


@dataclass
class CompletionRequest:
    """Input to a single completion call.

    Attributes:
        agent: Agent whose model and parameters drive the call
        api_key: Decrypted agent credential, scoped to this call
        context_messages: Provider-format message list
        user_message: Latest user text, appended when not already last
        tools: Provider-format tool schema
    """

    agent: VirtualAgent
    api_key: str
    context_messages: list[dict[str, Any]]
    user_message: Optional[str] = None
    tools: list[dict[str, Any]] = field(default_factory=list)

    def __repr__(self) -> str:
        return (
            f"CompletionRequest(agent={self.agent.id}, "
            f"messages={len(self.context_messages)}, tools={len(self.tools)})"
        )


@dataclass
class CompletionResult:
    """Output of a single completion call."""

    reply_text: Optional[str]
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: Optional[str] = None


@dataclass
class ProcessedMedia:
    """Result of processing an attachment for context.

    Exactly one of text or inline_image is set.
    """

    text: Optional[str] = None
    inline_image: Optional[str] = None
    mime_type: Optional[str] = None


# ============================================
# Configuration Records
# ============================================


@dataclass
class VirtualAgent:
    """A named configuration bundle driving completions.

    Attributes:
        id: Agent identifier
        tenant_id: Owning tenant
        name: Display name
        provider: Completion backend
        model: Model id
        api_key_encrypted: Provider credential, encrypted at rest
        endpoint_url: Backend base URL
        parameters: Sampling parameters, prompt and tool filter
        is_active: Whether the agent can be selected
    """

    tenant_id: str
    name: str
    model: str
    api_key_encrypted: str
    parameters: AgentParameters
    provider: ProviderKind = ProviderKind.OPENAI
    endpoint_url: str = "https://api.openai.com/v1"
    is_active: bool = True
    id: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.id is None:
            self.id = uuid.uuid4()
        if self.created_at is None:
            self.created_at = datetime.utcnow()


@dataclass
class Channel:
    """A configured connection to one messaging platform instance.

    config holds secrets encrypted; they are decrypted per call.
    """

    tenant_id: str
    name: str
    config: ChannelConfig
    default_agent_id: Optional[uuid.UUID] = None
    is_active: bool = True
    id: Optional[uuid.UUID] = None

    def __post_init__(self):
        if self.id is None:
            self.id = uuid.uuid4()

    @property
    def type(self) -> ChannelType:
        return ChannelType(self.config.type)

    @property
    def mention_token(self) -> str:
        return f"@{self.name}"

    @property
    def max_context_messages(self) -> int:
        return self.config.max_context_messages


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
