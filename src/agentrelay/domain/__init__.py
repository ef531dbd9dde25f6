"""Domain entities, configuration schemas and port interfaces."""

from .entities import (
    Attachment,
    AuthorRole,
    Channel,
    ChannelType,
    CompletionRequest,
    CompletionResult,
    Conversation,
    ConversationStatus,
    ConversationType,
    MemberEvent,
    Message,
    MessageStatus,
    MessageType,
    NormalizedMessage,
    OutboundMessage,
    Participant,
    ParticipantRole,
    ProcessedMedia,
    ProviderKind,
    TokenUsage,
    ToolCall,
    ToolDefinition,
    ToolInvocation,
    ToolResult,
    VirtualAgent,
)
from .ports import (
    IAgentRepository,
    IChannelAdapter,
    IChannelRepository,
    ICompletionProvider,
    IConversationRepository,
    IMediaProcessor,
    IMessageRepository,
    ISecretStore,
    IToolServerClient,
)
from .schemas import (
    AgentParameters,
    BaseChannelConfig,
    TelegramChannelConfig,
    ToolServerConfig,
    parse_channel_config,
    parse_tool_servers,
)

__all__ = [
    # Entities
    "Attachment",
    "AuthorRole",
    "Channel",
    "ChannelType",
    "CompletionRequest",
    "CompletionResult",
    "Conversation",
    "ConversationStatus",
    "ConversationType",
    "MemberEvent",
    "Message",
    "MessageStatus",
    "MessageType",
    "NormalizedMessage",
    "OutboundMessage",
    "Participant",
    "ParticipantRole",
    "ProcessedMedia",
    "ProviderKind",
    "TokenUsage",
    "ToolCall",
    "ToolDefinition",
    "ToolInvocation",
    "ToolResult",
    "VirtualAgent",
    # Ports
    "IAgentRepository",
    "IChannelAdapter",
    "IChannelRepository",
    "ICompletionProvider",
    "IConversationRepository",
    "IMediaProcessor",
    "IMessageRepository",
    "ISecretStore",
    "IToolServerClient",
    # Schemas
    "AgentParameters",
    "BaseChannelConfig",
    "TelegramChannelConfig",
    "ToolServerConfig",
    "parse_channel_config",
    "parse_tool_servers",
]
