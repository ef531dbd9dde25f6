"""Repository implementations (in-memory and PostgreSQL)."""

from .memory import (
    InMemoryAgentRepository,
    InMemoryChannelRepository,
    InMemoryConversationRepository,
    InMemoryMessageRepository,
)
from .postgres import (
    PostgresAgentRepository,
    PostgresChannelRepository,
    PostgresConversationRepository,
    PostgresMessageRepository,
    create_pool,
    ensure_schema,
)

__all__ = [
    "InMemoryAgentRepository",
    "InMemoryChannelRepository",
    "InMemoryConversationRepository",
    "InMemoryMessageRepository",
    "PostgresAgentRepository",
    "PostgresChannelRepository",
    "PostgresConversationRepository",
    "PostgresMessageRepository",
    "create_pool",
    "ensure_schema",
]
