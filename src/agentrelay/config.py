"""
Runtime settings loaded from environment variables.

The entrypoint calls load_dotenv() before Settings.from_env(), so a
local .env file works the same as exported variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from .domain.schemas import DEFAULT_CONTEXT_MESSAGES, ToolServerConfig, parse_tool_servers
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}", cause=e) from e


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}", cause=e) from e


@dataclass
class Settings:
    """Process-wide settings.

    Attributes:
        database_url: PostgreSQL DSN; None selects in-memory repositories
        encryption_key: Hex AES-256 key for stored credentials
        tool_servers: Parsed MCP_SERVERS entries
        default_context_limit: History window when a channel sets none
        provider_max_attempts: Completion attempts per call (1 = no retry)
        provider_timeout: Per-request timeout for the completion backend
        response_deadline: Deadline for one full generate-and-send cycle
        telegram_poll_timeout: Long-poll timeout for getUpdates
        transcription_model: Model used for voice/audio transcription
        transcription_api_key: Key for the transcription endpoint
        log_level: Root log level
    """

    database_url: Optional[str] = None
    encryption_key: Optional[str] = None
    tool_servers: list[ToolServerConfig] = field(default_factory=list)
    default_context_limit: int = DEFAULT_CONTEXT_MESSAGES
    provider_max_attempts: int = 2
    provider_timeout: float = 60.0
    response_deadline: float = 120.0
    telegram_poll_timeout: int = 30
    transcription_model: str = "whisper-1"
    transcription_api_key: Optional[str] = None
    log_level: str = "INFO"

    def __post_init__(self):
        if self.provider_max_attempts < 1:
            raise ConfigurationError("PROVIDER_MAX_ATTEMPTS must be at least 1")
        if not 1 <= self.default_context_limit <= 100:
            raise ConfigurationError("DEFAULT_CONTEXT_LIMIT must be within 1..100")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current environment.

        Raises:
            ConfigurationError: On malformed values or MCP_SERVERS entries
        """
        settings = cls(
            database_url=os.getenv("DATABASE_URL") or None,
            encryption_key=os.getenv("ENCRYPTION_KEY") or None,
            tool_servers=parse_tool_servers(os.getenv("MCP_SERVERS")),
            default_context_limit=_int_env("DEFAULT_CONTEXT_LIMIT", DEFAULT_CONTEXT_MESSAGES),
            provider_max_attempts=_int_env("PROVIDER_MAX_ATTEMPTS", 2),
            provider_timeout=_float_env("PROVIDER_TIMEOUT", 60.0),
            response_deadline=_float_env("RESPONSE_DEADLINE", 120.0),
            telegram_poll_timeout=_int_env("TELEGRAM_POLL_TIMEOUT", 30),
            transcription_model=os.getenv("OPENAI_TRANSCRIPTION_MODEL", "whisper-1"),
            transcription_api_key=os.getenv("OPENAI_API_KEY") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
        logger.debug(
            f"Loaded settings: database={'yes' if settings.database_url else 'in-memory'}, "
            f"tool_servers={[s.name for s in settings.tool_servers]}"
        )
        return settings
