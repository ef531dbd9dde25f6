"""
Pydantic schemas for channel, agent and tool-server configuration.

Configuration enters the system as JSON (database columns, environment
variables). It is validated once here into typed models; everything
downstream receives the typed object and never re-validates.
"""

from typing import Annotated, Any, Callable, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, Field, SecretStr, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ConfigurationError


# =============================================================================
# Constants
# =============================================================================

DEFAULT_CONTEXT_MESSAGES = 20
MAX_CONTEXT_MESSAGES = 100


# =============================================================================
# Agent Parameters
# =============================================================================


class AgentParameters(BaseModel):
    """Sampling parameters and behaviour switches of a virtual agent."""

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    frequency_penalty: Optional[float] = Field(default=None, ge=-2.0, le=2.0)
    presence_penalty: Optional[float] = Field(default=None, ge=-2.0, le=2.0)
    system_prompt: Optional[str] = None
    mcp_server_names: list[str] = Field(default_factory=list)

    model_config = {"extra": "ignore"}


# =============================================================================
# Channel Configuration (tagged union on "type")
# =============================================================================


class BaseChannelConfig(BaseModel):
    """Fields common to every channel type.

    Secret fields are stored encrypted; with_decrypted_secrets returns a
    per-call copy holding plaintext.
    """

    SECRET_FIELDS: ClassVar[tuple[str, ...]] = ()

    max_context_messages: int = Field(
        default=DEFAULT_CONTEXT_MESSAGES, ge=1, le=MAX_CONTEXT_MESSAGES
    )

    model_config = {"extra": "forbid", "frozen": True}

    def with_decrypted_secrets(self, decrypt: Callable[[str], str]):
        """Return a copy with every secret field decrypted."""
        update = {
            name: SecretStr(decrypt(getattr(self, name).get_secret_value()))
            for name in self.SECRET_FIELDS
            if getattr(self, name) is not None
        }
        return self.model_copy(update=update)


class TelegramChannelConfig(BaseChannelConfig):
    SECRET_FIELDS: ClassVar[tuple[str, ...]] = ("bot_token",)

    type: Literal["telegram"] = "telegram"
    bot_token: SecretStr
    api_base_url: str = "https://api.telegram.org"
    polling: bool = True


class WhatsAppChannelConfig(BaseChannelConfig):
    SECRET_FIELDS: ClassVar[tuple[str, ...]] = ("access_token",)

    type: Literal["whatsapp"] = "whatsapp"
    phone_number_id: str
    access_token: SecretStr


class SlackChannelConfig(BaseChannelConfig):
    SECRET_FIELDS: ClassVar[tuple[str, ...]] = ("bot_token",)

    type: Literal["slack"] = "slack"
    bot_token: SecretStr


class WebChannelConfig(BaseChannelConfig):
    type: Literal["web"] = "web"
    allowed_origins: list[str] = Field(default_factory=list)


class ApiChannelConfig(BaseChannelConfig):
    SECRET_FIELDS: ClassVar[tuple[str, ...]] = ("webhook_secret",)

    type: Literal["api"] = "api"
    webhook_url: Optional[str] = None
    webhook_secret: Optional[SecretStr] = None


ChannelConfig = Annotated[
    Union[
        TelegramChannelConfig,
        WhatsAppChannelConfig,
        SlackChannelConfig,
        WebChannelConfig,
        ApiChannelConfig,
    ],
    Field(discriminator="type"),
]

_channel_config_adapter: TypeAdapter = TypeAdapter(ChannelConfig)


def parse_channel_config(data: dict[str, Any]) -> BaseChannelConfig:
    """Validate a raw channel config blob into its typed variant.

    Raises:
        ConfigurationError: If the blob is not a valid channel config
    """
    try:
        return _channel_config_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ConfigurationError(
            f"Invalid channel configuration: {e.error_count()} error(s)",
            details={"errors": [err["msg"] for err in e.errors()]},
            cause=e,
        ) from e


# =============================================================================
# Tool Server Configuration
# =============================================================================


class ToolServerConfig(BaseModel):
    """One entry of the MCP_SERVERS list."""

    name: str = Field(..., min_length=1)
    type: Literal["stdio", "http"]
    command: Optional[str] = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    timeout: float = Field(default=30.0, gt=0)

    @field_validator("name")
    @classmethod
    def _name_has_no_separator(cls, value: str) -> str:
        # The name is one segment of mcp_<server>_<tool>
        if "_" in value:
            raise ValueError("server name must not contain '_'")
        return value

    @model_validator(mode="after")
    def _transport_fields_present(self) -> "ToolServerConfig":
        if self.type == "stdio" and not self.command:
            raise ValueError("stdio server requires 'command'")
        if self.type == "http" and not self.url:
            raise ValueError("http server requires 'url'")
        return self


_tool_servers_adapter: TypeAdapter = TypeAdapter(list[ToolServerConfig])


def parse_tool_servers(raw: Optional[str]) -> list[ToolServerConfig]:
    """Parse the MCP_SERVERS JSON array.

    Returns an empty list when unset.

    Raises:
        ConfigurationError: On invalid JSON, invalid entries or duplicate names
    """
    if not raw or not raw.strip():
        return []
    try:
        servers = _tool_servers_adapter.validate_json(raw)
    except PydanticValidationError as e:
        raise ConfigurationError(
            "Invalid MCP_SERVERS configuration",
            details={"errors": [err["msg"] for err in e.errors()]},
            cause=e,
        ) from e

    seen: set[str] = set()
    for server in servers:
        if server.name in seen:
            raise ConfigurationError(
                f"Duplicate MCP server name: {server.name}",
                details={"name": server.name},
            )
        seen.add(server.name)
    return servers
