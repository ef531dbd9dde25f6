"""Exception hierarchy for the conversation orchestration engine.

Every error raised by agentrelay derives from RelayError, so callers at
the edge (channel listeners, the entrypoint) can catch the whole family
with a single clause and still inspect code/details/recoverable.

Exception Hierarchy:
    RelayError (base)
    ├── ConfigurationError (unrecoverable - fix config)
    ├── NotFoundError (missing tenant-scoped record)
    ├── InvalidStatusTransitionError
    ├── CredentialError (decryption failure, never defaulted)
    ├── ChannelError
    │   ├── UnsupportedChannelError
    │   ├── UnsupportedPayloadError
    │   ├── NoContentError
    │   └── ChannelDeliveryError (may be recoverable)
    ├── ProviderError (may be recoverable - retry)
    │   └── UnsupportedProviderError
    └── ToolError
        ├── MalformedArgumentsError
        └── ToolExecutionError (folded into tool results)
"""
from datetime import datetime
from typing import Any, Optional

# ============================================
# Base Exception
# ============================================

class RelayError(Exception):
    """Base exception for all agentrelay errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "CHANNEL_DELIVERY_ERROR")
        details: Additional context as a dictionary
        timestamp: When the error occurred
        cause: The original exception that caused this error
        recoverable: Whether this error might be recoverable with retry
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.utcnow()
        self.cause = cause
        self.recoverable = recoverable

        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [f"[{self.code}]", self.message]
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Configuration / Records
# ============================================

class ConfigurationError(RelayError):
    """Raised when configuration is missing or invalid.

    These errors require fixing configuration before retry.
    """

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


class NotFoundError(RelayError):
    """Raised when a tenant-scoped record does not exist."""

    def __init__(self, resource_type: str, resource_id: Any, **kwargs):
        details = kwargs.pop("details", {})
        details["resource_type"] = resource_type
        details["resource_id"] = str(resource_id)
        super().__init__(
            f"{resource_type} not found: {resource_id}",
            code="NOT_FOUND",
            details=details,
            **kwargs,
        )


class InvalidStatusTransitionError(RelayError):
    """Raised when a conversation status change is not allowed."""

    def __init__(self, current: str, target: str, **kwargs):
        super().__init__(
            f"Cannot move conversation from {current} to {target}",
            code="INVALID_STATUS_TRANSITION",
            details={"current": current, "target": target},
            **kwargs,
        )


class CredentialError(RelayError):
    """Raised when a stored credential cannot be decrypted.

    Never recoverable: callers must not fall back to another key.
    """

    def __init__(self, message: str = "Failed to decrypt credential", **kwargs):
        super().__init__(
            message,
            code="CREDENTIAL_ERROR",
            recoverable=False,
            **kwargs,
        )


# ============================================
# Channel Errors
# ============================================

class ChannelError(RelayError):
    """Base class for channel adapter errors."""

    def __init__(self, message: str, channel_type: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if channel_type:
            details["channel_type"] = channel_type
        super().__init__(message, details=details, **kwargs)


class UnsupportedChannelError(ChannelError):
    """Raised when no adapter is registered for a channel type."""

    def __init__(self, channel_type: str, **kwargs):
        super().__init__(
            f"Unsupported channel type: {channel_type}",
            channel_type=channel_type,
            code="UNSUPPORTED_CHANNEL",
            **kwargs,
        )


class UnsupportedPayloadError(ChannelError):
    """Raised when an inbound event has a shape the adapter cannot read."""

    def __init__(self, message: str = "Unsupported payload", **kwargs):
        super().__init__(message, code="UNSUPPORTED_PAYLOAD", **kwargs)


class NoContentError(ChannelError):
    """Raised when an outbound message has neither text nor attachments."""

    def __init__(self, message: str = "Message must have content or attachments", **kwargs):
        super().__init__(message, code="NO_CONTENT", **kwargs)


class ChannelDeliveryError(ChannelError):
    """Raised when the channel transport fails to deliver a message."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code:
            details["status_code"] = status_code
        kwargs.setdefault("recoverable", True)
        super().__init__(
            message,
            code="CHANNEL_DELIVERY_ERROR",
            details=details,
            **kwargs,
        )


# ============================================
# Provider Errors
# ============================================

class ProviderError(RelayError):
    """Raised when the completion backend call fails.

    recoverable is True for rate limits, timeouts, connection failures
    and server errors; False for authentication and bad requests.
    """

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if provider:
            details["provider"] = provider
        if status_code:
            details["status_code"] = status_code
        kwargs.setdefault("code", "PROVIDER_ERROR")
        super().__init__(message, details=details, **kwargs)


class UnsupportedProviderError(ProviderError):
    """Raised when an agent selects a provider with no implementation."""

    def __init__(self, provider: str, **kwargs):
        super().__init__(
            f"Unsupported completion provider: {provider}",
            provider=provider,
            code="UNSUPPORTED_PROVIDER",
            recoverable=False,
            **kwargs,
        )


# ============================================
# Tool Errors
# ============================================

class ToolError(RelayError):
    """Base class for tool server errors."""

    def __init__(self, message: str, tool_name: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if tool_name:
            details["tool_name"] = tool_name
        super().__init__(message, details=details, **kwargs)
        self.tool_name = tool_name


class MalformedArgumentsError(ToolError):
    """Raised when a tool call's argument string is not valid JSON."""

    def __init__(self, tool_name: str, raw_arguments: str, **kwargs):
        super().__init__(
            f"Invalid JSON arguments for {tool_name}",
            tool_name=tool_name,
            code="MALFORMED_ARGUMENTS",
            details={"raw_arguments": raw_arguments[:200]},
            **kwargs,
        )


class ToolExecutionError(ToolError):
    """Raised by tool server clients when a call fails.

    The tool adapter converts it into an error result payload; it never
    reaches the orchestrator.
    """

    def __init__(self, message: str, tool_name: Optional[str] = None, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(
            message,
            tool_name=tool_name,
            code="TOOL_EXECUTION_ERROR",
            **kwargs,
        )
