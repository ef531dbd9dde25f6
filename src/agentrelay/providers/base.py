"""
Base Completion Provider Implementation.

Provides common functionality for all completion providers.
"""

from __future__ import annotations

import logging
from abc import ABC
from dataclasses import dataclass
from typing import Any

from ..domain.entities import CompletionRequest
from ..domain.ports import ICompletionProvider
from ..domain.schemas import AgentParameters

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7


@dataclass
class CompletionProviderConfig:
    """Process-level configuration for a completion provider.

    Per-agent settings (model, key, endpoint, sampling) travel on each
    request; only transport settings live here.

    Attributes:
        timeout: Request timeout in seconds
        tool_choice: Tool choice sent when tools are offered
    """

    timeout: float = 60.0
    tool_choice: str = "auto"


class BaseCompletionProvider(ICompletionProvider, ABC):
    """Base class for completion provider implementations.

    Provides parameter mapping from agent configuration and message
    assembly shared by OpenAI-compatible backends.
    """

    def __init__(self, config: CompletionProviderConfig | None = None):
        """Initialize the provider.

        Args:
            config: Provider configuration
        """
        self.config = config or CompletionProviderConfig()

    @staticmethod
    def sampling_params(parameters: AgentParameters) -> dict[str, Any]:
        """Map agent parameters to request parameters.

        Unset optional parameters are omitted so the backend default applies.
        """
        params: dict[str, Any] = {
            "temperature": (
                parameters.temperature
                if parameters.temperature is not None
                else DEFAULT_TEMPERATURE
            ),
        }
        optional = {
            "max_tokens": parameters.max_tokens,
            "top_p": parameters.top_p,
            "frequency_penalty": parameters.frequency_penalty,
            "presence_penalty": parameters.presence_penalty,
        }
        params.update({k: v for k, v in optional.items() if v is not None})
        return params

    @staticmethod
    def assemble_messages(request: CompletionRequest) -> list[dict[str, Any]]:
        """Context messages plus the user message when not already last."""
        messages = list(request.context_messages)
        if request.user_message:
            last = messages[-1] if messages else None
            if last is None or last.get("role") != "user":
                messages.append({"role": "user", "content": request.user_message})
        return messages
