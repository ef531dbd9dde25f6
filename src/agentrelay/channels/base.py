"""
Base Channel Adapter.

Provides common functionality for all channel adapters.
"""

from __future__ import annotations

import logging
from abc import ABC
from typing import Any, Mapping, Optional, TypeVar

from ..domain.entities import OutboundMessage
from ..domain.ports import IChannelAdapter
from ..domain.schemas import BaseChannelConfig
from ..exceptions import ConfigurationError, NoContentError

logger = logging.getLogger(__name__)

ConfigT = TypeVar("ConfigT", bound=BaseChannelConfig)


class BaseChannelAdapter(IChannelAdapter, ABC):
    """Base class for channel adapter implementations.

    Subclasses implement the four capabilities for one platform and
    declare channel_type.
    """

    channel_type: str = ""

    def _require_config(self, config: BaseChannelConfig, expected: type[ConfigT]) -> ConfigT:
        """Check the typed config matches this adapter."""
        if not isinstance(config, expected):
            raise ConfigurationError(
                f"{type(self).__name__} received {type(config).__name__}, "
                f"expected {expected.__name__}"
            )
        return config

    def _require_content(self, message: OutboundMessage) -> None:
        if message.is_empty:
            raise NoContentError(channel_type=self.channel_type)

    @staticmethod
    def _display_name(user: Mapping[str, Any]) -> Optional[str]:
        return user.get("username") or " ".join(
            filter(None, [user.get("first_name"), user.get("last_name")])
        ).strip() or None

    @staticmethod
    def _health(
        is_healthy: bool,
        last_error: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        report: dict[str, Any] = {"is_healthy": is_healthy}
        if last_error:
            report["last_error"] = last_error
        if metadata:
            report["metadata"] = metadata
        return report
