"""
Channel Registry.

Maps each channel type to exactly one adapter instance. Adapters are
registered once at process start and looked up per inbound event.
"""

from __future__ import annotations

import logging
from typing import Iterable, Union

from ..domain.entities import ChannelType
from ..domain.ports import IChannelAdapter
from ..exceptions import ConfigurationError, UnsupportedChannelError

logger = logging.getLogger(__name__)


class ChannelRegistry:
    """Lookup table from channel type to adapter.

    Usage:
        registry = ChannelRegistry([TelegramAdapter(http_client)])

        adapter = registry.resolve(channel.type)
        registry.supported_types()  # {ChannelType.TELEGRAM}

    Architecture:
        - Unknown types are rejected explicitly, never defaulted
        - Registering a second adapter for a type is a configuration error
    """

    def __init__(self, adapters: Iterable[IChannelAdapter] = ()):
        self._adapters: dict[ChannelType, IChannelAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: IChannelAdapter) -> None:
        """Register an adapter under its channel_type.

        Raises:
            ConfigurationError: If the type is unknown or already registered
        """
        try:
            channel_type = ChannelType(adapter.channel_type)
        except ValueError as e:
            raise ConfigurationError(
                f"Adapter {type(adapter).__name__} declares unknown channel type "
                f"{adapter.channel_type!r}",
                cause=e,
            ) from e
        if channel_type in self._adapters:
            raise ConfigurationError(f"Adapter already registered for {channel_type.value}")
        self._adapters[channel_type] = adapter
        logger.info(f"Registered {type(adapter).__name__} for channel type {channel_type.value}")

    def resolve(self, channel_type: Union[ChannelType, str]) -> IChannelAdapter:
        """Return the adapter for a channel type.

        Raises:
            UnsupportedChannelError: If no adapter is registered
        """
        try:
            key = ChannelType(channel_type)
        except ValueError:
            raise UnsupportedChannelError(str(channel_type)) from None

        adapter = self._adapters.get(key)
        if adapter is None:
            raise UnsupportedChannelError(key.value)
        return adapter

    def supported_types(self) -> set[ChannelType]:
        return set(self._adapters)
