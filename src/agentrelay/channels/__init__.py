"""Channel adapters, registry and listeners."""

from .base import BaseChannelAdapter
from .listeners import ListenerRegistry, TelegramPoller
from .registry import ChannelRegistry
from .telegram import TelegramAdapter

__all__ = [
    "BaseChannelAdapter",
    "ChannelRegistry",
    "ListenerRegistry",
    "TelegramAdapter",
    "TelegramPoller",
]
