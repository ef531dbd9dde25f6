"""Completion provider implementations."""

from .base import BaseCompletionProvider, CompletionProviderConfig
from .factory import ProviderFactory
from .openai import OpenAIProvider

__all__ = [
    "BaseCompletionProvider",
    "CompletionProviderConfig",
    "ProviderFactory",
    "OpenAIProvider",
]
