"""
Completion Provider Factory.

Maps each provider kind to one shared provider instance.
"""

from __future__ import annotations

import logging
from typing import Iterable, Union

from ..domain.entities import ProviderKind
from ..domain.ports import ICompletionProvider
from ..exceptions import UnsupportedProviderError

logger = logging.getLogger(__name__)


class ProviderFactory:
    """Lookup table from provider kind to provider.

    Usage:
        factory = ProviderFactory([OpenAIProvider(http_client=client)])
        provider = factory.get(agent.provider)
    """

    def __init__(self, providers: Iterable[ICompletionProvider] = ()):
        self._providers: dict[ProviderKind, ICompletionProvider] = {}
        for provider in providers:
            self._providers[provider.kind] = provider
            logger.info(f"Registered completion provider {provider.kind.value}")

    def get(self, kind: Union[ProviderKind, str]) -> ICompletionProvider:
        """Return the provider for a kind.

        Raises:
            UnsupportedProviderError: If no provider is configured for it
        """
        try:
            key = ProviderKind(kind)
        except ValueError:
            raise UnsupportedProviderError(str(kind)) from None
        provider = self._providers.get(key)
        if provider is None:
            raise UnsupportedProviderError(key.value)
        return provider

    def supported_kinds(self) -> set[ProviderKind]:
        return set(self._providers)
