"""
OpenAI Completion Provider.

Implements the ICompletionProvider interface for OpenAI's chat
completions API (and OpenAI-compatible endpoints via endpoint_url).
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional

import httpx
import openai
from openai import AsyncOpenAI

from ..domain.entities import (
    CompletionRequest,
    CompletionResult,
    ProviderKind,
    TokenUsage,
    ToolCall,
)
from ..exceptions import ProviderError
from .base import BaseCompletionProvider, CompletionProviderConfig

logger = logging.getLogger(__name__)


class OpenAIProvider(BaseCompletionProvider):
    """OpenAI chat completions provider.

    Supports:
    - Any chat model reachable at the agent's endpoint_url
    - Tool/function calling
    - Optional streaming of reply text

    Usage:
        provider = OpenAIProvider(http_client=httpx.AsyncClient())

        result = await provider.generate_completion(
            CompletionRequest(agent=agent, api_key=key, context_messages=messages)
        )

    Architecture:
        - One shared httpx client carries the connection pool
        - The API key arrives per request; an AsyncOpenAI wrapper is built
          around the shared pool for each call and dropped afterwards
        - SDK retries are disabled; the orchestrator owns retry policy
    """

    def __init__(
        self,
        config: Optional[CompletionProviderConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the OpenAI provider.

        Args:
            config: Provider configuration
            http_client: Shared HTTP client for all requests
        """
        super().__init__(config)
        self._http_client = http_client or httpx.AsyncClient(timeout=self.config.timeout)
        self._owns_client = http_client is None

    @property
    def kind(self) -> ProviderKind:
        return ProviderKind.OPENAI

    def _client_for(self, request: CompletionRequest) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=request.api_key,
            base_url=request.agent.endpoint_url,
            timeout=self.config.timeout,
            max_retries=0,
            http_client=self._http_client,
        )

    def _build_params(self, request: CompletionRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": request.agent.model,
            "messages": self.assemble_messages(request),
            **self.sampling_params(request.agent.parameters),
        }
        if request.tools:
            params["tools"] = request.tools
            params["tool_choice"] = self.config.tool_choice
        return params

    async def generate_completion(self, request: CompletionRequest) -> CompletionResult:
        """Execute one non-streaming chat completion.

        Raises:
            ProviderError: On any API or transport error
        """
        client = self._client_for(request)
        params = self._build_params(request)

        try:
            response = await client.chat.completions.create(**params)
        except openai.APIError as e:
            raise self._map_error(e) from e

        if not response.choices:
            raise ProviderError(
                "OpenAI returned no choices",
                provider=self.kind.value,
                recoverable=True,
            )

        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=tc.function.arguments or "{}",
            )
            for tc in (message.tool_calls or [])
            if getattr(tc, "function", None) is not None
        ]

        usage = TokenUsage()
        if response.usage:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )

        logger.debug(
            f"OpenAI completion: model={response.model} finish={choice.finish_reason} "
            f"tool_calls={len(tool_calls)} tokens={usage.total_tokens}"
        )

        return CompletionResult(
            reply_text=message.content,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason,
            usage=usage,
            model=response.model or request.agent.model,
        )

    async def stream_completion(self, request: CompletionRequest) -> AsyncIterator[str]:
        """Yield reply text deltas. Tool calls are not offered when streaming."""
        client = self._client_for(request)
        params = self._build_params(request)
        params.pop("tools", None)
        params.pop("tool_choice", None)

        try:
            stream = await client.chat.completions.create(stream=True, **params)
            async for chunk in stream:
                choice = chunk.choices[0] if chunk.choices else None
                if choice and choice.delta and choice.delta.content:
                    yield choice.delta.content
        except openai.APIError as e:
            raise self._map_error(e) from e

    def _map_error(self, error: openai.APIError) -> ProviderError:
        """Wrap an SDK error, classifying whether a retry can help."""
        status_code = getattr(error, "status_code", None)

        if isinstance(error, openai.RateLimitError):
            logger.warning(f"Rate limited by OpenAI: {error.message}")
            recoverable, code = True, "PROVIDER_RATE_LIMITED"
        elif isinstance(error, openai.APITimeoutError):
            logger.error(f"OpenAI API timeout: {error.message}")
            recoverable, code = True, "PROVIDER_TIMEOUT"
        elif isinstance(error, openai.APIConnectionError):
            logger.error(f"OpenAI connection error: {error.message}")
            recoverable, code = True, "PROVIDER_UNAVAILABLE"
        elif isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
            logger.error(f"OpenAI rejected credentials: {error.message}")
            recoverable, code = False, "PROVIDER_AUTH_ERROR"
        elif isinstance(error, openai.APIStatusError) and error.status_code >= 500:
            logger.error(f"OpenAI server error: {error.message}")
            recoverable, code = True, "PROVIDER_ERROR"
        else:
            logger.error(f"OpenAI API error: {error.message}")
            recoverable, code = False, "PROVIDER_ERROR"

        return ProviderError(
            f"OpenAI request failed: {error.message}",
            provider=self.kind.value,
            status_code=status_code,
            code=code,
            recoverable=recoverable,
            cause=error,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()
