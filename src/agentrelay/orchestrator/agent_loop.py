"""
Agentic Loop.

Drives the bounded request -> tool calls -> tool results -> re-request
cycle for one reply.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

from ..domain.entities import (
    CompletionRequest,
    CompletionResult,
    TokenUsage,
    ToolCall,
    ToolResult,
)
from ..domain.ports import ICompletionProvider
from ..exceptions import ProviderError
from ..providers.base import BaseCompletionProvider
from ..resilience import retry_async
from .tool_executor import ToolExecutor

logger = logging.getLogger(__name__)

# Additional completion calls allowed after the first one
MAX_TOOL_ROUNDS = 1


@dataclass
class LoopOutcome:
    """Result of one agentic loop run.

    Attributes:
        final: The completion whose text is the reply
        usage: Token usage summed over every completion call
        tool_calls: Tool calls the model emitted (raw records)
        tool_results: Results fed back for those calls
        completion_calls: Number of completion calls issued
    """

    final: CompletionResult
    usage: TokenUsage = field(default_factory=TokenUsage)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    completion_calls: int = 0

    @property
    def reply_text(self) -> Optional[str]:
        return self.final.reply_text

    @property
    def model(self) -> Optional[str]:
        return self.final.model

    def to_metadata(self) -> dict[str, Any]:
        """Record stored on the agent message."""
        return {
            "model": self.final.model,
            "tokens": self.usage.to_dict(),
            "finish_reason": self.final.finish_reason,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "tool_results": [tr.to_dict() for tr in self.tool_results],
            "completion_calls": self.completion_calls,
        }


def _retryable(error: Exception) -> bool:
    return isinstance(error, ProviderError) and error.recoverable


class AgenticLoop:
    """Bounded tool-calling loop.

    The provider is called once. If it asks for tools, each call runs in
    order, the assistant tool-call turn and one tool turn per call are
    appended, and the provider is called exactly once more without tools.
    Tool calls in that second response are ignored, as are tool calls
    from a loop built without a tool executor.

    Usage:
        loop = AgenticLoop(tool_executor, max_attempts=2)
        outcome = await loop.run(provider, request, conversation_id)
    """

    def __init__(
        self,
        tool_executor: Optional[ToolExecutor] = None,
        max_attempts: int = 1,
        retry_initial_delay: float = 1.0,
    ):
        """Initialize the loop.

        Args:
            tool_executor: Executor for tool calls; None disables tools
            max_attempts: Completion attempts per call for recoverable errors
            retry_initial_delay: First backoff delay in seconds
        """
        self.tool_executor = tool_executor
        self.max_attempts = max_attempts
        self.retry_initial_delay = retry_initial_delay

    async def _complete(
        self, provider: ICompletionProvider, request: CompletionRequest
    ) -> CompletionResult:
        return await retry_async(
            provider.generate_completion,
            request,
            max_attempts=self.max_attempts,
            initial_delay=self.retry_initial_delay,
            retryable_exceptions=(ProviderError,),
            retry_if=_retryable,
        )

    async def run(
        self,
        provider: ICompletionProvider,
        request: CompletionRequest,
        conversation_id: Optional[UUID] = None,
    ) -> LoopOutcome:
        """Run the loop for one reply.

        Raises:
            ProviderError: If a completion call fails after retries
        """
        messages = BaseCompletionProvider.assemble_messages(request)
        tools = request.tools if self.tool_executor is not None else []
        outcome: Optional[LoopOutcome] = None
        usage = TokenUsage()

        for round_index in range(MAX_TOOL_ROUNDS + 1):
            is_last_round = round_index == MAX_TOOL_ROUNDS
            round_request = dataclasses.replace(
                request,
                context_messages=messages,
                user_message=None,
                tools=[] if is_last_round else tools,
            )
            result = await self._complete(provider, round_request)
            usage = usage + result.usage

            if outcome is None:
                outcome = LoopOutcome(final=result)
            outcome.final = result
            outcome.completion_calls += 1

            if not result.tool_calls or is_last_round or self.tool_executor is None:
                if result.tool_calls:
                    logger.warning(
                        f"Ignoring {len(result.tool_calls)} tool calls "
                        f"(round {round_index}, tools available: {self.tool_executor is not None})"
                    )
                break

            results = await self.tool_executor.execute_tool_calls(result.tool_calls, conversation_id)
            outcome.tool_calls.extend(result.tool_calls)
            outcome.tool_results.extend(results)

            messages = messages + [
                {
                    "role": "assistant",
                    "content": result.reply_text,
                    "tool_calls": [tc.to_openai_format() for tc in result.tool_calls],
                },
                *(
                    {"role": "tool", "tool_call_id": r.call_id, "content": r.content_as_text()}
                    for r in results
                ),
            ]

        outcome.usage = usage
        logger.info(
            f"Agentic loop finished: {outcome.completion_calls} completion call(s), "
            f"{len(outcome.tool_calls)} tool call(s), {usage.total_tokens} tokens"
        )
        return outcome
