"""
Tool Executor.

Handles execution of model tool calls with error handling. Coordinates
with ToolAdapter to route calls to the right tool server.
"""

from __future__ import annotations

import logging
from uuid import UUID

from ..domain.entities import ToolCall, ToolResult
from ..tools.adapter import ToolAdapter

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Executes tool calls with error handling.

    Ensures that tool execution errors are caught and returned as
    recoverable error results rather than propagating, so a failing tool
    never aborts the agentic loop.

    Usage:
        executor = ToolExecutor(tool_adapter)

        results = await executor.execute_tool_calls(tool_calls, conversation_id)

    Architecture:
        - Delegates to ToolAdapter for decoding and execution
        - Catches all exceptions and converts to error results
        - Every call gets exactly one result, in call order
    """

    def __init__(self, tool_adapter: ToolAdapter):
        """Initialize the tool executor.

        Args:
            tool_adapter: Adapter for decoding and executing tool calls
        """
        self.tools = tool_adapter

    async def execute_tool_call(self, tool_call: ToolCall, conversation_id: UUID) -> ToolResult:
        """Execute a tool call with error handling.

        Args:
            tool_call: Tool call emitted by the model
            conversation_id: Current conversation ID for logging

        Returns:
            ToolResult with either the tool output or an error payload
        """
        logger.info(f"Executing tool {tool_call.name} for conversation {conversation_id}")

        try:
            result = await self.tools.execute_call(tool_call)
        except Exception as e:
            logger.error(f"Tool execution failed: {e}")
            return ToolResult(
                call_id=tool_call.id,
                name=tool_call.name,
                content={"error": str(e), "recoverable": True},
            )

        if result.is_error:
            logger.warning(f"Tool {tool_call.name} returned error: {result.content['error']}")
        return result

    async def execute_tool_calls(
        self, tool_calls: list[ToolCall], conversation_id: UUID
    ) -> list[ToolResult]:
        """Execute multiple tool calls sequentially.

        A failed tool call does not stop execution of subsequent tools.
        """
        results = []
        for tool_call in tool_calls:
            results.append(await self.execute_tool_call(tool_call, conversation_id))
        return results
