"""
Tool Adapter.

Bridges tool server tools and the completion provider's function-calling
format. Tool names are namespaced as mcp_<server>_<tool> so a call the
model emits can be routed back to its server from the name alone.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from ..domain.entities import ToolCall, ToolDefinition, ToolInvocation, ToolResult
from ..exceptions import MalformedArgumentsError, RelayError
from .registry import ToolServerRegistry

logger = logging.getLogger(__name__)

TOOLKIT_PREFIX = "mcp"
TOOL_NAME_PATTERN = re.compile(rf"^{TOOLKIT_PREFIX}_([^_]+)_(.+)$")

# JSON Schema keywords carried into the provider schema
SCALAR_SCHEMA_KEYS = (
    "type",
    "description",
    "enum",
    "default",
    "minimum",
    "maximum",
    "minLength",
    "maxLength",
    "pattern",
    "format",
)


def namespaced_name(server_name: str, tool_name: str) -> str:
    return f"{TOOLKIT_PREFIX}_{server_name}_{tool_name}"


def convert_property_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Convert one JSON Schema node, recursing into items and properties."""
    if not isinstance(schema, dict):
        return {}

    converted = {key: schema[key] for key in SCALAR_SCHEMA_KEYS if key in schema}

    if isinstance(schema.get("items"), dict):
        converted["items"] = convert_property_schema(schema["items"])

    if isinstance(schema.get("properties"), dict):
        converted["properties"] = {
            name: convert_property_schema(prop) for name, prop in schema["properties"].items()
        }
        if schema.get("required"):
            converted["required"] = list(schema["required"])

    for combinator in ("anyOf", "oneOf", "allOf"):
        if isinstance(schema.get(combinator), list):
            converted[combinator] = [convert_property_schema(s) for s in schema[combinator]]

    return converted


def convert_tool(tool: ToolDefinition) -> dict[str, Any]:
    """Convert one tool to an OpenAI function definition."""
    schema = tool.input_schema or {}
    properties = {
        name: convert_property_schema(prop)
        for name, prop in (schema.get("properties") or {}).items()
    }
    parameters: dict[str, Any] = {"type": "object", "properties": properties}
    if schema.get("required"):
        parameters["required"] = list(schema["required"])

    return {
        "type": "function",
        "function": {
            "name": namespaced_name(tool.server_name or "", tool.name),
            "description": tool.description or f"Tool from MCP server: {tool.server_name}",
            "parameters": parameters,
        },
    }


def convert_tools_to_provider_schema(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
    """Convert tool definitions to the provider's function-calling schema.

    Args:
        tools: Tools discovered from tool servers

    Returns:
        List of {"type": "function", "function": {...}} entries
    """
    return [convert_tool(tool) for tool in tools]


def extract_invocation(call_name: str, call_args_json: Optional[str]) -> Optional[ToolInvocation]:
    """Decode a model function call into a tool server invocation.

    Returns:
        The invocation, or None if the name is not a namespaced tool name

    Raises:
        MalformedArgumentsError: If the arguments are not a JSON object.
            None means no arguments; an empty string is not valid JSON.
    """
    match = TOOL_NAME_PATTERN.match(call_name or "")
    if not match:
        return None

    raw = "{}" if call_args_json is None else call_args_json
    try:
        arguments = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedArgumentsError(call_name, raw, cause=e) from e
    if not isinstance(arguments, dict):
        raise MalformedArgumentsError(call_name, raw)

    return ToolInvocation(
        server_name=match.group(1),
        tool_name=match.group(2),
        arguments=arguments,
    )


class ToolAdapter:
    """Discovers, converts and executes tool server tools for an agent.

    Usage:
        adapter = ToolAdapter(tool_server_registry)

        schema = await adapter.get_provider_schema(agent.parameters.mcp_server_names)
        result = await adapter.execute_call(tool_call)

    Architecture:
        - Discovery goes through ToolServerRegistry (cached per server)
        - Execution failures become error payloads, never exceptions
    """

    def __init__(self, registry: ToolServerRegistry):
        self.registry = registry

    async def get_provider_schema(
        self, server_names: Optional[list[str]] = None
    ) -> list[dict[str, Any]]:
        """Provider tool schema for the servers an agent may use.

        Args:
            server_names: Allowed servers; empty or None means all
        """
        tools = await self.registry.list_tools(server_names or None)
        return convert_tools_to_provider_schema(tools)

    async def execute(self, invocation: ToolInvocation) -> Any:
        """Run an invocation on its server.

        Returns:
            The tool output, or {"error": ..., "recoverable": ...} on failure
        """
        try:
            client = self.registry.get_client(invocation.server_name)
            return await client.call_tool(invocation.tool_name, invocation.arguments)
        except RelayError as e:
            logger.warning(
                f"Tool {invocation.server_name}/{invocation.tool_name} failed: {e.message}"
            )
            return {"error": e.message, "recoverable": e.recoverable}

    async def execute_call(self, tool_call: ToolCall) -> ToolResult:
        """Decode and run one model tool call.

        Names outside the tool namespace and malformed arguments produce an
        error result so the model can react.
        """
        try:
            invocation = extract_invocation(tool_call.name, tool_call.arguments)
        except MalformedArgumentsError as e:
            return ToolResult(
                call_id=tool_call.id,
                name=tool_call.name,
                content={"error": e.message, "recoverable": True},
            )

        if invocation is None:
            return ToolResult(
                call_id=tool_call.id,
                name=tool_call.name,
                content={"error": f"Tool {tool_call.name} not found", "recoverable": False},
            )

        output = await self.execute(invocation)
        return ToolResult(call_id=tool_call.id, name=tool_call.name, content=output)
