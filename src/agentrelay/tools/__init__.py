"""Tool server clients, registry and provider adapter."""

from .adapter import (
    TOOLKIT_PREFIX,
    ToolAdapter,
    convert_tools_to_provider_schema,
    extract_invocation,
    namespaced_name,
)
from .mcp_client import BaseMCPClient, HttpMCPClient, StdioMCPClient, create_mcp_client
from .registry import ToolServerRegistry

__all__ = [
    "TOOLKIT_PREFIX",
    "ToolAdapter",
    "convert_tools_to_provider_schema",
    "extract_invocation",
    "namespaced_name",
    "BaseMCPClient",
    "HttpMCPClient",
    "StdioMCPClient",
    "create_mcp_client",
    "ToolServerRegistry",
]
