"""
Tool Server Registry.

Owns one long-lived connection per configured tool server. Connections
are opened by start() and closed by stop_all(); the registry is handed
to the orchestrator explicitly rather than held as process state.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from ..domain.entities import ToolDefinition
from ..domain.ports import IToolServerClient
from ..domain.schemas import ToolServerConfig
from ..exceptions import RelayError, ToolExecutionError
from .mcp_client import create_mcp_client

logger = logging.getLogger(__name__)


class ToolServerRegistry:
    """Registry of connected tool servers.

    Usage:
        registry = ToolServerRegistry(settings.tool_servers)
        await registry.start()

        tools = await registry.list_tools(["search"])
        client = registry.get_client("search")

        await registry.stop_all()

    Architecture:
        - A server that fails to connect is logged and skipped; startup
          continues with the rest
        - Tool lists are cached per server after the first discovery
    """

    def __init__(
        self,
        configs: Iterable[ToolServerConfig] = (),
        client_factory: Callable[[ToolServerConfig], IToolServerClient] = create_mcp_client,
    ):
        self._configs = list(configs)
        self._client_factory = client_factory
        self._clients: dict[str, IToolServerClient] = {}
        self._tools_cache: dict[str, list[ToolDefinition]] = {}

    @property
    def server_names(self) -> list[str]:
        return list(self._clients)

    def add_client(self, client: IToolServerClient) -> None:
        """Register an already connected client."""
        self._clients[client.server_name] = client

    async def start(self) -> int:
        """Connect every configured server.

        Returns:
            Number of servers connected
        """
        failed = 0
        for config in self._configs:
            client = self._client_factory(config)
            try:
                await client.connect()
            except (RelayError, OSError) as e:
                failed += 1
                logger.error(f"Failed to connect MCP server {config.name}: {e}")
                await client.close()
                continue
            self.add_client(client)

        logger.info(
            f"Tool server registry started: {len(self._clients)} connected, {failed} failed"
        )
        return len(self._clients)

    async def stop_all(self) -> None:
        """Close every connection."""
        for name, client in list(self._clients.items()):
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Error closing MCP server {name}: {e}")
        self._clients.clear()
        self._tools_cache.clear()

    def get_client(self, server_name: str) -> IToolServerClient:
        """Return the client for a server.

        Raises:
            ToolExecutionError: If the server is not connected
        """
        client = self._clients.get(server_name)
        if client is None:
            raise ToolExecutionError(
                f"MCP server not connected: {server_name}",
                recoverable=False,
                details={"server_name": server_name},
            )
        return client

    async def list_tools(self, server_names: Optional[list[str]] = None) -> list[ToolDefinition]:
        """Tools from the given servers (all connected servers if None).

        A server whose discovery fails contributes no tools.
        """
        names = [n for n in (server_names or self._clients) if n in self._clients]
        tools: list[ToolDefinition] = []
        for name in names:
            if name not in self._tools_cache:
                try:
                    self._tools_cache[name] = await self._clients[name].list_tools()
                except RelayError as e:
                    logger.error(f"Failed to list tools on MCP server {name}: {e}")
                    continue
            tools.extend(self._tools_cache[name])
        return tools

    def clear_cache(self) -> None:
        """Force re-discovery on the next list_tools."""
        self._tools_cache.clear()
