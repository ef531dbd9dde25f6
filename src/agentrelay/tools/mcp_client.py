"""
MCP Tool Server Clients.

Connects to external MCP tool servers for tool discovery and execution.
Two transports are supported: JSON-RPC over HTTP (aiohttp) and JSON-RPC
over a child process's stdin/stdout.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
from abc import abstractmethod
from typing import Any, Optional

import aiohttp

from ..domain.entities import ToolDefinition
from ..domain.ports import IToolServerClient
from ..domain.schemas import ToolServerConfig
from ..exceptions import ConfigurationError, ToolExecutionError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "agentrelay", "version": "0.1.0"}


class BaseMCPClient(IToolServerClient):
    """Shared JSON-RPC logic for MCP clients.

    Subclasses provide the transport via _request and _notify.
    """

    def __init__(self, config: ToolServerConfig):
        self.config = config
        self._ids = itertools.count(1)
        self._connected = False

    @property
    def server_name(self) -> str:
        return self.config.name

    @property
    def is_connected(self) -> bool:
        return self._connected

    @abstractmethod
    async def _request(self, method: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Send a JSON-RPC request and return its result."""

    @abstractmethod
    async def _notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        """Send a JSON-RPC notification."""

    def _build_request(self, method: str, params: Optional[dict[str, Any]]) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or {},
        }

    def _unwrap(self, method: str, response: dict[str, Any]) -> dict[str, Any]:
        if "error" in response:
            error = response["error"] or {}
            raise ToolExecutionError(
                f"MCP server {self.server_name} error on {method}: "
                f"{error.get('message', error)}",
                tool_name=method,
            )
        return response.get("result") or {}

    async def _handshake(self) -> None:
        """Perform the MCP initialize / initialized exchange."""
        result = await self._request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
        )
        await self._notify("notifications/initialized")
        self._connected = True
        logger.info(
            f"MCP server {self.server_name} initialized: "
            f"{result.get('serverInfo', {}).get('name', 'unknown')}"
        )

    async def list_tools(self) -> list[ToolDefinition]:
        """List the tools the server exposes.

        Returns:
            Tool definitions tagged with this server's name
        """
        result = await self._request("tools/list")
        tools = [
            ToolDefinition(
                name=tool["name"],
                description=tool.get("description") or "",
                input_schema=tool.get("inputSchema") or {},
                server_name=self.server_name,
            )
            for tool in result.get("tools", [])
        ]
        logger.info(f"Discovered {len(tools)} tools on MCP server {self.server_name}")
        return tools

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        """Execute a tool on the server.

        Returns:
            The first text content parsed as JSON when possible, else the text,
            else the raw content list

        Raises:
            ToolExecutionError: On transport failure or an isError result
        """
        result = await self._request("tools/call", {"name": name, "arguments": arguments})
        content = result.get("content") or []

        text = None
        if content and content[0].get("type") == "text":
            text = content[0].get("text", "")

        if result.get("isError"):
            raise ToolExecutionError(
                text or f"Tool {name} reported an error",
                tool_name=name,
            )

        if text is None:
            return content
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text


# ============================================
# HTTP transport
# ============================================


class HttpMCPClient(BaseMCPClient):
    """MCP client speaking JSON-RPC over HTTP POST.

    Usage:
        client = HttpMCPClient(ToolServerConfig(name="search", type="http",
                                                url="http://search:8000/mcp"))
        await client.connect()
        tools = await client.list_tools()
        result = await client.call_tool("lookup", {"query": "aruba 6200"})

    Architecture:
        - One aiohttp session per server, shared by concurrent calls
        - Mcp-Session-Id from initialize is echoed on every request
        - 429 and connection errors retry with exponential backoff
    """

    MAX_RETRIES = 3

    def __init__(self, config: ToolServerConfig, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(config)
        self._session = session
        self._session_id: Optional[str] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id
        return headers

    async def connect(self) -> None:
        await self._handshake()

    async def close(self) -> None:
        """Close the client session."""
        self._connected = False
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    @staticmethod
    def _parse_body(content_type: str, body: str) -> dict[str, Any]:
        if "text/event-stream" in content_type:
            # Single-response SSE stream: the last data line carries the reply
            data_lines = [line[5:].strip() for line in body.splitlines() if line.startswith("data:")]
            body = data_lines[-1] if data_lines else "{}"
        return json.loads(body) if body.strip() else {}

    async def _post(self, payload: dict[str, Any]) -> aiohttp.ClientResponse:
        session = await self._get_session()
        return await session.post(self.config.url, headers=self._headers(), json=payload)

    async def _request(self, method: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        payload = self._build_request(method, params)

        for attempt in range(self.MAX_RETRIES):
            try:
                async with await self._post(payload) as response:
                    if response.status == 429 and attempt < self.MAX_RETRIES - 1:
                        wait_time = 2 ** attempt
                        logger.warning(
                            f"MCP server {self.server_name} rate limited, retrying in {wait_time}s"
                        )
                        await asyncio.sleep(wait_time)
                        continue

                    text = await response.text()
                    if response.status != 200:
                        raise ToolExecutionError(
                            f"MCP server {self.server_name} returned "
                            f"{response.status} for {method}: {text[:200]}",
                            tool_name=method,
                            recoverable=response.status >= 500 or response.status == 429,
                        )

                    session_id = response.headers.get("Mcp-Session-Id")
                    if session_id:
                        self._session_id = session_id

                    try:
                        data = self._parse_body(response.headers.get("Content-Type", ""), text)
                    except json.JSONDecodeError as e:
                        raise ToolExecutionError(
                            f"MCP server {self.server_name} sent invalid JSON for {method}",
                            tool_name=method,
                            cause=e,
                        ) from e
                    return self._unwrap(method, data)

            except aiohttp.ClientError as e:
                if attempt < self.MAX_RETRIES - 1:
                    wait_time = 2 ** attempt
                    logger.warning(
                        f"Connection error to MCP server {self.server_name}, "
                        f"retrying in {wait_time}s: {e}"
                    )
                    await asyncio.sleep(wait_time)
                    continue
                raise ToolExecutionError(
                    f"Failed to connect to MCP server {self.server_name}: {e}",
                    tool_name=method,
                    cause=e,
                ) from e

        raise ToolExecutionError(
            f"MCP request {method} failed after {self.MAX_RETRIES} attempts",
            tool_name=method,
        )

    async def _notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        payload = {"jsonrpc": "2.0", "method": method, "params": params or {}}
        try:
            async with await self._post(payload) as response:
                if response.status >= 400:
                    logger.warning(
                        f"MCP server {self.server_name} rejected {method}: {response.status}"
                    )
        except aiohttp.ClientError as e:
            raise ToolExecutionError(
                f"Failed to notify MCP server {self.server_name}: {e}",
                tool_name=method,
                cause=e,
            ) from e


# ============================================
# Stdio transport
# ============================================


class StdioMCPClient(BaseMCPClient):
    """MCP client speaking newline-delimited JSON-RPC with a child process.

    Usage:
        client = StdioMCPClient(ToolServerConfig(name="files", type="stdio",
                                                 command="npx", args=["-y", "server"]))
        await client.connect()

    Architecture:
        - A reader task routes responses to waiting callers by request id,
          so concurrent calls share the process safely
        - Writes are serialized with a lock
        - stderr is drained into the debug log
    """

    def __init__(self, config: ToolServerConfig):
        super().__init__(config)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._pending: dict[int, asyncio.Future] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        """Start the server process and run the handshake."""
        if self._process is not None:
            return

        env = {**os.environ, **self.config.env} if self.config.env else None
        logger.info(f"Starting MCP server {self.server_name}: {self.config.command}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise ToolExecutionError(
                f"Failed to start MCP server {self.server_name}: {e}",
                tool_name="connect",
                cause=e,
            ) from e

        self._reader_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        await self._handshake()

    async def _read_loop(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        try:
            while True:
                line = await stdout.readline()
                if not line:
                    break
                try:
                    message = json.loads(line.decode())
                except json.JSONDecodeError:
                    logger.debug(f"MCP server {self.server_name} wrote non-JSON line")
                    continue
                future = self._pending.pop(message.get("id"), None) if "id" in message else None
                if future is not None and not future.done():
                    future.set_result(message)
        finally:
            self._connected = False
            closed = ToolExecutionError(
                f"MCP server {self.server_name} closed its output", tool_name="read"
            )
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(closed)
            self._pending.clear()

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        async for line in self._process.stderr:
            logger.debug(f"[{self.server_name}] {line.decode(errors='replace').rstrip()}")

    async def _write(self, message: dict[str, Any]) -> None:
        if self._process is None or self._process.stdin is None:
            raise ToolExecutionError(
                f"MCP server {self.server_name} is not running", tool_name=message.get("method")
            )
        data = (json.dumps(message) + "\n").encode()
        async with self._write_lock:
            try:
                self._process.stdin.write(data)
                await self._process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise ToolExecutionError(
                    f"MCP server {self.server_name} pipe closed",
                    tool_name=message.get("method"),
                    cause=e,
                ) from e

    async def _request(self, method: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        request = self._build_request(method, params)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request["id"]] = future
        try:
            await self._write(request)
            response = await asyncio.wait_for(future, timeout=self.config.timeout)
        except asyncio.TimeoutError as e:
            raise ToolExecutionError(
                f"MCP server {self.server_name} timed out on {method}",
                tool_name=method,
                cause=e,
            ) from e
        finally:
            self._pending.pop(request["id"], None)
        return self._unwrap(method, response)

    async def _notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        await self._write({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def close(self) -> None:
        """Terminate the server process."""
        self._connected = False
        process, self._process = self._process, None
        if process is None:
            return
        if process.stdin is not None:
            process.stdin.close()
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
        for task in (self._reader_task, self._stderr_task):
            if task is not None:
                task.cancel()
        logger.info(f"Stopped MCP server {self.server_name}")


def create_mcp_client(config: ToolServerConfig) -> BaseMCPClient:
    """Build the client matching a server's transport type."""
    if config.type == "http":
        return HttpMCPClient(config)
    if config.type == "stdio":
        return StdioMCPClient(config)
    raise ConfigurationError(f"Unknown MCP transport: {config.type}")
