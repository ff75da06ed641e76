"""MCP multi-server client for the synchronous engine.

The MCP SDK is asyncio based while the engine runs on threads, so all MCP
traffic goes through one private event loop running in a daemon thread.
Each server connection lives in its own task on that loop: the task enters
the transport and session contexts, publishes the session, then waits for
a stop signal and exits the contexts itself.

Usage:
    client = MCPClientManager(config)
    client.discover(registry)         # connect + register DiscoveredMCPTools
    result = client.call_tool("github", "search_issues", {"query": "..."})
    client.shutdown()
"""

import asyncio
import concurrent.futures
import logging
import os
import re
import shlex
import sys
import threading
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from ..config import MCPServerConfig
from ..plugins.model_provider.types import CancelToken
from ..trace import trace
from .mcp_tool import DiscoveredMCPTool

if TYPE_CHECKING:
    from mcp import ClientSession
    from mcp.types import CallToolResult, Tool
    from ..config import EngineConfig
    from .registry import ToolRegistry

logger = logging.getLogger(__name__)

# Server name used for the single ``mcp_server_command`` shortcut
DEFAULT_SERVER_NAME = "mcp"

MAX_TOOL_NAME_LENGTH = 63

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.\-]")

# Schema keys the model API rejects
_UNSUPPORTED_SCHEMA_KEYS = ("$schema", "additionalProperties")


class MCPServerStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# Signature: (server_name, status) -> None
StatusChangeListener = Callable[[str, MCPServerStatus], None]


def sanitize_tool_name(name: str) -> str:
    """Replace characters the model API does not accept in function names."""
    return _INVALID_NAME_CHARS.sub("_", name)


def shorten_tool_name(name: str) -> str:
    """Cap a tool name at 63 characters, keeping its head and tail."""
    if len(name) <= MAX_TOOL_NAME_LENGTH:
        return name
    return name[:28] + "___" + name[-32:]


def sanitize_parameters(schema: Any) -> Any:
    """Strip schema keys the model API rejects, recursively, in place."""
    if isinstance(schema, dict):
        for key in _UNSUPPORTED_SCHEMA_KEYS:
            schema.pop(key, None)
        for value in schema.values():
            sanitize_parameters(value)
    elif isinstance(schema, list):
        for item in schema:
            sanitize_parameters(item)
    return schema


@dataclass
class _ServerConnection:
    """State of one server connection, owned by the loop thread."""
    name: str
    config: MCPServerConfig
    ready: asyncio.Event
    stop: asyncio.Event
    session: Optional['ClientSession'] = None
    tools: List['Tool'] = field(default_factory=list)
    task: Optional[asyncio.Task] = None
    error: Optional[BaseException] = None


class MCPClientManager:
    """Manages persistent MCP server connections from synchronous code.

    Args:
        config: Engine config holding ``mcp_servers`` and ``mcp_server_command``.
        connect_timeout: Seconds to wait for a server to initialize.
    """

    def __init__(self, config: 'EngineConfig', connect_timeout: float = 30.0):
        self._config = config
        self._connect_timeout = connect_timeout
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._connections: Dict[str, _ServerConnection] = {}
        self._statuses: Dict[str, MCPServerStatus] = {}
        self._listeners: List[StatusChangeListener] = []

    # ==================== Event Loop ====================

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is None:
                self._loop = asyncio.new_event_loop()
                self._thread = threading.Thread(
                    target=self._run_loop, name="agentloop-mcp", daemon=True
                )
                self._thread.start()
            return self._loop

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()

    def _submit(self, coro) -> concurrent.futures.Future:
        return asyncio.run_coroutine_threadsafe(coro, self._ensure_loop())

    # ==================== Status ====================

    def add_status_listener(self, listener: StatusChangeListener) -> None:
        self._listeners.append(listener)

    def remove_status_listener(self, listener: StatusChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def get_server_status(self, server_name: str) -> MCPServerStatus:
        return self._statuses.get(server_name, MCPServerStatus.DISCONNECTED)

    def get_all_server_statuses(self) -> Dict[str, MCPServerStatus]:
        return dict(self._statuses)

    def _set_status(self, server_name: str, status: MCPServerStatus) -> None:
        self._statuses[server_name] = status
        trace("MCP", f"{server_name}: {status.value}")
        for listener in list(self._listeners):
            listener(server_name, status)

    # ==================== Connections ====================

    def server_configs(self) -> Dict[str, MCPServerConfig]:
        """Configured servers, including the ``mcp_server_command`` shortcut."""
        servers = dict(self._config.mcp_servers)
        if self._config.mcp_server_command:
            argv = shlex.split(self._config.mcp_server_command)
            servers[DEFAULT_SERVER_NAME] = MCPServerConfig(command=argv[0], args=argv[1:])
        return servers

    async def _serve(self, conn: _ServerConnection) -> None:
        from mcp import ClientSession, StdioServerParameters
        from mcp.client.stdio import stdio_client
        from mcp.types import Implementation

        try:
            async with AsyncExitStack() as stack:
                if conn.config.url:
                    from mcp.client.sse import sse_client
                    read, write = await stack.enter_async_context(sse_client(conn.config.url))
                elif conn.config.command:
                    params = StdioServerParameters(
                        command=conn.config.command,
                        args=list(conn.config.args),
                        env={**os.environ, **(conn.config.env or {})},
                        cwd=conn.config.cwd,
                    )
                    read, write = await stack.enter_async_context(
                        stdio_client(params, errlog=sys.stderr)
                    )
                else:
                    raise ValueError(f"MCP server '{conn.name}' has neither 'command' nor 'url'")

                session = await stack.enter_async_context(ClientSession(
                    read, write, client_info=Implementation(name="agentloop", version="0.1.0")
                ))
                await session.initialize()
                conn.tools = (await session.list_tools()).tools
                conn.session = session
                self._set_status(conn.name, MCPServerStatus.CONNECTED)
                conn.ready.set()
                await conn.stop.wait()
        except Exception as exc:
            conn.error = exc
            logger.warning(f"MCP server '{conn.name}' connection failed: {exc}")
        finally:
            conn.session = None
            self._set_status(conn.name, MCPServerStatus.DISCONNECTED)
            conn.ready.set()

    async def _connect(self, name: str, server_config: MCPServerConfig) -> _ServerConnection:
        conn = _ServerConnection(
            name=name,
            config=server_config,
            ready=asyncio.Event(),
            stop=asyncio.Event(),
        )
        self._connections[name] = conn
        self._set_status(name, MCPServerStatus.CONNECTING)
        conn.task = asyncio.get_running_loop().create_task(self._serve(conn))
        await conn.ready.wait()
        if conn.session is None:
            raise ConnectionError(f"Could not connect to MCP server '{name}': {conn.error}")
        return conn

    async def _disconnect(self, name: str) -> None:
        conn = self._connections.pop(name, None)
        if conn is None:
            return
        conn.stop.set()
        if conn.task is not None:
            await conn.task

    def connect(self, name: str, server_config: MCPServerConfig) -> List['Tool']:
        """Connect to one server (replacing an existing connection) and list its tools."""
        self._submit(self._disconnect(name)).result()
        conn = self._submit(self._connect(name, server_config)).result(self._connect_timeout)
        return list(conn.tools)

    def disconnect(self, name: str) -> None:
        if self._loop is None:
            return
        self._submit(self._disconnect(name)).result()

    # ==================== Discovery ====================

    def discover(self, registry: 'ToolRegistry') -> None:
        """Connect to every configured server and register its tools.

        A server that fails to connect is logged and skipped; the others are
        still registered.
        """
        for server_name, server_config in self.server_configs().items():
            try:
                tools = self.connect(server_name, server_config)
            except (ConnectionError, concurrent.futures.TimeoutError) as exc:
                logger.warning(f"Skipping MCP server '{server_name}': {exc}")
                continue

            for tool in tools:
                name = sanitize_tool_name(tool.name)
                if registry.get_tool(name) is not None:
                    name = f"{server_name}__{name}"
                name = shorten_tool_name(name)

                registry.register_tool(DiscoveredMCPTool(
                    self,
                    server_name,
                    name,
                    tool.description or "",
                    sanitize_parameters(dict(tool.inputSchema or {})),
                    tool.name,
                    timeout=server_config.timeout,
                    trust=server_config.trust,
                ))

    # ==================== Invocation ====================

    def call_tool(
        self,
        server_name: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: float = 600.0,
        cancel_token: Optional[CancelToken] = None,
    ) -> 'CallToolResult':
        """Call a tool on a connected server and wait for the result.

        Raises:
            KeyError: The server is not connected.
            concurrent.futures.CancelledError: The cancel token fired.
        """
        conn = self._connections.get(server_name)
        if conn is None or conn.session is None:
            raise KeyError(f"Server '{server_name}' not connected")

        future = self._submit(conn.session.call_tool(
            tool_name,
            arguments or {},
            read_timeout_seconds=timedelta(seconds=timeout),
        ))
        if cancel_token is not None:
            cancel_token.on_cancel(future.cancel)
        return future.result()

    # ==================== Lifecycle ====================

    async def _disconnect_all(self) -> None:
        for name in list(self._connections):
            await self._disconnect(name)

    def shutdown(self) -> None:
        """Close every connection and stop the loop thread."""
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None
        if loop is None:
            return
        asyncio.run_coroutine_threadsafe(self._disconnect_all(), loop).result()
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join()
