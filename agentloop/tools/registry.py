"""Tool capability registry.

Holds every tool the model may call, keyed by name:

- manually registered tools (``register_tool``), kept across re-discovery;
- tools declared by the discovery command (``DiscoveredTool``);
- tools listed by MCP servers (``DiscoveredMCPTool``).

``discover_tools`` first evicts everything it discovered last time, so it is
safe to call repeatedly.
"""

import json
import logging
import subprocess
import threading
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from ..errors import DiscoveryError
from ..plugins.model_provider.types import ToolSchema
from ..trace import trace
from .base import BaseTool
from .discovered import DiscoveredTool
from .mcp_tool import DiscoveredMCPTool

if TYPE_CHECKING:
    from ..config import EngineConfig
    from .mcp_client import MCPClientManager

logger = logging.getLogger(__name__)


def _is_discovered(tool: BaseTool) -> bool:
    return isinstance(tool, (DiscoveredTool, DiscoveredMCPTool))


def _extract_declarations(payload: Any) -> List[Dict[str, Any]]:
    """Flatten discovery output, with or without ``tool`` wrappers."""
    if not isinstance(payload, list):
        raise DiscoveryError(
            f"Tool discovery command must print a JSON array, got {type(payload).__name__}"
        )
    functions: List[Dict[str, Any]] = []
    for tool in payload:
        if not isinstance(tool, dict):
            continue
        if tool.get("function_declarations"):
            functions.extend(tool["function_declarations"])
        elif tool.get("functionDeclarations"):
            functions.extend(tool["functionDeclarations"])
        elif tool.get("name"):
            functions.append(tool)
    return functions


class ToolRegistry:
    """Name -> tool map with discovery.

    Args:
        config: Supplies the discovery/call commands and MCP server settings.
        mcp_client: Connects to MCP servers during discovery. Created from
            ``config`` on first use when not given.
    """

    def __init__(
        self,
        config: 'EngineConfig',
        mcp_client: Optional['MCPClientManager'] = None,
    ):
        self._config = config
        self._tools: Dict[str, BaseTool] = {}
        self._lock = threading.RLock()
        self._mcp_client = mcp_client

    # ==================== Registration ====================

    def register_tool(self, tool: BaseTool) -> None:
        """Register a tool; an existing tool with the same name is replaced."""
        with self._lock:
            existing = self._tools.get(tool.name)
            if existing is not None and _is_discovered(tool) and not _is_discovered(existing):
                logger.warning(
                    f'Discovered tool "{tool.name}" overrides the manually registered tool; '
                    f'the manual tool is gone until it is registered again.'
                )
            elif existing is not None:
                logger.warning(f'Tool with name "{tool.name}" is already registered. Overwriting.')
            self._tools[tool.name] = tool

    def unregister_tool(self, name: str) -> None:
        with self._lock:
            self._tools.pop(name, None)

    # ==================== Discovery ====================

    def discover_tools(self) -> None:
        """Re-scan the discovery command and MCP servers.

        Raises:
            DiscoveryError: The discovery command failed or did not print a
                JSON array. Manually registered tools are left untouched.
        """
        with self._lock:
            for name, tool in list(self._tools.items()):
                if _is_discovered(tool):
                    del self._tools[name]

        discovery_cmd = self._config.tool_discovery_command
        if discovery_cmd:
            for func in self._run_discovery_command(discovery_cmd):
                if not isinstance(func, dict) or not func.get("name"):
                    logger.warning(f"Skipping discovered tool declaration without a name: {func}")
                    continue
                self.register_tool(DiscoveredTool(
                    self._config,
                    func.get("name"),
                    func.get("description", ""),
                    func.get("parameters"),
                ))

        if self._config.mcp_servers or self._config.mcp_server_command:
            self._get_mcp_client().discover(self)

    def _run_discovery_command(self, command: str) -> List[Dict[str, Any]]:
        trace("ToolRegistry", f"running discovery command: {command}")
        try:
            proc = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                check=True,
                cwd=self._config.working_dir,
            )
        except (OSError, subprocess.CalledProcessError) as e:
            raise DiscoveryError(f"Tool discovery command failed: {e}") from e

        try:
            payload = json.loads(proc.stdout.strip())
        except json.JSONDecodeError as e:
            raise DiscoveryError(f"Tool discovery command returned invalid JSON: {e}") from e
        return _extract_declarations(payload)

    def _get_mcp_client(self) -> 'MCPClientManager':
        if self._mcp_client is None:
            from .mcp_client import MCPClientManager
            self._mcp_client = MCPClientManager(self._config)
        return self._mcp_client

    @property
    def mcp_client(self) -> Optional['MCPClientManager']:
        return self._mcp_client

    def shutdown(self) -> None:
        """Close MCP connections, if any were opened."""
        if self._mcp_client is not None:
            self._mcp_client.shutdown()

    # ==================== Lookup ====================

    def get_function_declarations(self) -> List[ToolSchema]:
        """Schemas of every registered tool, as exposed to the model."""
        with self._lock:
            return [tool.schema for tool in self._tools.values()]

    def get_all_tools(self) -> List[BaseTool]:
        with self._lock:
            return list(self._tools.values())

    def get_tools_by_server(self, server_name: str) -> List[BaseTool]:
        """Tools registered from one MCP server."""
        with self._lock:
            return [
                tool for tool in self._tools.values()
                if getattr(tool, "server_name", None) == server_name
            ]

    def get_tool(self, name: str) -> Optional[BaseTool]:
        with self._lock:
            return self._tools.get(name)
