"""Tests for the MCP client manager helpers and DiscoveredMCPTool."""

import base64
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from mcp.types import CallToolResult, ImageContent, TextContent

from agentloop.config import EngineConfig, MCPServerConfig
from agentloop.plugins.model_provider.types import CancelToken
from agentloop.tools.base import BaseTool
from agentloop.tools.mcp_client import (
    DEFAULT_SERVER_NAME,
    MAX_TOOL_NAME_LENGTH,
    MCPClientManager,
    MCPServerStatus,
    sanitize_parameters,
    sanitize_tool_name,
    shorten_tool_name,
)
from agentloop.tools.mcp_tool import DiscoveredMCPTool, result_for_display
from agentloop.tools.registry import ToolRegistry


def _remote_tool(name, description="", schema=None):
    return SimpleNamespace(name=name, description=description, inputSchema=schema or {"type": "object"})


class TestNameHelpers:

    def test_sanitize_tool_name(self):
        assert sanitize_tool_name("search issues/v2!") == "search_issues_v2_"
        assert sanitize_tool_name("ok-name_1.2") == "ok-name_1.2"

    def test_shorten_tool_name(self):
        long_name = "a" * 40 + "b" * 40
        short = shorten_tool_name(long_name)
        assert len(short) == MAX_TOOL_NAME_LENGTH
        assert short.startswith("a" * 28 + "___")
        assert short.endswith("b" * 32)
        assert shorten_tool_name("short") == "short"

    def test_sanitize_parameters(self):
        schema = {
            "$schema": "http://json-schema.org/draft-07/schema#",
            "type": "object",
            "additionalProperties": False,
            "properties": {"opts": {"type": "object", "additionalProperties": True}},
            "anyOf": [{"additionalProperties": False}],
        }
        cleaned = sanitize_parameters(schema)
        assert "$schema" not in cleaned
        assert "additionalProperties" not in cleaned
        assert "additionalProperties" not in cleaned["properties"]["opts"]
        assert cleaned["anyOf"] == [{}]


class TestServerConfigs:

    def test_server_command_shortcut(self):
        config = EngineConfig(mcp_server_command="npx my-server --stdio",
                              mcp_servers={"github": MCPServerConfig(command="gh-mcp")})
        servers = MCPClientManager(config).server_configs()
        assert set(servers) == {"github", DEFAULT_SERVER_NAME}
        assert servers[DEFAULT_SERVER_NAME].command == "npx"
        assert servers[DEFAULT_SERVER_NAME].args == ["my-server", "--stdio"]

    def test_unknown_server_is_disconnected(self):
        manager = MCPClientManager(EngineConfig())
        assert manager.get_server_status("nope") == MCPServerStatus.DISCONNECTED
        with pytest.raises(KeyError):
            manager.call_tool("nope", "tool", {})


class TestDiscover:

    def _manager(self):
        config = EngineConfig(mcp_server_command=None, mcp_servers={
            "github": MCPServerConfig(command="gh-mcp", timeout=30, trust=True),
            "broken": MCPServerConfig(command="missing"),
        })
        return MCPClientManager(config)

    def test_registers_tools_and_skips_failed_servers(self):
        manager = self._manager()
        registry = ToolRegistry(EngineConfig())

        def connect(name, server_config):
            if name == "broken":
                raise ConnectionError("spawn failed")
            return [_remote_tool("search issues", "Find issues", {
                "type": "object", "additionalProperties": False,
            })]

        with patch.object(manager, "connect", side_effect=connect):
            manager.discover(registry)

        tool = registry.get_tool("search_issues")
        assert isinstance(tool, DiscoveredMCPTool)
        assert tool.server_name == "github"
        assert tool.server_tool_name == "search issues"
        assert tool.display_name == "search issues (github MCP Server)"
        assert tool.timeout == 30
        assert tool.trust is True
        assert "additionalProperties" not in tool.parameter_schema
        assert registry.get_tools_by_server("broken") == []

    def test_name_collision_gets_server_prefix(self):
        manager = self._manager()
        registry = ToolRegistry(EngineConfig())
        registry.register_tool(BaseTool("search", "search", "Built-in search."))

        def connect(name, server_config):
            if name == "broken":
                raise ConnectionError("spawn failed")
            return [_remote_tool("search")]

        with patch.object(manager, "connect", side_effect=connect):
            manager.discover(registry)

        assert registry.get_tool("search").description == "Built-in search."
        assert registry.get_tool("github__search").server_tool_name == "search"


class TestDiscoveredMCPTool:

    def _tool(self, client, trust=False):
        return DiscoveredMCPTool(client, "github", "search", "Find issues", {"type": "object"},
                                 "search_issues", timeout=12, trust=trust)

    def test_confirmation_details(self):
        details = self._tool(MagicMock()).should_confirm_execute({})
        assert details.type == "mcp"
        assert details.server_name == "github"
        assert details.tool_name == "search_issues"
        assert details.tool_display_name == "search"

    def test_trusted_server_needs_no_confirmation(self):
        assert self._tool(MagicMock(), trust=True).should_confirm_execute({}) is None

    def test_execute_text_result(self):
        client = MagicMock()
        client.call_tool.return_value = CallToolResult(
            content=[TextContent(type="text", text="3 issues")], isError=False,
        )
        token = CancelToken()
        result = self._tool(client).execute({"q": "bug"}, token)
        client.call_tool.assert_called_once_with("github", "search_issues", {"q": "bug"},
                                                 timeout=12, cancel_token=token)
        assert [p.text for p in result.llm_content] == ["3 issues"]
        assert result.return_display == "3 issues"
        assert result.error is None

    def test_execute_image_result(self):
        data = base64.b64encode(b"\x89PNG").decode()
        client = MagicMock()
        client.call_tool.return_value = CallToolResult(
            content=[ImageContent(type="image", data=data, mimeType="image/png")], isError=False,
        )
        result = self._tool(client).execute({})
        assert result.llm_content[0].inline_data == {"mime_type": "image/png", "data": b"\x89PNG"}
        assert result.return_display.startswith("```json")

    def test_execute_error_result(self):
        client = MagicMock()
        client.call_tool.return_value = CallToolResult(
            content=[TextContent(type="text", text="rate limited")], isError=True,
        )
        result = self._tool(client).execute({})
        assert result.error == "rate limited"


class TestResultForDisplay:

    def test_empty(self):
        assert result_for_display([]) == "```json\n[]\n```"

    def test_text_blocks_joined(self):
        blocks = [TextContent(type="text", text="a"), TextContent(type="text", text="b")]
        assert result_for_display(blocks) == "ab"
