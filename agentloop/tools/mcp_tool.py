"""Tools backed by an MCP server."""

import base64
import json
import logging
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from ..plugins.model_provider.types import CancelToken, Part
from .base import (
    BaseTool,
    LiveOutputCallback,
    ToolCallConfirmationDetails,
    ToolConfirmationOutcome,
    ToolResult,
)

if TYPE_CHECKING:
    from .mcp_client import MCPClientManager

logger = logging.getLogger(__name__)


def _content_to_part(block: Any) -> Part:
    """Convert one MCP content block (text, image, resource...) to a Part."""
    block_type = getattr(block, "type", None)
    if block_type == "text":
        return Part.from_text(block.text)
    if block_type in ("image", "audio"):
        return Part(inline_data={"mime_type": block.mimeType, "data": base64.b64decode(block.data)})
    if block_type == "resource":
        resource = block.resource
        text = getattr(resource, "text", None)
        if text is not None:
            return Part.from_text(text)
        return Part(inline_data={
            "mime_type": getattr(resource, "mimeType", None) or "application/octet-stream",
            "data": base64.b64decode(resource.blob),
        })
    return Part.from_text(json.dumps(_dump_block(block)))


def _dump_block(block: Any) -> Any:
    if hasattr(block, "model_dump"):
        return block.model_dump(mode="json", exclude_none=True)
    return block


def result_for_display(content: List[Any]) -> str:
    """Render an MCP result for the user.

    All-text results are shown as plain text, anything else as a JSON block.
    """
    if not content:
        return "```json\n[]\n```"
    if all(getattr(block, "type", None) == "text" for block in content):
        return "".join(block.text for block in content)
    dumped = [_dump_block(block) for block in content]
    processed = dumped[0] if len(dumped) == 1 else dumped
    return "```json\n" + json.dumps(processed, indent=2) + "\n```"


class DiscoveredMCPTool(BaseTool):
    """One tool listed by an MCP server.

    Args:
        client: Manager owning the server connection.
        server_name: Name of the server in the config.
        name: Name exposed to the model (sanitized, possibly server-prefixed).
        description: Tool description from the server.
        parameter_schema: Cleaned input schema.
        server_tool_name: Tool name as the server knows it.
        timeout: Per-call timeout in seconds.
        trust: Skip confirmation for this server's tools.
    """

    def __init__(
        self,
        client: 'MCPClientManager',
        server_name: str,
        name: str,
        description: str,
        parameter_schema: Optional[Dict[str, Any]],
        server_tool_name: str,
        timeout: float = 600.0,
        trust: bool = False,
    ):
        super().__init__(
            name,
            f"{server_tool_name} ({server_name} MCP Server)",
            description,
            parameter_schema,
            is_output_markdown=True,
            can_update_output=False,
        )
        self._client = client
        self.server_name = server_name
        self.server_tool_name = server_tool_name
        self.timeout = timeout
        self.trust = trust

    def should_confirm_execute(
        self,
        params: Dict[str, Any],
        cancel_token: Optional[CancelToken] = None,
    ) -> Optional[ToolCallConfirmationDetails]:
        if self.trust:
            return None

        def on_confirm(outcome: ToolConfirmationOutcome) -> None:
            # "Always" answers are recorded by the scheduler's trust policy
            logger.debug(f"MCP tool {self.name} confirmation: {outcome.value}")

        return ToolCallConfirmationDetails(
            type="mcp",
            title="Confirm MCP Tool Execution",
            on_confirm=on_confirm,
            server_name=self.server_name,
            tool_name=self.server_tool_name,
            tool_display_name=self.name,
        )

    def execute(
        self,
        params: Dict[str, Any],
        cancel_token: Optional[CancelToken] = None,
        update_output: Optional[LiveOutputCallback] = None,
    ) -> ToolResult:
        result = self._client.call_tool(
            self.server_name,
            self.server_tool_name,
            params,
            timeout=self.timeout,
            cancel_token=cancel_token,
        )
        content = list(result.content or [])
        parts = [_content_to_part(block) for block in content]
        display = result_for_display(content)

        if result.isError:
            message = "".join(p.text for p in parts if p.text) or f"MCP tool {self.server_tool_name} failed"
            return ToolResult(llm_content=parts or message, return_display=display, error=message)
        return ToolResult(llm_content=parts, return_display=display)
