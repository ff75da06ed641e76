"""Tool capability registry and tool adapters."""

from .base import (
    BaseTool,
    LiveOutputCallback,
    ToolCallConfirmationDetails,
    ToolConfirmationOutcome,
    ToolContent,
    ToolResult,
)
from .discovered import DiscoveredTool
from .mcp_tool import DiscoveredMCPTool
from .modifiable import ModifyContext, ModifyResult, is_modifiable_tool, modify_with_editor
from .registry import ToolRegistry
from .trust import TrustPolicy

__all__ = [
    "BaseTool",
    "DiscoveredMCPTool",
    "DiscoveredTool",
    "LiveOutputCallback",
    "ModifyContext",
    "ModifyResult",
    "ToolCallConfirmationDetails",
    "ToolConfirmationOutcome",
    "ToolContent",
    "ToolRegistry",
    "ToolResult",
    "TrustPolicy",
    "is_modifiable_tool",
    "modify_with_editor",
]
