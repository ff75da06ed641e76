"""Base types for invocable tools.

A tool is a named capability with a JSON-schema parameter declaration, an
optional confirmation predicate and an ``execute`` method. Concrete tools
subclass ``BaseTool``; the registry and the scheduler only ever talk to this
interface.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from ..plugins.model_provider.types import CancelToken, Part, ToolSchema

# Intermediate output handler for live-output tools
LiveOutputCallback = Callable[[str], None]

# What a tool returns to the model: plain text, one part, or several parts
ToolContent = Union[str, Part, List[Union[str, Part]]]


class ToolConfirmationOutcome(str, Enum):
    """Answer given at the confirmation gate."""
    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    PROCEED_ALWAYS_SERVER = "proceed_always_server"
    PROCEED_ALWAYS_TOOL = "proceed_always_tool"
    MODIFY_WITH_EDITOR = "modify_with_editor"
    CANCEL = "cancel"


@dataclass
class ToolResult:
    """Result of one tool execution.

    Attributes:
        llm_content: What goes back to the model.
        return_display: Text (often markdown) for the user.
        error: Set when the tool ran but failed; the call then ends in the
            error state instead of success.
    """
    llm_content: ToolContent
    return_display: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ToolCallConfirmationDetails:
    """What the caller needs to render a confirmation prompt.

    ``type`` is one of ``edit``, ``exec``, ``mcp`` or ``info``; only the
    attributes relevant to that type are set.

    Attributes:
        on_confirm: Continuation to call with the chosen outcome.
        file_name/file_diff: Edit confirmations (unified diff preview).
        command/root_command: Shell-style confirmations.
        server_name/tool_name/tool_display_name: Remote tool confirmations.
        prompt/urls: Informational confirmations.
        is_modifying: True while an external editor round-trip is open.
    """
    type: str
    title: str
    on_confirm: Callable[[ToolConfirmationOutcome], None]
    file_name: Optional[str] = None
    file_diff: Optional[str] = None
    command: Optional[str] = None
    root_command: Optional[str] = None
    server_name: Optional[str] = None
    tool_name: Optional[str] = None
    tool_display_name: Optional[str] = None
    prompt: Optional[str] = None
    urls: List[str] = field(default_factory=list)
    is_modifying: bool = False


class BaseTool:
    """Base class for tools.

    Args:
        name: Name the model calls the tool by.
        display_name: Human readable name.
        description: Description shown to the model.
        parameter_schema: JSON Schema of the arguments.
        is_output_markdown: Whether ``return_display`` is markdown.
        can_update_output: Whether ``execute`` streams live output.
    """

    def __init__(
        self,
        name: str,
        display_name: str,
        description: str,
        parameter_schema: Optional[Dict[str, Any]] = None,
        is_output_markdown: bool = True,
        can_update_output: bool = False,
    ):
        self.name = name
        self.display_name = display_name
        self.description = description
        self.parameter_schema = parameter_schema or {"type": "object", "properties": {}}
        self.is_output_markdown = is_output_markdown
        self.can_update_output = can_update_output

    @property
    def schema(self) -> ToolSchema:
        """Declaration exposed to the model."""
        return ToolSchema(
            name=self.name,
            description=self.description,
            parameters=self.parameter_schema,
        )

    def validate_tool_params(self, params: Dict[str, Any]) -> Optional[str]:
        """Return an error message for invalid params, None when valid."""
        return None

    def get_description(self, params: Dict[str, Any]) -> str:
        """One-line description of what a call with ``params`` will do."""
        return str(params)

    def should_confirm_execute(
        self,
        params: Dict[str, Any],
        cancel_token: Optional[CancelToken] = None,
    ) -> Optional[ToolCallConfirmationDetails]:
        """Confirmation details when the call needs approval, else None."""
        return None

    def execute(
        self,
        params: Dict[str, Any],
        cancel_token: Optional[CancelToken] = None,
        update_output: Optional[LiveOutputCallback] = None,
    ) -> ToolResult:
        raise NotImplementedError
