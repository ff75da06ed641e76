"""Tools discovered by running the project's tool discovery command.

Each declaration printed by the discovery command becomes a
``DiscoveredTool``. Calling it runs ``<tool call command> <tool name>`` as a
subprocess with the params piped to stdin as JSON; stdout is the result.
"""

import json
import logging
import shlex
import subprocess
from typing import Any, Dict, Optional, TYPE_CHECKING

from ..plugins.model_provider.types import CancelToken
from .base import BaseTool, LiveOutputCallback, ToolResult

if TYPE_CHECKING:
    from ..config import EngineConfig

logger = logging.getLogger(__name__)


_DESCRIPTION_SUFFIX = """

This tool was discovered from the project by executing the command `{discovery_cmd}` on project root.
When called, this tool will execute the command `{call_cmd} {name}` on project root.
Tool discovery and call commands can be configured in project or user settings.

When called, the tool call command is executed as a subprocess.
On success, tool output is returned as a json string.
Otherwise, the following information is returned:

Stdout: Output on stdout stream. Can be `(empty)` or partial.
Stderr: Output on stderr stream. Can be `(empty)` or partial.
Error: Error or `(none)` if no error was reported for the subprocess.
Exit Code: Exit code or `(none)` if terminated by signal.
Signal: Signal number or `(none)` if no signal was received.
"""


class DiscoveredTool(BaseTool):
    """Subprocess-backed tool declared by the discovery command."""

    def __init__(
        self,
        config: 'EngineConfig',
        name: str,
        description: str,
        parameter_schema: Optional[Dict[str, Any]] = None,
    ):
        description = (description or "") + _DESCRIPTION_SUFFIX.format(
            discovery_cmd=config.tool_discovery_command,
            call_cmd=config.tool_call_command,
            name=name,
        )
        super().__init__(
            name,
            name,
            description,
            parameter_schema,
            is_output_markdown=False,
            can_update_output=False,
        )
        self._config = config

    def execute(
        self,
        params: Dict[str, Any],
        cancel_token: Optional[CancelToken] = None,
        update_output: Optional[LiveOutputCallback] = None,
    ) -> ToolResult:
        argv = shlex.split(self._config.tool_call_command or "") + [self.name]
        stdout = ""
        stderr = ""
        error: Optional[BaseException] = None
        code: Optional[int] = None
        signal: Optional[int] = None

        try:
            proc = subprocess.run(
                argv,
                input=json.dumps(params),
                capture_output=True,
                text=True,
                cwd=self._config.working_dir,
            )
        except OSError as e:
            error = e
        else:
            stdout = proc.stdout or ""
            stderr = proc.stderr or ""
            # Negative return codes mean the process was killed by a signal
            if proc.returncode < 0:
                signal = -proc.returncode
            else:
                code = proc.returncode

        if error is not None or code != 0 or signal is not None or stderr:
            llm_content = "\n".join([
                f"Stdout: {stdout or '(empty)'}",
                f"Stderr: {stderr or '(empty)'}",
                f"Error: {error if error is not None else '(none)'}",
                f"Exit Code: {code if code is not None else '(none)'}",
                f"Signal: {signal if signal is not None else '(none)'}",
            ])
            logger.debug(f"Discovered tool {self.name} failed: {llm_content}")
            return ToolResult(llm_content=llm_content, return_display=llm_content, error=llm_content)

        return ToolResult(llm_content=stdout, return_display=stdout)
