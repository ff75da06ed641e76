"""Modify-with-editor support for edit-style tools.

A tool that can have its proposal edited before approval exposes a
``get_modify_context(cancel_token)`` method returning a ``ModifyContext``.
The scheduler then writes the current and proposed content to temp files,
opens them side by side in the user's diff editor, reads the edited
proposal back and rebuilds the tool params and the confirmation diff.
"""

import difflib
import logging
import os
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..plugins.model_provider.types import CancelToken

logger = logging.getLogger(__name__)

DIFF_DIR_NAME = "agentloop-tool-modify-diffs"

# Editor name -> argv builder (old_path, new_path)
EDITOR_DIFF_COMMANDS: Dict[str, Callable[[str, str], List[str]]] = {
    "vscode": lambda old, new: ["code", "--wait", "--diff", old, new],
    "windsurf": lambda old, new: ["windsurf", "--wait", "--diff", old, new],
    "cursor": lambda old, new: ["cursor", "--wait", "--diff", old, new],
    "zed": lambda old, new: ["zed", "--wait", "--diff", old, new],
    "vim": lambda old, new: ["vim", "-d", old, new],
    "neovim": lambda old, new: ["nvim", "-d", old, new],
}


@dataclass
class ModifyContext:
    """How to read and rebuild a modifiable tool's proposal.

    Attributes:
        get_file_path: params -> path of the file being changed.
        get_current_content: params -> file content today ('' if missing).
        get_proposed_content: params -> content after the tool runs.
        create_updated_params: (current, edited_proposal, params) -> new params.
    """
    get_file_path: Callable[[Dict[str, Any]], str]
    get_current_content: Callable[[Dict[str, Any]], str]
    get_proposed_content: Callable[[Dict[str, Any]], str]
    create_updated_params: Callable[[str, str, Dict[str, Any]], Dict[str, Any]]


@dataclass
class ModifyResult:
    updated_params: Dict[str, Any]
    updated_diff: str


def is_modifiable_tool(tool: Any) -> bool:
    """True when the tool supports the modify-with-editor round-trip."""
    return callable(getattr(tool, "get_modify_context", None))


def _create_temp_files(current: str, proposed: str, file_path: str) -> Tuple[str, str]:
    diff_dir = Path(tempfile.gettempdir()) / DIFF_DIR_NAME
    diff_dir.mkdir(parents=True, exist_ok=True)

    name = Path(file_path)
    stamp = int(time.time() * 1000)
    old_path = diff_dir / f"agentloop-modify-{name.stem}-old-{stamp}{name.suffix}"
    new_path = diff_dir / f"agentloop-modify-{name.stem}-new-{stamp}{name.suffix}"
    old_path.write_text(current, encoding="utf-8")
    new_path.write_text(proposed, encoding="utf-8")
    return str(old_path), str(new_path)


def _read_or_empty(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""


def _delete_temp_files(*paths: str) -> None:
    for path in paths:
        try:
            os.unlink(path)
        except OSError as e:
            logger.warning(f"Error deleting temp diff file {path}: {e}")


def make_diff(file_path: str, current: str, proposed: str) -> str:
    """Unified diff (3 lines of context) between current and proposed content."""
    name = os.path.basename(file_path)
    return ''.join(difflib.unified_diff(
        current.splitlines(keepends=True),
        proposed.splitlines(keepends=True),
        fromfile=name,
        tofile=name,
        fromfiledate="Current",
        tofiledate="Proposed",
        n=3,
    ))


def open_diff(old_path: str, new_path: str, editor: str) -> None:
    """Open the two files in ``editor`` and block until it exits."""
    build = EDITOR_DIFF_COMMANDS.get(editor)
    if build is None:
        raise ValueError(f"Unsupported diff editor: {editor}")
    subprocess.run(build(old_path, new_path), check=False)


def modify_with_editor(
    original_params: Dict[str, Any],
    modify_context: ModifyContext,
    editor: str,
    cancel_token: Optional[CancelToken] = None,
) -> ModifyResult:
    """Let the user edit a tool's proposal in an external diff editor.

    Returns:
        The params rebuilt from the edited proposal and the new diff.
    """
    current = modify_context.get_current_content(original_params)
    proposed = modify_context.get_proposed_content(original_params)
    file_path = modify_context.get_file_path(original_params)

    old_path, new_path = _create_temp_files(current, proposed, file_path)
    try:
        open_diff(old_path, new_path, editor)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        old_content = _read_or_empty(old_path)
        new_content = _read_or_empty(new_path)
    finally:
        _delete_temp_files(old_path, new_path)

    updated_params = modify_context.create_updated_params(old_content, new_content, original_params)
    return ModifyResult(
        updated_params=updated_params,
        updated_diff=make_diff(file_path, old_content, new_content),
    )
