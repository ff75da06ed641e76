"""File trace channel.

Verbose per-component lines that help when debugging a streaming session
but are too noisy for ``logging``. Two channels, each named by an env var:

- ``AGENTLOOP_TRACE_LOG``: session, turn, scheduler and registry
- ``AGENTLOOP_PROVIDER_TRACE``: model provider SDK calls

An empty value disables the channel; unset writes to the temp directory.

Usage:
    trace("ToolScheduler", "call abc -> executing")
    provider_trace("google_genai", "stream chunk received", include_traceback=True)
"""

import os
import tempfile
import traceback
from datetime import datetime
from pathlib import Path
from typing import Optional


def _channel_path(env_var: str, filename: str) -> Optional[Path]:
    value = os.environ.get(env_var)
    if value == "":
        return None
    return Path(value) if value else Path(tempfile.gettempdir()) / filename


def _append(env_var: str, filename: str, component: str, msg: str, include_traceback: bool) -> None:
    path = _channel_path(env_var, filename)
    if path is None:
        return
    prefix = f"[{datetime.now().strftime('%H:%M:%S.%f')[:-3]}] [{component}]"
    lines = [f"{prefix} {msg}\n"]
    if include_traceback:
        tb = traceback.format_exc()
        if tb.strip() != "NoneType: None":
            lines.append(f"{prefix} Traceback:\n{tb}\n")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a") as f:
            f.writelines(lines)
    except OSError:
        # A broken trace file must not break the session
        pass


def trace(component: str, msg: str, *, include_traceback: bool = False) -> None:
    _append("AGENTLOOP_TRACE_LOG", "agentloop_trace.log", component, msg, include_traceback)


def provider_trace(component: str, msg: str, *, include_traceback: bool = False) -> None:
    _append("AGENTLOOP_PROVIDER_TRACE", "agentloop_provider_trace.log", component, msg, include_traceback)
