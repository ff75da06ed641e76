"""Audit/telemetry records emitted by the engine.

One ``ToolCallEvent`` per completed tool call, and one API request,
response or error record per model call.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ToolCallDecision(str, Enum):
    """What the user decided at the confirmation gate."""
    ACCEPT = "accept"
    REJECT = "reject"
    MODIFY = "modify"


@dataclass
class TelemetryEvent:
    """Base class for telemetry records."""
    name: str = "agentloop.event"
    timestamp: str = field(default_factory=_now)

    def to_attributes(self) -> Dict[str, Any]:
        """Flat attribute dict; values are str/int/float/bool only."""
        attrs: Dict[str, Any] = {}
        for key, value in self.__dict__.items():
            if value is None:
                continue
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, (dict, list)):
                value = json.dumps(value, default=str)
            attrs[key] = value
        return attrs


@dataclass
class ToolCallEvent(TelemetryEvent):
    name: str = "agentloop.tool_call"
    function_name: str = ""
    function_args: Dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0
    success: bool = False
    decision: Optional[ToolCallDecision] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class ApiRequestEvent(TelemetryEvent):
    name: str = "agentloop.api_request"
    model: str = ""
    request_text: Optional[str] = None


@dataclass
class ApiResponseEvent(TelemetryEvent):
    name: str = "agentloop.api_response"
    model: str = ""
    status_code: Optional[int] = 200
    duration_ms: int = 0
    input_token_count: int = 0
    output_token_count: int = 0
    cached_content_token_count: int = 0
    thoughts_token_count: int = 0
    tool_token_count: int = 0
    response_text: Optional[str] = None


@dataclass
class ApiErrorEvent(TelemetryEvent):
    name: str = "agentloop.api_error"
    model: str = ""
    error: str = ""
    error_type: Optional[str] = None
    status_code: Optional[int] = None
    duration_ms: int = 0
