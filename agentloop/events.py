"""Engine-to-caller event stream.

Everything the engine reports while a user message is being processed is
one of the dataclasses below, yielded in order by ``Turn.run`` and
``ConversationOrchestrator.send_message_stream``.

Event Flow:
    Turn:          content / thought / tool_call_request / error / user_cancelled
    Orchestrator:  chat_compressed, then the Turn events, then (tool phase)
                   tool_call_confirmation / tool_call_started / tool_call_response
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING
import json

from .errors import get_error_message, get_error_status
from .plugins.model_provider.types import Part

if TYPE_CHECKING:
    from .tools.base import ToolCallConfirmationDetails


# =============================================================================
# Event Types
# =============================================================================

class EventType(str, Enum):
    """All event types in the stream."""

    # Model output (Turn)
    CONTENT = "content"
    THOUGHT = "thought"

    # Tool lifecycle
    TOOL_CALL_REQUEST = "tool_call_request"
    TOOL_CALL_CONFIRMATION = "tool_call_confirmation"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_RESPONSE = "tool_call_response"

    # Terminal conditions
    USER_CANCELLED = "user_cancelled"
    ERROR = "error"

    # History management (Orchestrator)
    CHAT_COMPRESSED = "chat_compressed"


# =============================================================================
# Payload Records
# =============================================================================

@dataclass
class ToolCallRequestInfo:
    """A tool call requested by the model (or by the client directly).

    ``args`` is the only mutable field: modify-with-editor rewrites it
    while the call is awaiting approval.
    """
    call_id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    is_client_initiated: bool = False


@dataclass
class ToolCallResponseInfo:
    """Terminal result of one tool call, ready to be sent back to the model."""
    call_id: str
    response_parts: List[Part] = field(default_factory=list)
    result_display: Optional[str] = None
    error: Optional[Exception] = None


@dataclass
class StructuredError:
    """Normalized error surfaced to the caller instead of an exception."""
    message: str
    status: Optional[int] = None


@dataclass
class ThoughtSummary:
    """A thought split into its bold subject and the remaining description."""
    subject: str = ""
    description: str = ""


@dataclass(frozen=True)
class ChatCompressionInfo:
    """Token counts before and after one compression."""
    original_token_count: int
    new_token_count: int


def to_structured_error(exc: BaseException) -> StructuredError:
    """Normalize any exception into a StructuredError."""
    return StructuredError(message=get_error_message(exc), status=get_error_status(exc))


# =============================================================================
# Base Event
# =============================================================================

@dataclass
class Event:
    """Base class for all events."""
    type: EventType
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d = asdict(self)
        if isinstance(d.get('type'), EventType):
            d['type'] = d['type'].value
        return d

    def to_json(self) -> str:
        """Serialize to JSON string (non-JSON values are stringified)."""
        return json.dumps(self.to_dict(), default=str)


# =============================================================================
# Turn Events
# =============================================================================

@dataclass
class ContentEvent(Event):
    """A chunk of model text."""
    type: EventType = field(default=EventType.CONTENT)
    value: str = ""


@dataclass
class ThoughtEvent(Event):
    """A thought summary from a thinking model."""
    type: EventType = field(default=EventType.THOUGHT)
    value: ThoughtSummary = field(default_factory=ThoughtSummary)


@dataclass
class ToolCallRequestEvent(Event):
    """The model asked for a tool call."""
    type: EventType = field(default=EventType.TOOL_CALL_REQUEST)
    value: Optional[ToolCallRequestInfo] = None


@dataclass
class UserCancelledEvent(Event):
    """The cancel token fired; nothing else follows from this turn."""
    type: EventType = field(default=EventType.USER_CANCELLED)


@dataclass
class ErrorEvent(Event):
    """A non-fatal model error, reported in place of raising."""
    type: EventType = field(default=EventType.ERROR)
    value: Optional[StructuredError] = None


# =============================================================================
# Orchestrator Events
# =============================================================================

@dataclass
class ChatCompressedEvent(Event):
    """History was replaced by a summary before this turn."""
    type: EventType = field(default=EventType.CHAT_COMPRESSED)
    value: Optional[ChatCompressionInfo] = None


@dataclass
class ToolCallConfirmationEvent(Event):
    """A tool call is waiting for the caller to answer ``details.on_confirm``."""
    type: EventType = field(default=EventType.TOOL_CALL_CONFIRMATION)
    request: Optional[ToolCallRequestInfo] = None
    details: Optional['ToolCallConfirmationDetails'] = None

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        if isinstance(d.get('details'), dict):
            d['details'].pop('on_confirm', None)
        return d


@dataclass
class ToolCallStartedEvent(Event):
    """A tool call moved to executing."""
    type: EventType = field(default=EventType.TOOL_CALL_STARTED)
    request: Optional[ToolCallRequestInfo] = None


@dataclass
class ToolCallResponseEvent(Event):
    """A tool call reached a terminal state."""
    type: EventType = field(default=EventType.TOOL_CALL_RESPONSE)
    name: str = ""
    status: str = ""
    value: Optional[ToolCallResponseInfo] = None
