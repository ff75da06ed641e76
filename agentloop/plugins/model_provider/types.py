"""Provider-agnostic types for model interactions.

This module defines internal types that abstract away provider-specific
SDK types (e.g., google.genai.types.Content, google.genai.types.FunctionDeclaration).

Everything above the model provider layer (chat session, turn engine, tool
scheduler, orchestrator) works exclusively with these types, so any backend
that converts to and from them is interchangeable.
"""

import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union


class Role(str, Enum):
    """Message role in a conversation."""
    USER = "user"
    MODEL = "model"


@dataclass
class ToolSchema:
    """Provider-agnostic tool/function declaration.

    This replaces google.genai.types.FunctionDeclaration with a format
    that can be converted to any provider's tool schema.

    Attributes:
        name: Unique tool name as exposed to the model.
        description: Human-readable description of what the tool does.
        parameters: JSON Schema object describing the tool's parameters.
    """
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FunctionCall:
    """A function/tool call requested by the model.

    Attributes:
        id: Identifier supplied by the backend, if any. The turn engine
            generates one when this is missing.
        name: Name of the function to call.
        args: Arguments to pass to the function.
    """
    id: Optional[str]
    name: Optional[str]
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FunctionResponse:
    """A tool result being sent back to the model.

    Attributes:
        id: ID of the FunctionCall this response answers.
        name: Name of the function that was called.
        response: JSON-serializable payload, conventionally ``{"output": ...}``
            on success or ``{"error": ...}`` on failure.
    """
    id: Optional[str]
    name: str
    response: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Part:
    """A part of a message content.

    Messages can contain multiple parts: text, function calls, function results, etc.

    Attributes:
        text: Text content.
        function_call: A function call from the model.
        function_response: A function result being sent back.
        inline_data: Binary data with mime type, ``{"mime_type": str, "data": bytes}``.
        file_data: Reference to remote binary content, ``{"mime_type": str, "file_uri": str}``.
        thought: Model's reasoning summary (thinking mode). Thought parts
            are shown to the caller but never recorded in history.
    """
    text: Optional[str] = None
    function_call: Optional[FunctionCall] = None
    function_response: Optional[FunctionResponse] = None
    inline_data: Optional[Dict[str, Any]] = None
    file_data: Optional[Dict[str, Any]] = None
    thought: Optional[str] = None

    @classmethod
    def from_text(cls, text: str) -> 'Part':
        """Create a text part."""
        return cls(text=text)

    @classmethod
    def from_function_call(cls, call: FunctionCall) -> 'Part':
        """Create a function call part."""
        return cls(function_call=call)

    @classmethod
    def from_function_response(cls, response: FunctionResponse) -> 'Part':
        """Create a function response part."""
        return cls(function_response=response)

    @classmethod
    def from_thought(cls, thought: str) -> 'Part':
        """Create a thought/reasoning part."""
        return cls(thought=thought)

    def is_empty(self) -> bool:
        """True when the part carries no content at all (e.g. ``Part(text="")``)."""
        return not (
            self.text
            or self.function_call
            or self.function_response
            or self.inline_data
            or self.file_data
            or self.thought
        )


def _generate_message_id() -> str:
    """Generate a unique message ID."""
    return str(uuid.uuid4())


@dataclass
class Message:
    """A message in a conversation.

    This replaces google.genai.types.Content with a provider-agnostic format.

    Attributes:
        role: The role of the message sender (user or model).
        parts: List of content parts (text, function calls, etc.).
        message_id: Unique identifier for this message.
    """
    role: Role
    parts: List[Part] = field(default_factory=list)
    message_id: str = field(default_factory=_generate_message_id)

    @classmethod
    def from_text(cls, role: Union[Role, str], text: str) -> 'Message':
        """Create a simple text message."""
        if isinstance(role, str):
            role = Role(role)
        return cls(role=role, parts=[Part.from_text(text)])

    @property
    def text(self) -> Optional[str]:
        """Extract concatenated text from all text parts."""
        texts = [p.text for p in self.parts if p.text]
        return ''.join(texts) if texts else None

    @property
    def function_calls(self) -> List[FunctionCall]:
        """Extract all function calls from this message."""
        return [p.function_call for p in self.parts if p.function_call]

    @property
    def is_function_response(self) -> bool:
        """True for a synthetic continuation: a user message made only of tool responses."""
        return (
            self.role == Role.USER
            and bool(self.parts)
            and all(p.function_response is not None for p in self.parts)
        )

    @property
    def is_thought(self) -> bool:
        """True when the message's first part is a thought."""
        return bool(self.parts) and self.parts[0].thought is not None


@dataclass
class TokenUsage:
    """Token usage statistics from a model response.

    Attributes:
        prompt_tokens: Tokens used in the prompt/input.
        output_tokens: Tokens generated in the response.
        total_tokens: Total tokens used.
        cache_read_tokens: Tokens served from the context cache.
        thinking_tokens: Tokens spent on thinking, when reported.
        tool_use_prompt_tokens: Tokens in tool-use prompts, when reported.
    """
    prompt_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_read_tokens: Optional[int] = None
    thinking_tokens: Optional[int] = None
    tool_use_prompt_tokens: Optional[int] = None


class FinishReason(str, Enum):
    """Reason why the model stopped generating."""
    STOP = "stop"              # Normal completion
    MAX_TOKENS = "max_tokens"  # Hit token limit
    TOOL_USE = "tool_use"      # Stopped to execute tools
    SAFETY = "safety"          # Safety filter triggered
    ERROR = "error"            # Error occurred
    CANCELLED = "cancelled"    # Cancelled via CancelToken
    UNKNOWN = "unknown"        # Unknown reason


@dataclass
class GenerationConfig:
    """Per-request generation settings passed to the provider.

    Attributes:
        temperature: Sampling temperature.
        top_p: Nucleus sampling cutoff.
        system_instruction: System prompt text.
        tools: Tool declarations exposed to the model.
        response_mime_type: Set to ``application/json`` for structured output.
        response_schema: JSON Schema the structured output must follow.
        include_thoughts: Ask the backend for thought summaries.
    """
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    system_instruction: Optional[str] = None
    tools: Optional[List[ToolSchema]] = None
    response_mime_type: Optional[str] = None
    response_schema: Optional[Dict[str, Any]] = None
    include_thoughts: bool = False


@dataclass
class ProviderResponse:
    """Unified response (or stream chunk) from a model provider.

    Attributes:
        parts: Ordered list of response parts of the first candidate.
        usage: Token usage statistics, if reported.
        finish_reason: Why the model stopped generating.
        raw: The original provider-specific response object.
    """
    parts: List[Part] = field(default_factory=list)
    usage: Optional[TokenUsage] = None
    finish_reason: FinishReason = FinishReason.UNKNOWN
    raw: Any = None

    @property
    def text(self) -> str:
        """Concatenated text of all non-thought text parts."""
        return ''.join(p.text for p in self.parts if p.text and p.thought is None)

    @property
    def function_calls(self) -> List[FunctionCall]:
        """Extract all function calls from parts."""
        return [p.function_call for p in self.parts if p.function_call]

    def has_function_calls(self) -> bool:
        """Check if the response contains function calls."""
        return any(p.function_call for p in self.parts)

    def to_message(self) -> Optional[Message]:
        """The candidate content as a model Message, or None when there is none."""
        if not self.parts:
            return None
        return Message(role=Role.MODEL, parts=list(self.parts))


class CancelledException(Exception):
    """Raised when an operation is cancelled via CancelToken."""

    def __init__(self, message: str = "Operation was cancelled"):
        self.message = message
        super().__init__(self.message)


class CancelToken:
    """Thread-safe cancellation token shared by a turn and its tool batch.

    Cancellation is cooperative: nothing is interrupted, every suspension
    point polls ``is_cancelled`` (or waits on it) and winds down by itself.

    Example:
        token = CancelToken()

        # In worker thread
        def work():
            while not token.is_cancelled:
                do_work_chunk()

        # In main thread
        token.cancel()  # Signals worker to stop
    """

    def __init__(self):
        self._cancelled = False
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    def cancel(self) -> None:
        """Request cancellation.

        Idempotent. Registered callbacks run once, outside the lock.
        """
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)

        self._event.set()

        for callback in callbacks:
            callback()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` expires.

        Returns:
            True if cancelled, False if timeout expired.
        """
        return self._event.wait(timeout=timeout)

    def raise_if_cancelled(self) -> None:
        """Raise CancelledException if cancelled."""
        if self._cancelled:
            raise CancelledException()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register a callback for cancellation; runs immediately if already cancelled."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()
