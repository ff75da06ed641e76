"""Scripted stand-ins for the model provider and tools used across tests."""

import threading
from typing import Any, Dict, List, Optional

from agentloop.plugins.model_provider.types import (
    FunctionCall,
    Part,
    ProviderResponse,
    TokenUsage,
)
from agentloop.tools.base import BaseTool, ToolCallConfirmationDetails, ToolResult


def text_chunk(text: str) -> ProviderResponse:
    return ProviderResponse(parts=[Part.from_text(text)])


def call_chunk(name: str, args: Optional[Dict[str, Any]] = None, call_id: Optional[str] = None) -> ProviderResponse:
    return ProviderResponse(parts=[Part.from_function_call(FunctionCall(id=call_id, name=name, args=args or {}))])


def thought_chunk(thought: str) -> ProviderResponse:
    return ProviderResponse(parts=[Part.from_thought(thought)])


class FakeProvider:
    """Replays scripted streams and responses.

    Each entry of ``streams`` is either a list of chunks or an exception to
    raise when the stream is opened. ``responses`` feeds ``generate_content``
    the same way.
    """

    name = "fake"

    def __init__(
        self,
        streams: Optional[List[Any]] = None,
        responses: Optional[List[Any]] = None,
        token_counts: Optional[List[Optional[int]]] = None,
        context_limit: int = 1_000_000,
        embeddings: Optional[List[List[float]]] = None,
    ):
        self.streams = list(streams or [])
        self.responses = list(responses or [])
        self.token_counts = list(token_counts or [])
        self.context_limit = context_limit
        self.embeddings = embeddings
        self.stream_calls: List[Dict[str, Any]] = []
        self.content_calls: List[Dict[str, Any]] = []
        self.embed_calls: List[Dict[str, Any]] = []
        self.shutdown_called = False
        self._lock = threading.Lock()

    def initialize(self, config=None) -> None:
        pass

    def shutdown(self) -> None:
        self.shutdown_called = True

    def generate_content(self, model, contents, config=None, cancel_token=None) -> ProviderResponse:
        with self._lock:
            self.content_calls.append({"model": model, "contents": list(contents), "config": config})
            item = self.responses.pop(0) if self.responses else ProviderResponse()
        if isinstance(item, BaseException):
            raise item
        return item

    def generate_content_stream(self, model, contents, config=None, cancel_token=None):
        with self._lock:
            self.stream_calls.append({"model": model, "contents": list(contents), "config": config})
            item = self.streams.pop(0) if self.streams else []
        if isinstance(item, BaseException):
            raise item
        return iter(item)

    def count_tokens(self, model, contents) -> Optional[int]:
        if self.token_counts:
            return self.token_counts.pop(0)
        return 10

    def embed_content(self, model, texts):
        self.embed_calls.append({"model": model, "texts": list(texts)})
        if self.embeddings is not None:
            return self.embeddings
        return [[0.1, 0.2] for _ in texts]

    def get_context_limit(self, model) -> int:
        return self.context_limit


class EchoTool(BaseTool):
    """Returns its ``text`` argument; optionally asks for confirmation."""

    def __init__(self, name: str = "echo", needs_confirmation: bool = False, result: Optional[ToolResult] = None):
        super().__init__(name, name.title(), "Echo the text argument.", {
            "type": "object",
            "properties": {"text": {"type": "string"}},
        })
        self.needs_confirmation = needs_confirmation
        self.result = result
        self.executed: List[Dict[str, Any]] = []
        self.confirm_outcomes: List[Any] = []

    def should_confirm_execute(self, params, cancel_token=None):
        if not self.needs_confirmation:
            return None
        return ToolCallConfirmationDetails(
            type="exec",
            title=f"Run {self.name}?",
            on_confirm=self._on_confirm,
            command=f"{self.name} {params.get('text', '')}",
        )

    def _on_confirm(self, outcome) -> None:
        self.confirm_outcomes.append(outcome)

    def execute(self, params, cancel_token=None, update_output=None) -> ToolResult:
        self.executed.append(dict(params))
        if self.result is not None:
            return self.result
        return ToolResult(llm_content=params.get("text", ""), return_display=params.get("text", ""))


class FailingTool(BaseTool):
    """Raises from ``execute``."""

    def __init__(self, name: str = "boom", message: str = "disk on fire"):
        super().__init__(name, name, "Always fails.")
        self.message = message

    def execute(self, params, cancel_token=None, update_output=None) -> ToolResult:
        raise RuntimeError(self.message)


class BlockingTool(BaseTool):
    """Blocks in ``execute`` until released or the cancel token fires."""

    def __init__(self, name: str = "slow"):
        super().__init__(name, name, "Waits.")
        self.started = threading.Event()
        self.release = threading.Event()

    def execute(self, params, cancel_token=None, update_output=None) -> ToolResult:
        self.started.set()
        while not self.release.wait(0.01):
            if cancel_token is not None and cancel_token.is_cancelled:
                break
        return ToolResult(llm_content="done")


def usage(prompt: int = 5, output: int = 7) -> TokenUsage:
    return TokenUsage(prompt_tokens=prompt, output_tokens=output, total_tokens=prompt + output)
