"""Conversation session: the owner of the message history.

History has two views:

- comprehensive: every message recorded, including empty or invalid model
  outputs.
- curated: what is actually sent to the model. Model runs that contain an
  invalid message (no parts, or an empty part) are left out.

The history is only mutated through ``append``, ``reset``, ``replace`` and
the recording step that follows each send. Only one send may run at a time
per session.
"""

import copy
import logging
import threading
import time
from typing import Iterable, Iterator, List, Optional, Tuple, TYPE_CHECKING

from .errors import get_error_message, get_error_status
from .plugins.model_provider.base import ModelProviderPlugin
from .plugins.model_provider.types import (
    CancelToken,
    GenerationConfig,
    Message,
    Part,
    ProviderResponse,
    Role,
    TokenUsage,
)
from .plugins.telemetry import ApiErrorEvent, ApiRequestEvent, ApiResponseEvent
from .retry_utils import PersistentRateLimitHandler, with_retry
from .trace import trace

if TYPE_CHECKING:
    from .config import EngineConfig
    from .plugins.telemetry import TelemetryQueue

logger = logging.getLogger(__name__)


def is_valid_content(message: Message) -> bool:
    """A message is valid when it has parts and none of them is empty."""
    if not message.parts:
        return False
    return not any(part.is_empty() for part in message.parts)


def extract_curated_history(history: List[Message]) -> List[Message]:
    """Drop every model run that contains an invalid message.

    User messages are always kept, including function-response continuations.
    """
    curated: List[Message] = []
    i = 0
    length = len(history)
    while i < length:
        if history[i].role == Role.USER:
            curated.append(history[i])
            i += 1
            continue

        model_output: List[Message] = []
        is_valid = True
        while i < length and history[i].role == Role.MODEL:
            model_output.append(history[i])
            if is_valid and not is_valid_content(history[i]):
                is_valid = False
            i += 1
        if is_valid:
            curated.extend(model_output)
    return curated


def _is_text_message(message: Optional[Message]) -> bool:
    return (
        message is not None
        and message.role == Role.MODEL
        and bool(message.parts)
        and bool(message.parts[0].text)
    )


def _parts_text(parts: Iterable[Part]) -> str:
    return ''.join(p.text for p in parts if p.text)


class ChatSession:
    """Stateful chat on top of a stateless model provider.

    Args:
        config: Engine config; ``config.model`` is read on every attempt so a
            fallback switch takes effect mid-retry.
        provider: The model invocation backend.
        generation_config: Base request settings (system prompt, tools, ...).
        history: Initial history.
        telemetry: Queue receiving api request/response/error records.
        fallback_policy: Persistent rate-limit hook passed to ``with_retry``.
    """

    def __init__(
        self,
        config: 'EngineConfig',
        provider: ModelProviderPlugin,
        generation_config: Optional[GenerationConfig] = None,
        history: Optional[List[Message]] = None,
        telemetry: Optional['TelemetryQueue'] = None,
        fallback_policy: Optional[PersistentRateLimitHandler] = None,
    ):
        self._config = config
        self._provider = provider
        self._generation_config = generation_config or GenerationConfig()
        self._history: List[Message] = list(history or [])
        self._telemetry = telemetry
        self._fallback_policy = fallback_policy
        self._send_lock = threading.Lock()

    @property
    def generation_config(self) -> GenerationConfig:
        return self._generation_config

    # ==================== History ====================

    def get_history(self, curated: bool = False) -> List[Message]:
        """Return a deep copy of the comprehensive or curated history."""
        history = extract_curated_history(self._history) if curated else self._history
        return copy.deepcopy(history)

    def append(self, message: Message) -> None:
        self._history.append(message)

    def reset(self) -> None:
        self._history = []

    def replace(self, history: List[Message]) -> None:
        self._history = list(history)

    # ==================== Sending ====================

    def _request_config(self, system_instruction: Optional[str]) -> GenerationConfig:
        if system_instruction is None:
            return self._generation_config
        request_config = copy.copy(self._generation_config)
        request_config.system_instruction = system_instruction
        return request_config

    def send_message(
        self,
        parts: List[Part],
        system_instruction: Optional[str] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> ProviderResponse:
        """Send one message and wait for the full response.

        Args:
            parts: Content of the user message.
            system_instruction: Overrides the session's system prompt for
                this request only.
            cancel_token: Aborts retries.
        """
        with self._send_lock:
            user_message = Message(role=Role.USER, parts=list(parts))
            contents = self.get_history(curated=True) + [user_message]
            request_config = self._request_config(system_instruction)
            model = self._config.model

            self._log_api_request(model, user_message)
            start = time.monotonic()
            try:
                response, _stats = with_retry(
                    lambda: self._provider.generate_content(
                        self._config.model, contents, request_config, cancel_token
                    ),
                    config=self._config.retry,
                    context="send_message",
                    cancel_token=cancel_token,
                    on_persistent_rate_limit=self._fallback_policy,
                    auth_type=self._config.auth_type,
                )
            except Exception as exc:
                self._log_api_error(model, exc, start)
                raise

            self._log_api_response(self._config.model, start, response.usage, response.text)
            output = response.to_message()
            self._record_history(user_message, [output] if output else [])
            return response

    def send_message_stream(
        self,
        parts: List[Part],
        cancel_token: Optional[CancelToken] = None,
    ) -> Iterator[ProviderResponse]:
        """Send one message and yield the response chunks as they arrive.

        Opening the stream is retried (up to and including the first chunk);
        once chunks are flowing, errors propagate to the consumer. History is
        recorded after the stream is exhausted.
        """
        with self._send_lock:
            user_message = Message(role=Role.USER, parts=list(parts))
            contents = self.get_history(curated=True) + [user_message]
            request_config = self._generation_config
            model = self._config.model

            def open_stream() -> Tuple[Optional[ProviderResponse], Iterator[ProviderResponse]]:
                stream = iter(self._provider.generate_content_stream(
                    self._config.model, contents, request_config, cancel_token
                ))
                return next(stream, None), stream

            self._log_api_request(model, user_message)
            start = time.monotonic()
            try:
                (first, stream), _stats = with_retry(
                    open_stream,
                    config=self._config.retry,
                    context="send_message_stream",
                    cancel_token=cancel_token,
                    on_persistent_rate_limit=self._fallback_policy,
                    auth_type=self._config.auth_type,
                )
            except Exception as exc:
                self._log_api_error(model, exc, start)
                raise

            chunks: List[ProviderResponse] = []
            try:
                if first is not None:
                    chunks.append(first)
                    yield first
                for chunk in stream:
                    chunks.append(chunk)
                    yield chunk
            except Exception as exc:
                self._log_api_error(self._config.model, exc, start)
                raise

            usage = next((c.usage for c in reversed(chunks) if c.usage is not None), None)
            self._log_api_response(
                self._config.model, start, usage, ''.join(c.text for c in chunks)
            )
            outputs = [m for m in (c.to_message() for c in chunks) if m is not None]
            self._record_history(user_message, outputs)

    def _record_history(self, user_input: Message, model_output: List[Message]) -> None:
        """Append the user input and the consolidated model output.

        Thought messages are never recorded. Adjacent text outputs are merged
        into one message. When the model produced nothing at all, an empty
        model message is recorded so the run is visibly invalid, unless the
        input was a function-response continuation.
        """
        non_thought = [copy.deepcopy(m) for m in model_output if not m.is_thought]
        outputs: List[Message] = []
        if non_thought:
            outputs = non_thought
        elif not model_output and not user_input.is_function_response:
            outputs.append(Message(role=Role.MODEL, parts=[]))

        self._history.append(user_input)

        consolidated: List[Message] = []
        for message in outputs:
            last = consolidated[-1] if consolidated else None
            if _is_text_message(last) and _is_text_message(message):
                last.parts[0].text += message.parts[0].text or ''
                last.parts.extend(message.parts[1:])
            else:
                consolidated.append(message)

        trace("ChatSession", f"recorded user input + {len(consolidated)} model message(s)")
        self._history.extend(consolidated)

    # ==================== Telemetry ====================

    def _log_api_request(self, model: str, message: Message) -> None:
        if self._telemetry is None:
            return
        self._telemetry.log_event(ApiRequestEvent(model=model, request_text=_parts_text(message.parts)))

    def _log_api_response(
        self,
        model: str,
        start: float,
        usage: Optional[TokenUsage],
        response_text: Optional[str],
    ) -> None:
        if self._telemetry is None:
            return
        usage = usage or TokenUsage()
        self._telemetry.log_event(ApiResponseEvent(
            model=model,
            duration_ms=int((time.monotonic() - start) * 1000),
            input_token_count=usage.prompt_tokens,
            output_token_count=usage.output_tokens,
            cached_content_token_count=usage.cache_read_tokens or 0,
            thoughts_token_count=usage.thinking_tokens or 0,
            tool_token_count=usage.tool_use_prompt_tokens or 0,
            response_text=response_text,
        ))

    def _log_api_error(self, model: str, exc: BaseException, start: float) -> None:
        logger.debug(f"API call to {model} failed: {exc}")
        if self._telemetry is None:
            return
        self._telemetry.log_event(ApiErrorEvent(
            model=model,
            error=get_error_message(exc),
            error_type=exc.__class__.__name__,
            status_code=get_error_status(exc),
            duration_ms=int((time.monotonic() - start) * 1000),
        ))
