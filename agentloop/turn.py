"""Turn engine: one model round-trip as a stream of engine events."""

import logging
import re
import secrets
import time
from typing import Iterator, List, Optional, TYPE_CHECKING

from .errors import UnauthorizedError
from .events import (
    ContentEvent,
    ErrorEvent,
    Event,
    ThoughtEvent,
    ThoughtSummary,
    ToolCallRequestEvent,
    ToolCallRequestInfo,
    UserCancelledEvent,
    to_structured_error,
)
from .plugins.model_provider.types import CancelToken, FunctionCall, Part, ProviderResponse
from .trace import trace

if TYPE_CHECKING:
    from .chat_session import ChatSession

logger = logging.getLogger(__name__)

# First markdown-bold span of a thought; it may cross lines
_SUBJECT_RE = re.compile(r"\*\*(.*?)\*\*", re.DOTALL)


def parse_thought(raw_text: str) -> ThoughtSummary:
    """Split a thought into its bold subject and the rest."""
    match = _SUBJECT_RE.search(raw_text)
    subject = match.group(1).strip() if match else ""
    description = _SUBJECT_RE.sub("", raw_text, count=1).strip()
    return ThoughtSummary(subject=subject, description=description)


class Turn:
    """Runs one model round-trip and collects the tool calls it requested.

    After ``run`` is exhausted, ``pending_tool_calls`` holds every tool call
    the model asked for, in order.
    """

    def __init__(self, chat: 'ChatSession'):
        self.chat = chat
        self.pending_tool_calls: List[ToolCallRequestInfo] = []
        self.debug_responses: List[ProviderResponse] = []

    def run(self, parts: List[Part], cancel_token: Optional[CancelToken] = None) -> Iterator[Event]:
        """Send ``parts`` and yield normalized events until the stream ends.

        Raises:
            UnauthorizedError: Auth failures are never turned into events.
        """
        stream = None
        try:
            stream = self.chat.send_message_stream(parts, cancel_token)
            for resp in stream:
                if cancel_token is not None and cancel_token.is_cancelled:
                    yield UserCancelledEvent()
                    return
                self.debug_responses.append(resp)

                first = resp.parts[0] if resp.parts else None
                if first is not None and first.thought is not None:
                    yield ThoughtEvent(value=parse_thought(first.thought))
                    continue

                text = resp.text
                if text:
                    yield ContentEvent(value=text)

                for call in resp.function_calls:
                    yield self._handle_pending_function_call(call)

            # Providers may end the stream quietly once the token fires
            if cancel_token is not None and cancel_token.is_cancelled:
                yield UserCancelledEvent()
                return

        except UnauthorizedError:
            raise
        except Exception as exc:
            if cancel_token is not None and cancel_token.is_cancelled:
                yield UserCancelledEvent()
                return
            logger.warning(f"Error when talking to the model: {exc}")
            yield ErrorEvent(value=to_structured_error(exc))
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

    def _handle_pending_function_call(self, call: FunctionCall) -> ToolCallRequestEvent:
        call_id = call.id or f"{call.name}-{int(time.time() * 1000)}-{secrets.token_hex(6)}"
        request = ToolCallRequestInfo(
            call_id=call_id,
            name=call.name or "undefined_tool_name",
            args=dict(call.args or {}),
            is_client_initiated=False,
        )
        self.pending_tool_calls.append(request)
        trace("Turn", f"tool call requested: {request.name} ({request.call_id})")
        return ToolCallRequestEvent(value=request)
