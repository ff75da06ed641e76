"""Typed errors raised by the conversation engine.

Tool-local failures are never raised through here: the scheduler turns them
into error responses for the model. These types cover the failures the
engine surfaces to its caller.
"""

from typing import Optional


class AgentLoopError(Exception):
    """Base class for engine errors."""


class UnauthorizedError(AgentLoopError):
    """The backend rejected the credentials.

    Fatal for the turn loop: never retried, never converted into an error event.
    """

    def __init__(self, message: str = "Unauthorized", status: Optional[int] = 401):
        self.status = status
        super().__init__(message)


class ConcurrentScheduleError(AgentLoopError, RuntimeError):
    """A tool batch was scheduled while another batch is still in flight."""


class DiscoveryError(AgentLoopError):
    """Running or parsing the tool discovery command failed."""


class ToolExecutionError(AgentLoopError):
    """A tool ran but reported a failure in its result."""


class ParseError(AgentLoopError, ValueError):
    """A structured-output call returned text that is not valid JSON."""


class EmptyResponseError(AgentLoopError):
    """The model returned no text where text was required."""


class ContentGenerationError(AgentLoopError):
    """A one-shot generation call failed."""


class EmbeddingError(AgentLoopError):
    """The embedding backend returned a result that breaks the contract."""


def get_error_message(exc: BaseException) -> str:
    """Best-effort human readable message for an exception."""
    message = str(exc)
    return message if message else exc.__class__.__name__


def get_error_status(exc: BaseException) -> Optional[int]:
    """HTTP-like status code carried by an exception, if any."""
    for attr in ("status", "code", "status_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def is_auth_error(exc: BaseException) -> bool:
    """True for authorization failures, which must never be retried."""
    if isinstance(exc, UnauthorizedError):
        return True
    return get_error_status(exc) in (401, 403)
