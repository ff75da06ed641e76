"""Model provider plugin protocol.

This is the engine's model invocation interface. The engine only ever talks
to a backend through these four calls; authentication, request signing and
wire format are the provider's business.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Protocol, runtime_checkable

from .types import CancelToken, GenerationConfig, Message, ProviderResponse


class AuthType(str, Enum):
    """Credential class used to reach the backend.

    Model fallback is only offered for ``LOGIN_WITH_GOOGLE``.
    """
    LOGIN_WITH_GOOGLE = "oauth-personal"
    USE_GEMINI = "gemini-api-key"
    USE_VERTEX_AI = "vertex-ai"


@dataclass
class ProviderConfig:
    """Configuration for model provider initialization.

    Attributes:
        api_key: API key for AI Studio (``GEMINI_API_KEY``).
        project: Cloud project ID (Vertex AI).
        location: Cloud region (Vertex AI).
        auth_type: Which credential class the provider should use.
        timeout: Optional request timeout in seconds.
    """
    api_key: Optional[str] = field(default_factory=lambda: os.environ.get("GEMINI_API_KEY"))
    project: Optional[str] = field(default_factory=lambda: os.environ.get("GOOGLE_CLOUD_PROJECT"))
    location: Optional[str] = field(default_factory=lambda: os.environ.get("GOOGLE_CLOUD_LOCATION"))
    auth_type: AuthType = AuthType.USE_GEMINI
    timeout: Optional[float] = None


@runtime_checkable
class ModelProviderPlugin(Protocol):
    """Protocol for model invocation backends.

    Implementations are stateless with respect to conversation history:
    the chat session passes the full content list on every call, and the
    model is chosen per call so fallback can switch it mid-session.

    Example implementation:

        class MyProvider:
            @property
            def name(self) -> str:
                return "my_provider"

            def generate_content(self, model, contents, config, cancel_token=None):
                ...
    """

    @property
    def name(self) -> str:
        """Unique identifier for this provider (e.g., 'google_genai')."""
        ...

    # ==================== Lifecycle ====================

    def initialize(self, config: Optional[ProviderConfig] = None) -> None:
        """Initialize the provider with credentials.

        Raises:
            UnauthorizedError: Credentials were rejected.
        """
        ...

    def shutdown(self) -> None:
        """Release any client resources."""
        ...

    # ==================== Invocation ====================

    def generate_content(
        self,
        model: str,
        contents: List[Message],
        config: GenerationConfig,
        cancel_token: Optional[CancelToken] = None,
    ) -> ProviderResponse:
        """Submit a conversation and return the complete response."""
        ...

    def generate_content_stream(
        self,
        model: str,
        contents: List[Message],
        config: GenerationConfig,
        cancel_token: Optional[CancelToken] = None,
    ) -> Iterator[ProviderResponse]:
        """Submit a conversation and return a stream of response chunks."""
        ...

    def count_tokens(self, model: str, contents: List[Message]) -> Optional[int]:
        """Count prompt tokens for ``contents``; None when the backend cannot tell."""
        ...

    def embed_content(self, model: str, texts: List[str]) -> List[List[float]]:
        """Return one embedding vector per input text."""
        ...

    # ==================== Model Info ====================

    def get_context_limit(self, model: str) -> int:
        """Maximum number of tokens ``model`` accepts."""
        ...
