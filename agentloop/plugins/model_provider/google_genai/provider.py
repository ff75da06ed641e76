"""Google GenAI (Gemini API / Vertex AI) model provider implementation.

This provider encapsulates all interactions with the Google GenAI SDK and
implements the engine's model invocation interface:
- generate_content / generate_content_stream
- count_tokens
- embed_content

Authentication:
- API key (AI Studio): ``AuthType.USE_GEMINI`` with ``GEMINI_API_KEY``
- Vertex AI: ``AuthType.USE_VERTEX_AI`` with project/location and ADC
- Personal OAuth login: ``AuthType.LOGIN_WITH_GOOGLE`` with ADC user
  credentials against Vertex AI
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional, TYPE_CHECKING

from ._lazy import get_errors, get_genai
from .converters import config_to_sdk, history_to_sdk, response_from_sdk
from ..base import AuthType, ProviderConfig
from ..types import CancelToken, GenerationConfig, Message, ProviderResponse
from ....errors import UnauthorizedError
from ....trace import provider_trace

if TYPE_CHECKING:
    from google import genai

logger = logging.getLogger(__name__)


# Context window limits for known Gemini models (total tokens)
MODEL_CONTEXT_LIMITS: Dict[str, int] = {
    "gemini-2.5-pro": 1_048_576,
    "gemini-2.5-flash": 1_048_576,
    "gemini-2.5-flash-lite": 1_048_576,
    "gemini-2.0-flash": 1_048_576,
    "gemini-2.0-flash-lite": 1_048_576,
    "gemini-2.0-flash-preview-image-generation": 32_000,
    "gemini-1.5-pro": 2_097_152,
    "gemini-1.5-flash": 1_048_576,
}

DEFAULT_CONTEXT_LIMIT = 1_048_576


class GoogleGenAIProvider:
    """Google GenAI / Vertex AI model provider (stateless).

    Usage::

        provider = GoogleGenAIProvider()
        provider.initialize(ProviderConfig(api_key="..."))
        response = provider.generate_content(
            "gemini-2.5-flash",
            [Message.from_text(Role.USER, "Hello!")],
            GenerationConfig(temperature=0),
        )
    """

    def __init__(self):
        self._client: Optional[genai.Client] = None
        self._auth_type: AuthType = AuthType.USE_GEMINI

    @property
    def name(self) -> str:
        return "google_genai"

    # ==================== Lifecycle ====================

    def initialize(self, config: Optional[ProviderConfig] = None) -> None:
        """Create the SDK client.

        Raises:
            UnauthorizedError: No usable credentials for the requested auth type.
        """
        if config is None:
            config = ProviderConfig()
        self._auth_type = config.auth_type

        genai = get_genai()
        http_options = None
        if config.timeout:
            http_options = {"timeout": int(config.timeout * 1000)}

        if config.auth_type in (AuthType.USE_VERTEX_AI, AuthType.LOGIN_WITH_GOOGLE):
            if not config.project or not config.location:
                raise UnauthorizedError(
                    f"{config.auth_type.value} requires GOOGLE_CLOUD_PROJECT and GOOGLE_CLOUD_LOCATION",
                    status=None,
                )
            credentials = None
            if config.auth_type == AuthType.LOGIN_WITH_GOOGLE:
                # Personal login: application-default user credentials
                import google.auth
                credentials, _ = google.auth.default()
            self._client = genai.Client(
                vertexai=True,
                project=config.project,
                location=config.location,
                credentials=credentials,
                http_options=http_options,
            )
        else:
            if not config.api_key:
                raise UnauthorizedError("GEMINI_API_KEY is not set", status=None)
            self._client = genai.Client(api_key=config.api_key, http_options=http_options)

    def shutdown(self) -> None:
        self._client = None

    def _require_client(self) -> Any:
        if self._client is None:
            raise RuntimeError("Provider not initialized. Call initialize() first.")
        return self._client

    def _translate_error(self, exc: Exception) -> Exception:
        """Map SDK auth failures to UnauthorizedError; other errors pass through."""
        errors = get_errors()
        if isinstance(exc, errors.ClientError) and getattr(exc, "code", None) in (401, 403):
            return UnauthorizedError(str(exc), status=exc.code)
        return exc

    # ==================== Invocation ====================

    def generate_content(
        self,
        model: str,
        contents: List[Message],
        config: GenerationConfig,
        cancel_token: Optional[CancelToken] = None,
    ) -> ProviderResponse:
        client = self._require_client()
        provider_trace(self.name, f"GENERATE model={model} contents={len(contents)}")
        try:
            response = client.models.generate_content(
                model=model,
                contents=history_to_sdk(contents),
                config=config_to_sdk(config),
            )
        except Exception as exc:
            translated = self._translate_error(exc)
            if translated is exc:
                raise
            raise translated from exc
        return response_from_sdk(response)

    def generate_content_stream(
        self,
        model: str,
        contents: List[Message],
        config: GenerationConfig,
        cancel_token: Optional[CancelToken] = None,
    ) -> Iterator[ProviderResponse]:
        client = self._require_client()
        provider_trace(self.name, f"STREAM model={model} contents={len(contents)}")
        chunk_count = 0
        try:
            for chunk in client.models.generate_content_stream(
                model=model,
                contents=history_to_sdk(contents),
                config=config_to_sdk(config),
            ):
                if cancel_token is not None and cancel_token.is_cancelled:
                    provider_trace(self.name, f"STREAM_CANCELLED after {chunk_count} chunks")
                    return
                chunk_count += 1
                yield response_from_sdk(chunk)
        except Exception as exc:
            translated = self._translate_error(exc)
            if translated is exc:
                raise
            raise translated from exc
        provider_trace(self.name, f"STREAM_DONE chunks={chunk_count}")

    def count_tokens(self, model: str, contents: List[Message]) -> Optional[int]:
        client = self._require_client()
        try:
            result = client.models.count_tokens(model=model, contents=history_to_sdk(contents))
        except Exception as exc:
            translated = self._translate_error(exc)
            if translated is not exc:
                raise translated from exc
            logger.debug(f"Failed to count tokens for {model}: {exc}")
            return None
        return getattr(result, "total_tokens", None)

    def embed_content(self, model: str, texts: List[str]) -> List[List[float]]:
        client = self._require_client()
        try:
            result = client.models.embed_content(model=model, contents=texts)
        except Exception as exc:
            translated = self._translate_error(exc)
            if translated is exc:
                raise
            raise translated from exc
        return [list(e.values or []) for e in (result.embeddings or [])]

    # ==================== Model Info ====================

    def get_context_limit(self, model: str) -> int:
        """Context window size for ``model`` (exact, then prefix match)."""
        if model in MODEL_CONTEXT_LIMITS:
            return MODEL_CONTEXT_LIMITS[model]

        best = None
        for prefix, limit in MODEL_CONTEXT_LIMITS.items():
            if model.startswith(prefix) and (best is None or len(prefix) > len(best[0])):
                best = (prefix, limit)
        return best[1] if best else DEFAULT_CONTEXT_LIMIT


def create_provider() -> GoogleGenAIProvider:
    """Factory function for provider loading."""
    return GoogleGenAIProvider()
