"""Google GenAI model provider."""

from .provider import DEFAULT_CONTEXT_LIMIT, MODEL_CONTEXT_LIMITS, GoogleGenAIProvider, create_provider

__all__ = ["DEFAULT_CONTEXT_LIMIT", "GoogleGenAIProvider", "MODEL_CONTEXT_LIMITS", "create_provider"]
