"""Lazy loading for Google GenAI SDK.

Defers importing google.genai until a provider is actually created.
"""

from typing import Any

_genai = None
_types = None
_errors = None

_INSTALL_HINT = "google-genai package not installed. Install with: pip install google-genai"


def get_genai() -> Any:
    """Get the google.genai module, importing it lazily.

    Raises:
        ImportError: If the google-genai package is not installed.
    """
    global _genai
    if _genai is None:
        try:
            from google import genai
        except ImportError as e:
            raise ImportError(_INSTALL_HINT) from e
        _genai = genai
    return _genai


def get_types() -> Any:
    """Get the google.genai.types module, importing it lazily."""
    global _types
    if _types is None:
        try:
            from google.genai import types
        except ImportError as e:
            raise ImportError(_INSTALL_HINT) from e
        _types = types
    return _types


def get_errors() -> Any:
    """Get the google.genai.errors module, importing it lazily."""
    global _errors
    if _errors is None:
        try:
            from google.genai import errors
        except ImportError as e:
            raise ImportError(_INSTALL_HINT) from e
        _errors = errors
    return _errors
