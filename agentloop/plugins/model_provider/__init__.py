"""Model provider plugins.

Provider names map to factory functions; ``load_provider`` imports the
backend module lazily so the SDK is only loaded when actually used.
"""

import importlib
from typing import Dict, Optional

from .base import AuthType, ModelProviderPlugin, ProviderConfig

# Provider name -> module exposing create_provider()
_PROVIDERS: Dict[str, str] = {
    "google_genai": ".google_genai.provider",
}


def discover_providers() -> Dict[str, str]:
    """Names of the providers that can be loaded."""
    return dict(_PROVIDERS)


def load_provider(name: str, config: Optional[ProviderConfig] = None) -> ModelProviderPlugin:
    """Create and initialize a provider by name.

    Raises:
        ValueError: If no provider with that name exists.
    """
    if name not in _PROVIDERS:
        raise ValueError(
            f"Unknown model provider '{name}'. Available: {', '.join(sorted(_PROVIDERS))}"
        )
    module = importlib.import_module(_PROVIDERS[name], __name__)
    provider = module.create_provider()
    provider.initialize(config)
    return provider


__all__ = [
    "AuthType",
    "ModelProviderPlugin",
    "ProviderConfig",
    "discover_providers",
    "load_provider",
]
