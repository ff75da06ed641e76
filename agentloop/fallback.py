"""Model-fallback policy.

Plugged into ``with_retry`` as the persistent rate-limit hook. When a
personal OAuth login keeps hitting rate limits on the main model, the user
is offered the flash model instead. The offer is made at most once per
session and never for API-key or Vertex credentials.
"""

import logging
from typing import Optional

from .config import EngineConfig
from .plugins.model_provider.base import AuthType
from .trace import trace

logger = logging.getLogger(__name__)


class ModelFallbackPolicy:
    """Decides whether to switch to the fallback model.

    Args:
        config: Engine config; ``config.model`` is updated on a switch.
    """

    def __init__(self, config: EngineConfig):
        self._config = config

    def __call__(self, auth_type: Optional[str]) -> Optional[str]:
        """Return the model to switch to, or None to keep the current one."""
        if auth_type != AuthType.LOGIN_WITH_GOOGLE:
            return None

        current = self._config.model
        fallback = self._config.fallback_model
        if current == fallback or self._config.model_switched_during_session:
            return None

        handler = self._config.fallback_handler
        if handler is None:
            return None

        try:
            accepted = handler(current, fallback)
        except Exception as exc:
            logger.warning(f"Fallback handler failed: {exc}")
            return None

        if not accepted:
            trace("Fallback", f"user declined switch {current} -> {fallback}")
            return None

        self._config.set_model(fallback)
        trace("Fallback", f"switched {current} -> {fallback}")
        return fallback
