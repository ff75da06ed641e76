"""Retry utilities for transient model API errors.

Wraps a single model invocation with exponential backoff and jitter, a
pluggable retry predicate, and a persistent rate-limit escalation hook
(used by the model-fallback policy).

Usage:
    from agentloop.retry_utils import with_retry, RetryConfig

    # Using default config (reads from environment)
    result, stats = with_retry(lambda: provider.generate_content(model, contents, cfg))

    # With custom config and fallback escalation
    config = RetryConfig(max_attempts=3, base_delay=2.0)
    result, stats = with_retry(
        lambda: provider.generate_content(current_model(), contents, cfg),
        config=config,
        on_persistent_rate_limit=fallback_policy,
        auth_type=AuthType.LOGIN_WITH_GOOGLE,
    )

Environment Variables:
    AI_RETRY_ATTEMPTS: Max retry attempts (default: 5)
    AI_RETRY_BASE_DELAY: Initial delay in seconds (default: 5.0)
    AI_RETRY_MAX_DELAY: Maximum delay in seconds (default: 30.0)
    AI_RETRY_FALLBACK_THRESHOLD: Consecutive rate-limit failures before the
        escalation hook is consulted (default: 2)
    AI_RETRY_LOG_SILENT: Suppress retry logging when set to '1', 'true', or 'yes'
"""

import logging
import os
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from .errors import get_error_status, is_auth_error
from .plugins.model_provider.types import CancelledException, CancelToken

logger = logging.getLogger(__name__)

# Signature: (message: str, attempt: int, max_attempts: int, delay: float) -> None
RetryCallback = Callable[[str, int, int, float], None]

# Signature: (auth_type) -> new model name, or None to keep retrying as before
PersistentRateLimitHandler = Callable[[Optional[str]], Optional[str]]

# google-genai exceptions, for precise classification
try:
    from google.genai import errors as genai_errors
    GENAI_CLIENT_ERROR: Tuple[Type[Exception], ...] = (genai_errors.ClientError,)
    GENAI_SERVER_ERROR: Tuple[Type[Exception], ...] = (genai_errors.ServerError,)
except ImportError:
    GENAI_CLIENT_ERROR = ()
    GENAI_SERVER_ERROR = ()


T = TypeVar('T')

_RATE_LIMIT_PATTERNS = ["429", "too many requests", "resource exhausted", "resource_exhausted",
                        "rate limit", "rate_limit", "quota"]
_INFRA_PATTERNS = ["500", "502", "503", "504", "service unavailable", "temporarily unavailable",
                   "internal error", "connection reset", "connection aborted", "timed out"]


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = field(default_factory=lambda: int(os.environ.get("AI_RETRY_ATTEMPTS", "5")))
    base_delay: float = field(default_factory=lambda: float(os.environ.get("AI_RETRY_BASE_DELAY", "5.0")))
    max_delay: float = field(default_factory=lambda: float(os.environ.get("AI_RETRY_MAX_DELAY", "30.0")))
    rate_limit_fallback_threshold: int = field(
        default_factory=lambda: int(os.environ.get("AI_RETRY_FALLBACK_THRESHOLD", "2"))
    )
    silent: bool = field(default_factory=lambda: os.environ.get("AI_RETRY_LOG_SILENT", "").lower() in ("1", "true", "yes"))
    jitter_factor: float = 0.3  # Random jitter range: [1-jitter, 1+jitter]


@dataclass
class RetryStats:
    """Statistics from a retry operation."""
    attempts: int = 0
    total_delay: float = 0.0
    rate_limit_errors: int = 0
    transient_errors: int = 0
    last_error: Optional[Exception] = None
    fallback_model: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)


def classify_error(exc: Exception) -> Dict[str, bool]:
    """Classify an exception as transient/rate-limit/infra/auth.

    Returns:
        Dict with keys: transient, rate_limit, infra, auth
    """
    if is_auth_error(exc):
        return {"transient": False, "rate_limit": False, "infra": False, "auth": True}

    rate_like = False
    infra_like = False
    status = get_error_status(exc)

    if GENAI_CLIENT_ERROR and isinstance(exc, GENAI_CLIENT_ERROR):
        rate_like = status == 429
    elif GENAI_SERVER_ERROR and isinstance(exc, GENAI_SERVER_ERROR):
        infra_like = True
    elif status is not None:
        rate_like = status == 429
        infra_like = status >= 500
    else:
        # Fallback: check error message for common patterns
        lower = str(exc).lower()
        if any(p in lower for p in _RATE_LIMIT_PATTERNS):
            rate_like = True
        elif any(p in lower for p in _INFRA_PATTERNS):
            infra_like = True
        elif isinstance(exc, (ConnectionError, TimeoutError)):
            infra_like = True

    return {
        "transient": rate_like or infra_like,
        "rate_limit": rate_like,
        "infra": infra_like,
        "auth": False,
    }


def default_should_retry(exc: Exception) -> bool:
    """Retry rate-limit and transient infrastructure failures only."""
    return classify_error(exc)["transient"]


def get_retry_after(exc: Exception) -> Optional[float]:
    """Extract a retry-after hint (seconds) from an exception if available."""
    if getattr(exc, 'retry_after', None):
        return float(exc.retry_after)

    response = getattr(exc, 'response', None)
    headers = getattr(response, 'headers', None)
    if headers is not None:
        retry_after = headers.get('Retry-After')
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                return None

    return None


def calculate_backoff(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None
) -> float:
    """Calculate backoff delay for a retry attempt.

    Uses exponential backoff with jitter, respecting retry-after hints.

    Args:
        attempt: Current attempt number (1-indexed).
        config: Retry configuration.
        retry_after: Optional retry-after hint from server.

    Returns:
        Delay in seconds before next attempt.
    """
    exp_delay = config.base_delay * (2 ** (attempt - 1))
    capped_delay = min(config.max_delay, exp_delay)

    jitter = random.uniform(1 - config.jitter_factor, 1 + config.jitter_factor)
    delay = max(0.0, capped_delay * jitter)

    if retry_after and retry_after > delay:
        delay = retry_after

    return delay


def interruptible_sleep(seconds: float, cancel_token: Optional[CancelToken] = None) -> None:
    """Sleep for ``seconds`` unless the token fires first.

    Raises:
        CancelledException: If the token is (or becomes) cancelled.
    """
    if cancel_token is None:
        time.sleep(seconds)
        return
    if cancel_token.wait(timeout=seconds):
        raise CancelledException("Retry sleep cancelled")


def with_retry(
    fn: Callable[[], T],
    config: Optional[RetryConfig] = None,
    context: str = "API call",
    on_retry: Optional[RetryCallback] = None,
    *,
    cancel_token: Optional[CancelToken] = None,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_persistent_rate_limit: Optional[PersistentRateLimitHandler] = None,
    auth_type: Optional[str] = None,
) -> Tuple[T, RetryStats]:
    """Execute a function with automatic retry on transient errors.

    ``fn`` is re-invoked from scratch on each attempt, so a closure that
    reads the current model name picks up a fallback model automatically.

    Args:
        fn: Function to execute (should take no arguments).
        config: Retry configuration (uses defaults if None).
        context: Description for logging (e.g., "generate_json").
        on_retry: Optional callback for retry notifications. If not
            provided, messages go to the module logger (unless config.silent).
        cancel_token: Aborts the backoff sleep and further attempts.
        should_retry: Predicate deciding which errors are retryable.
            Authorization failures are never retried regardless.
        on_persistent_rate_limit: Escalation hook consulted once
            ``config.rate_limit_fallback_threshold`` consecutive rate-limit
            failures have been seen. A non-None return value is the model to
            switch to; attempts and delays then start over.
        auth_type: Credential class passed to the escalation hook.

    Returns:
        Tuple of (result, RetryStats).

    Raises:
        The last exception if all retries are exhausted or error is non-retryable.
        CancelledException: If the token fires between attempts.
    """
    if config is None:
        config = RetryConfig()
    if should_retry is None:
        should_retry = default_should_retry

    stats = RetryStats()
    attempt = 0
    consecutive_rate_limits = 0

    while attempt < config.max_attempts:
        attempt += 1
        stats.attempts += 1
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        try:
            return fn(), stats

        except Exception as exc:
            stats.last_error = exc
            classification = classify_error(exc)

            stats.errors.append({
                "attempt": attempt,
                "error": str(exc)[:200],
                "error_type": exc.__class__.__name__,
                **classification,
            })

            if classification["rate_limit"]:
                stats.rate_limit_errors += 1
                consecutive_rate_limits += 1
            else:
                consecutive_rate_limits = 0
                if classification["infra"]:
                    stats.transient_errors += 1

            if classification["auth"]:
                raise

            if (
                on_persistent_rate_limit is not None
                and consecutive_rate_limits >= config.rate_limit_fallback_threshold
            ):
                fallback_model = on_persistent_rate_limit(auth_type)
                if fallback_model:
                    logger.warning(f"{context}: switching to fallback model {fallback_model}")
                    stats.fallback_model = fallback_model
                    attempt = 0
                    consecutive_rate_limits = 0
                    continue

            if attempt >= config.max_attempts or not should_retry(exc):
                raise

            retry_after = get_retry_after(exc)
            delay = calculate_backoff(attempt, config, retry_after)
            stats.total_delay += delay

            err_cls = exc.__class__.__name__
            tag = "rate-limit" if classification["rate_limit"] else "transient"
            exc_msg = str(exc)[:140].replace('\n', ' ')
            msg = f"[AI Retry {attempt}/{config.max_attempts}] {context} ({tag}): {err_cls}: {exc_msg} | sleep {delay:.2f}s"

            if on_retry:
                on_retry(msg, attempt, config.max_attempts, delay)
            elif not config.silent:
                logger.warning(msg)

            interruptible_sleep(delay, cancel_token)

    raise RuntimeError("Retry loop exited without result or exception")


__all__ = [
    'PersistentRateLimitHandler',
    'RetryCallback',
    'RetryConfig',
    'RetryStats',
    'calculate_backoff',
    'classify_error',
    'default_should_retry',
    'get_retry_after',
    'interruptible_sleep',
    'with_retry',
]
