"""
Timeout and Retry Decorators for Hosted AI Calls

Every AI request is a single awaitable; these decorators are composed around
it instead of being baked into each call site:

    call = resilient(timeout=60, max_attempts=3)(gateway._generate)
    text = await call(prompt, payload)

Retry policy:
  - Retryable:     HTTP 5xx, timeouts, connection failures
  - Non-retryable: HTTP 4xx (bad request, auth, rate limit) — fail immediately
  - Back-off:      base_delay × 2^(attempt-1), capped at max_delay

After the budget is exhausted the last error surfaces as AIServiceError
(or AITimeoutError) so callers only ever handle one exception family.
"""

from __future__ import annotations

import asyncio
import logging
from functools import wraps
from typing import Awaitable, Callable, TypeVar

from app.core.exceptions import AIServiceError, AITimeoutError, is_retryable, status_code_of

logger = logging.getLogger(__name__)

T = TypeVar("T")

AsyncCallable = Callable[..., Awaitable[T]]


def with_timeout(seconds: float, *, label: str = "ai_call") -> Callable[[AsyncCallable], AsyncCallable]:
    """Abort the wrapped call after `seconds` and raise AITimeoutError."""
    def decorator(fn: AsyncCallable) -> AsyncCallable:
        @wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await asyncio.wait_for(fn(*args, **kwargs), timeout=seconds)
            except asyncio.TimeoutError as exc:
                raise AITimeoutError(f"{label} timed out after {seconds:g}s") from exc
        return wrapper
    return decorator


def with_retry(
    max_attempts: int = 3,
    base_delay:   float = 2.0,
    max_delay:    float = 30.0,
    *,
    label: str = "ai_call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Callable[[AsyncCallable], AsyncCallable]:
    """Retry retryable failures with exponential back-off."""
    def decorator(fn: AsyncCallable) -> AsyncCallable:
        @wraps(fn)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, max_attempts + 1):
                try:
                    return await fn(*args, **kwargs)
                except Exception as exc:
                    retryable = is_retryable(exc)
                    if not retryable or attempt >= max_attempts:
                        logger.error(
                            "%s failed | attempt=%d/%d retryable=%s error=%s: %s",
                            label, attempt, max_attempts, retryable, type(exc).__name__, exc,
                        )
                        if isinstance(exc, AIServiceError):
                            raise
                        raise AIServiceError(
                            f"{label} failed: {type(exc).__name__}: {exc}",
                            status_code=status_code_of(exc),
                        ) from exc

                    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
                    logger.warning(
                        "%s retry | attempt=%d/%d delay=%.1fs error=%s",
                        label, attempt, max_attempts, delay, exc,
                    )
                    await sleep(delay)
            raise AIServiceError(f"{label} failed: no attempts made")
        return wrapper
    return decorator


def resilient(
    timeout:      float,
    max_attempts: int = 3,
    base_delay:   float = 2.0,
    max_delay:    float = 30.0,
    *,
    label: str = "ai_call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Callable[[AsyncCallable], AsyncCallable]:
    """Per-attempt timeout inside the retry loop."""
    def decorator(fn: AsyncCallable) -> AsyncCallable:
        timed = with_timeout(timeout, label=label)(fn)
        return with_retry(max_attempts, base_delay, max_delay, label=label, sleep=sleep)(timed)
    return decorator
