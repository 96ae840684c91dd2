"""Retry decorator with exponential or linear backoff."""
from __future__ import annotations

import functools
import logging
import random
import time
from collections.abc import Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_EXCEPTIONS: tuple[type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
)


def compute_delay(
    attempt: int,
    *,
    base_delay: float,
    max_delay: float,
    backoff: str = "exponential",
    exponential_base: float = 2.0,
    jitter: bool = False,
) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    if backoff == "linear":
        delay = base_delay * attempt
    else:
        delay = base_delay * (exponential_base ** (attempt - 1))
    delay = min(delay, max_delay)
    if jitter:
        delay = delay * (0.75 + random.random() * 0.5)
    return delay


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    backoff: str = "exponential",
    retry_on: tuple[type[Exception], ...] | None = None,
    retry_if: Callable[[Exception], bool] | None = None,
    on_retry: Callable[[Exception, int, float], None] | None = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator that retries a function with backoff.

    Args:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Delay unit in seconds
        max_delay: Upper bound for a single delay
        exponential_base: Growth factor when backoff is "exponential"
        jitter: Whether to add ±25% random jitter
        backoff: "exponential" or "linear" (attempt number * base_delay)
        retry_on: Exception types eligible for retry (default: connection errors)
        retry_if: Optional predicate; an eligible exception is retried only if it returns True
        on_retry: Optional callback called on each retry with (exception, attempt, delay)
    """
    exceptions_to_catch = retry_on or DEFAULT_RETRY_EXCEPTIONS

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(1, max_retries + 2):
                try:
                    return func(*args, **kwargs)
                except exceptions_to_catch as e:
                    if retry_if is not None and not retry_if(e):
                        raise

                    if attempt > max_retries:
                        logger.error(
                            f"[retry] {func.__name__} failed after {max_retries + 1} attempts: {e}"
                        )
                        raise

                    delay = compute_delay(
                        attempt,
                        base_delay=base_delay,
                        max_delay=max_delay,
                        backoff=backoff,
                        exponential_base=exponential_base,
                        jitter=jitter,
                    )

                    logger.warning(
                        f"[retry] {func.__name__} attempt {attempt}/{max_retries + 1} "
                        f"failed: {e}. Retrying in {delay:.2f}s"
                    )

                    if on_retry:
                        on_retry(e, attempt, delay)

                    time.sleep(delay)

            raise RuntimeError("Unexpected retry loop exit")

        return wrapper

    return decorator
