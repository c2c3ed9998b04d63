"""Retry decorator with exponential backoff for async builder steps.

Example:
    from winbuilder.retry import retry, on_status_code

    # Retry a password reset with a fresh keypair on any handshake failure
    @retry(on=HandshakeError, max_attempts=3)
    async def reset():
        ...

    # Retry reads on transient Compute Engine errors
    @retry(on=on_status_code(429, 500, 503))
    async def refresh():
        ...
"""

from __future__ import annotations

import asyncio
import functools
import random
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

from loguru import logger

P = ParamSpec("P")
T = TypeVar("T")

RetryPredicate = Callable[[Exception], bool]


def retry(
    on: type[Exception] | tuple[type[Exception], ...] | RetryPredicate = Exception,
    max_attempts: int = 5,
    base_delay: float = 1.0,
    exponential_base: float = 2.0,
    max_delay: float = 60.0,
    jitter: bool = True,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator that retries async functions with exponential backoff.

    Args:
        on: When to retry. An exception class, a tuple of classes, or a
            predicate over the raised exception.
        max_attempts: Maximum number of attempts (including the first one).
        base_delay: Initial delay in seconds before first retry.
        exponential_base: Multiplier for exponential backoff.
            Delay formula: min(base_delay * (exponential_base ** attempt), max_delay)
        max_delay: Maximum delay cap in seconds.
        jitter: Whether to add random jitter (up to 10%).

    Returns:
        Decorated async function with retry behavior.
    """
    if isinstance(on, type) and issubclass(on, Exception):
        should_retry: RetryPredicate = lambda e: isinstance(e, on)
    elif isinstance(on, tuple):
        should_retry = lambda e: isinstance(e, on)
    else:
        should_retry = on

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    has_retries_left = attempt < max_attempts - 1
                    if not (should_retry(e) and has_retries_left):
                        raise

                    delay = min(base_delay * (exponential_base**attempt), max_delay)
                    if jitter:
                        delay += random.uniform(0, delay * 0.1)

                    logger.warning(
                        f"Retry {attempt + 1}/{max_attempts} after {type(e).__name__}: "
                        f"{e}. Waiting {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)

            raise AssertionError("unreachable")

        return wrapper  # type: ignore[return-value]

    return decorator


def on_status_code(*codes: int) -> RetryPredicate:
    """Create a predicate that retries on specific HTTP status codes.

    Works with ``google.api_core`` exceptions, which expose the HTTP status as
    ``code``, and with anything exposing ``status``.
    """

    def predicate(e: Exception) -> bool:
        status = getattr(e, "code", None)
        if not isinstance(status, int):
            status = getattr(e, "status", None)
        return status in codes

    return predicate


def any_of(*predicates: RetryPredicate) -> RetryPredicate:
    """Combine predicates with OR logic (retry if ANY predicate matches)."""

    def combined(e: Exception) -> bool:
        return any(p(e) for p in predicates)

    return combined
