"""Exponential backoff retry for calls to the embedding provider.

The provider is a local model server that is often slow to warm up or
briefly unavailable while a model loads, so transient failures are retried
a few times before the caller treats the embedding as missing.
"""

import asyncio
import functools
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds before the second attempt
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1  # +/- fraction of the delay
    retryable_exceptions: tuple = field(
        default_factory=lambda: (
            httpx.TimeoutException,
            httpx.NetworkError,
            ConnectionError,
            asyncio.TimeoutError,
        )
    )
    # 429/503 are what model servers answer while a model is still loading
    retryable_status_codes: tuple = field(
        default_factory=lambda: (429, 500, 502, 503, 504)
    )


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retry number attempt + 1 (attempt is 0-based)."""
    delay = min(config.base_delay * (config.exponential_base ** attempt), config.max_delay)
    jitter_range = delay * config.jitter
    return max(0.0, delay + random.uniform(-jitter_range, jitter_range))


def is_retryable_exception(exc: Exception, config: RetryConfig) -> bool:
    if isinstance(exc, config.retryable_exceptions):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in config.retryable_status_codes
    return False


def async_retry(config: RetryConfig | None = None):
    """
    Decorator for retrying async functions with exponential backoff.

    Non-retryable exceptions propagate immediately; once attempts are
    exhausted the last exception is raised.

    Usage:
        @async_retry(RetryConfig(max_attempts=5))
        async def embed():
            ...
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            last_exception: Exception | None = None

            for attempt in range(config.max_attempts):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    last_exception = e
                    if not is_retryable_exception(e, config):
                        raise

                    if attempt < config.max_attempts - 1:
                        delay = calculate_delay(attempt, config)
                        logger.warning(
                            f"Retry {attempt + 1}/{config.max_attempts} for {func.__name__} "
                            f"after {type(e).__name__}: {e}. Waiting {delay:.2f}s"
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(f"All {config.max_attempts} attempts failed for {func.__name__}: {e}")

            raise last_exception

        return wrapper

    return decorator
