"""Retry decorators for GitHub API calls and other transient failures.

This module provides decorators that implement bounded retry logic, including
respect for GitHub rate limit headers and exponential backoff. Every decorator
gives up after a fixed number of attempts and re-raises the last error, so a
run never blocks indefinitely on an unavailable dependency.
"""

import asyncio
import functools
import time
from typing import Any, Callable, TypeVar

import structlog
from githubkit.exception import (
    PrimaryRateLimitExceeded,
    RequestError,
    RequestFailed,
    RequestTimeout,
    SecondaryRateLimitExceeded,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def _require_coroutine_function(func: Callable[..., Any], decorator_name: str) -> None:
    """Raise if a retry decorator is applied to a synchronous function."""
    if not asyncio.iscoroutinefunction(func):
        raise RuntimeError(f"Function {func.__name__} decorated with @{decorator_name} must be async. This decorator only supports async functions.")


def _wait_time_from_headers(error: RequestFailed, default: float, function_name: str) -> float:
    """Derive a wait time from retry-after or x-ratelimit-reset headers."""
    retry_after = error.response.headers.get("retry-after")
    if retry_after:
        try:
            wait_time = float(retry_after)
            logger.info("Using retry-after header value", retry_after=wait_time, function=function_name)
            return wait_time
        except ValueError:
            logger.warning("Invalid retry-after header value", retry_after=retry_after, function=function_name)
            return default

    rate_limit_reset = error.response.headers.get("x-ratelimit-reset")
    if rate_limit_reset:
        try:
            reset_timestamp = int(rate_limit_reset)
        except ValueError:
            logger.warning("Invalid x-ratelimit-reset header value", rate_limit_reset=rate_limit_reset, function=function_name)
            return default
        current_timestamp = int(time.time())
        if reset_timestamp > current_timestamp:
            wait_time = reset_timestamp - current_timestamp + 1
            logger.info("Using x-ratelimit-reset header", wait_time=wait_time, function=function_name)
            return float(wait_time)
    return default


def retry_on_github_error(
    max_retries: int = 5,
    initial_delay: float = 2.0,
    max_delay: float = 120.0,
    exponential_base: float = 2.0,
) -> Callable[[F], F]:
    """Decorator for retrying async GitHub calls on rate limits and transient failures.

    This decorator handles:
    - GitHub primary and secondary rate limits (403/429)
    - Server-side errors (5xx)
    - Network errors and request timeouts
    - Respects retry-after and x-ratelimit-reset headers

    Any other error (including 404 and 422) is raised immediately.

    Args:
        max_retries: Maximum number of retry attempts (default: 5)
        initial_delay: Initial delay in seconds between retries (default: 2.0)
        max_delay: Maximum delay in seconds between retries (default: 120.0)
        exponential_base: Base for exponential backoff calculation (default: 2.0)

    Returns:
        Decorated function with retry logic

    Example:
        @retry_on_github_error()
        async def get_issue(number: int):
            return await github_client.rest.issues.async_get(...)
    """

    def decorator(func: F) -> F:
        _require_coroutine_function(func, "retry_on_github_error")

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except (PrimaryRateLimitExceeded, SecondaryRateLimitExceeded) as e:
                    if attempt == max_retries:
                        logger.error(
                            "Max retries reached for GitHub rate limit error",
                            function=func.__name__,
                            attempt=attempt + 1,
                            error_type=type(e).__name__,
                        )
                        raise
                    retry_after = getattr(e, "retry_after", None)
                    wait_time = min(retry_after.total_seconds() if retry_after else delay, max_delay)
                    logger.warning(
                        f"GitHub rate limit exceeded, waiting {wait_time} seconds",
                        function=func.__name__,
                        rate_limit_type="primary" if isinstance(e, PrimaryRateLimitExceeded) else "secondary",
                        attempt=attempt + 1,
                        max_retries=max_retries,
                    )
                except RequestFailed as e:
                    status_code = e.response.status_code
                    is_rate_limit = status_code == 429 or (status_code == 403 and "rate limit" in str(e).lower())
                    is_server_error = status_code >= 500
                    if not (is_rate_limit or is_server_error):
                        raise
                    if attempt == max_retries:
                        logger.error(
                            "Max retries reached for GitHub request failure",
                            function=func.__name__,
                            attempt=attempt + 1,
                            status_code=status_code,
                            error=str(e),
                        )
                        raise
                    wait_time = min(_wait_time_from_headers(e, delay, func.__name__), max_delay)
                    logger.warning(
                        f"GitHub request failed, retrying in {wait_time} seconds",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        status_code=status_code,
                    )
                except (RequestError, RequestTimeout) as e:
                    if attempt == max_retries:
                        logger.error(
                            "Max retries reached for GitHub network error",
                            function=func.__name__,
                            attempt=attempt + 1,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                        raise
                    wait_time = min(delay, max_delay)
                    logger.warning(
                        f"GitHub unreachable, retrying in {wait_time} seconds",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        error_type=type(e).__name__,
                    )

                await asyncio.sleep(wait_time)
                delay = min(delay * exponential_base, max_delay)

        return async_wrapper  # type: ignore

    return decorator


def retry_on_exception(
    retry_on: tuple[type[BaseException], ...],
    max_retries: int = 3,
    initial_delay: float = 2.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
) -> Callable[[F], F]:
    """Decorator for retrying async functions that raise one of the given exception types.

    Args:
        retry_on: Exception types considered transient.
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay in seconds between retries (default: 2.0)
        max_delay: Maximum delay in seconds between retries (default: 60.0)
        exponential_base: Base for exponential backoff calculation (default: 2.0)

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: F) -> F:
        _require_coroutine_function(func, "retry_on_exception")

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            delay = initial_delay
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    if attempt == max_retries:
                        logger.error(
                            "Max retries reached for transient error",
                            function=func.__name__,
                            attempt=attempt + 1,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                        raise
                    wait_time = min(delay, max_delay)
                    logger.warning(
                        f"Transient error, retrying in {wait_time} seconds",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        error_type=type(e).__name__,
                    )
                    await asyncio.sleep(wait_time)
                    delay = min(delay * exponential_base, max_delay)

        return async_wrapper  # type: ignore

    return decorator
