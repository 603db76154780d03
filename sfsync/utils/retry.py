"""Retry decorator with exponential backoff for transient network failures

Used while polling long-running deploy/retrieve jobs, where a dropped
connection should not lose track of a job the server is still running.
Session expiry is not handled here; see ``RestApi.invoke``.
"""
import time
import logging
from functools import wraps
from typing import Callable, Type, Tuple, Optional

import requests

from sfsync.config import get_config

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: Tuple[Type[Exception], ...] = (
    requests.ConnectionError,
    requests.Timeout,
)


def retry(
    max_attempts: Optional[int] = None,
    backoff: Optional[float] = None,
    exceptions: Tuple[Type[Exception], ...] = TRANSIENT_ERRORS,
    on_retry: Optional[Callable] = None
):
    """
    Decorator that retries a function with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: config.max_retries)
        backoff: Backoff multiplier, wait time = backoff ^ attempt
            (default: config.retry_backoff_seconds)
        exceptions: Tuple of exceptions to catch and retry
        on_retry: Optional callback called with (attempt, error) on each retry

    Example:
        @retry(max_attempts=3, backoff=2.0)
        def check_status(job_id):
            return requests.post(endpoint, data=envelope(job_id))
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            config = get_config()
            attempts = max_attempts if max_attempts is not None else config.max_retries
            factor = backoff if backoff is not None else config.retry_backoff_seconds

            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    attempt += 1
                    if attempt >= attempts:
                        logger.error(
                            f"Function {func.__name__} failed after {attempts} attempts: {e}"
                        )
                        raise

                    wait_time = factor ** attempt
                    logger.warning(
                        f"Function {func.__name__} failed (attempt {attempt}/{attempts}): {e}. "
                        f"Retrying in {wait_time}s..."
                    )

                    if on_retry:
                        on_retry(attempt, e)

                    time.sleep(wait_time)
        return wrapper
    return decorator
