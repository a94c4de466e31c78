"""
Utility functions for Pulse Hub.
Retry logic, HTTP helpers, pacing between API calls, and timestamp parsing.

Usage:
    from scripts.lib.utils import safe_request, retry_on_exception, pause, parse_iso
"""
import asyncio
import os
import time
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Iterator, List, Optional

import requests

from scripts.lib.logger import setup_logger

logger = setup_logger("utils")


def retry_on_exception(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,),
):
    """
    Decorator that retries a function on specified exceptions.

    Args:
        max_attempts: Maximum number of attempts.
        delay: Initial delay between retries in seconds.
        backoff: Multiplier for delay after each retry.
        exceptions: Tuple of exception types to catch.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            current_delay = delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(
                            "%s failed after %d attempts: %s",
                            func.__name__, max_attempts, e,
                        )
                        raise
                    logger.warning(
                        "%s failed (attempt %d/%d): %s. Retrying in %.1fs...",
                        func.__name__, attempt, max_attempts, e, current_delay,
                    )
                    time.sleep(current_delay)
                    current_delay *= backoff
        return wrapper
    return decorator


def safe_request(
    url: str,
    method: str = "GET",
    timeout: int = 30,
    max_retries: int = 3,
    retry_delay: float = 1.0,
    **kwargs,
) -> Optional[requests.Response]:
    """
    Make HTTP request with automatic retries and error handling.

    Args:
        url: URL to request.
        method: HTTP method.
        timeout: Request timeout in seconds.
        max_retries: Maximum retry attempts.
        retry_delay: Initial delay between retries in seconds.
        **kwargs: Additional arguments passed to requests.

    Returns:
        Response object if successful, None if all retries failed.
    """
    @retry_on_exception(
        max_attempts=max_retries,
        delay=retry_delay,
        exceptions=(
            requests.exceptions.Timeout,
            requests.exceptions.ConnectionError,
            requests.exceptions.HTTPError,
        ),
    )
    def _make_request():
        start = time.time()
        logger.debug("%s %s", method, url)
        response = requests.request(method, url, timeout=timeout, **kwargs)
        duration = time.time() - start
        logger.info(
            "%s %s - %d in %.2fs", method, url, response.status_code, duration,
        )
        response.raise_for_status()
        return response

    try:
        return _make_request()
    except requests.RequestException as e:
        logger.error("Request failed after retries: %s %s - %s", method, url, e)
        return None


async def pause(seconds: float):
    """
    Sleep between outbound API calls.

    Scaled by SYNC_PAUSE_SCALE (default 1) so tests and one-off scripts can
    run without the production pacing.
    """
    scale = float(os.getenv("SYNC_PAUSE_SCALE", "1"))
    if seconds > 0 and scale > 0:
        await asyncio.sleep(seconds * scale)


def chunked(items: List, size: int) -> Iterator[List]:
    """Yield successive chunks from a list."""
    for i in range(0, len(items), size):
        yield items[i : i + size]


def parse_iso(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts a trailing "Z". Naive values are assumed to be UTC.
    Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
