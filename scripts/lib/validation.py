"""
Input validation and sanitisation helpers.

Used by the tracking endpoints, project/pixel management and webhook
handlers. All validators are pure functions returning bool (or a list of
messages for passwords) and never raise.
"""
from __future__ import annotations

import re
import threading
import time
from collections import defaultdict, deque
from typing import Deque, Dict, List
from urllib.parse import urlparse

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PROJECT_NAME_RE = re.compile(r"^[a-zA-Z0-9\s\-_.]+$")
EVENT_TYPE_RE = re.compile(r"^[a-z][a-z0-9_]{1,49}$")
PHONE_RE = re.compile(r"^\+?[0-9\s\-().]{7,20}$")
SPECIAL_CHAR_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")

MAX_EMAIL_LENGTH = 254


def validate_email(email: str | None) -> bool:
    if not email:
        return False
    return len(email) <= MAX_EMAIL_LENGTH and bool(EMAIL_RE.match(email))


def validate_password(password: str) -> List[str]:
    """Return the list of unmet password rules (empty means valid)."""
    errors = []
    if len(password) < 8:
        errors.append("Password must be at least 8 characters long")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not SPECIAL_CHAR_RE.search(password):
        errors.append("Password must contain at least one special character")
    return errors


def sanitize_input(value: str) -> str:
    """Strip angle brackets, javascript: URLs and inline event handlers."""
    value = re.sub(r"[<>]", "", value)
    value = re.sub(r"javascript:", "", value, flags=re.IGNORECASE)
    value = re.sub(r"on\w+=", "", value, flags=re.IGNORECASE)
    return value.strip()


def validate_project_name(name: str | None) -> bool:
    if not name:
        return False
    cleaned = sanitize_input(name)
    return 2 <= len(cleaned) <= 100 and bool(PROJECT_NAME_RE.match(cleaned))


def validate_url(url: str | None) -> bool:
    if not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_phone(phone: str | None) -> bool:
    if not phone:
        return False
    return bool(PHONE_RE.match(phone.strip()))


def validate_event_type(event_type: str | None) -> bool:
    if not event_type:
        return False
    return bool(EVENT_TYPE_RE.match(event_type))


class SlidingWindowRateLimiter:
    """
    In-process sliding window limiter keyed by caller identifier.

    Usage:
        limiter = SlidingWindowRateLimiter(max_requests=100, window_seconds=3600)
        if not limiter.is_allowed(client_ip):
            raise RateLimitExceededError(...)
    """

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def is_allowed(self, key: str, now: float = None) -> bool:
        """Record a request for ``key``; False once the window is full."""
        now = time.time() if now is None else now
        window_start = now - self.window_seconds
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= window_start:
                hits.popleft()
            if len(hits) >= self.max_requests:
                return False
            hits.append(now)
            return True

    def reset(self):
        with self._lock:
            self._hits.clear()
