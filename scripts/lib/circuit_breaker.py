"""
Circuit breaker for third-party platform calls.
Temporarily blocks requests to a platform that keeps failing so one broken
integration can't stall a whole sync run.

Each platform gets its own threshold and cool-down (PLATFORM_DEFAULTS),
overridable per deployment:

    CIRCUIT_FACEBOOK_THRESHOLD=3
    CIRCUIT_FACEBOOK_RESET_SECONDS=300

Usage:
    from scripts.lib.circuit_breaker import CircuitBreaker

    breaker = CircuitBreaker.get("facebook")
    breaker.guard()            # raises CircuitOpenError while open
    try:
        result = await make_api_call()
        breaker.record_success()
    except PlatformAPIError:
        breaker.record_failure()
        raise
"""
import os
import time
from typing import Dict, List, Optional, Tuple

from scripts.lib.errors import CircuitOpenError
from scripts.lib.logger import setup_logger

logger = setup_logger("circuit_breaker")

DEFAULT_THRESHOLD = 5
DEFAULT_RESET_SECONDS = 60

# (failure_threshold, reset_timeout seconds)
PLATFORM_DEFAULTS: Dict[str, Tuple[int, int]] = {
    # Graph API throttles per ad account for minutes at a time
    "facebook": (3, 300),
    "calendly": (5, 60),
    "ghl": (5, 120),
    "zoho_crm": (5, 120),
    "clickfunnels": (5, 60),
}


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return None


def breaker_settings(service: str) -> Dict[str, int]:
    """Threshold and reset timeout for a platform, env overrides applied."""
    threshold, reset = PLATFORM_DEFAULTS.get(
        service, (DEFAULT_THRESHOLD, DEFAULT_RESET_SECONDS),
    )
    prefix = f"CIRCUIT_{service.upper()}"
    env_threshold = _env_int(f"{prefix}_THRESHOLD")
    env_reset = _env_int(f"{prefix}_RESET_SECONDS")
    if env_threshold is not None and env_threshold > 0:
        threshold = env_threshold
    if env_reset is not None and env_reset >= 0:
        reset = env_reset
    return {"failure_threshold": threshold, "reset_timeout": reset}


class CircuitBreaker:
    """
    Per-platform breaker: CLOSED, OPEN, HALF_OPEN.

    CLOSED: calls pass; consecutive failures are counted.
    OPEN: calls raise CircuitOpenError until reset_timeout has passed.
    HALF_OPEN: one trial call; success closes, failure re-opens.
    """

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"

    _instances: Dict[str, "CircuitBreaker"] = {}

    def __init__(self, service: str, failure_threshold: int = DEFAULT_THRESHOLD,
                 reset_timeout: int = DEFAULT_RESET_SECONDS):
        self.service = service
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.state = self.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0.0
        self.opened_count = 0

    @classmethod
    def get(cls, service: str, **kwargs) -> "CircuitBreaker":
        """Shared breaker for a platform; explicit kwargs beat configured settings."""
        if service not in cls._instances:
            settings = breaker_settings(service)
            settings.update(kwargs)
            cls._instances[service] = cls(service, **settings)
        return cls._instances[service]

    @classmethod
    def reset_all(cls):
        """Forget every breaker (tests, config reloads)."""
        cls._instances.clear()

    @classmethod
    def all_status(cls) -> List[dict]:
        """Status of every breaker created so far."""
        return [b.status() for b in cls._instances.values()]

    def can_execute(self) -> bool:
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            if time.time() - self.last_failure_time >= self.reset_timeout:
                self.state = self.HALF_OPEN
                logger.info("%s circuit half-open, allowing one trial call", self.service)
                return True
            return False

        return True  # HALF_OPEN

    def guard(self):
        """Raise CircuitOpenError if the breaker won't let a request through."""
        if not self.can_execute():
            raise CircuitOpenError(
                self.service, self.failure_count, self.time_until_reset,
            )

    def record_success(self):
        if self.state == self.HALF_OPEN:
            logger.info("%s circuit closed, platform recovered", self.service)
        self.state = self.CLOSED
        self.failure_count = 0
        self.success_count += 1

    def record_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == self.HALF_OPEN:
            self._open()
            logger.warning("%s circuit re-opened, trial call failed", self.service)
        elif self.state == self.CLOSED and self.failure_count >= self.failure_threshold:
            self._open()
            logger.warning(
                "%s circuit opened after %d consecutive failures (threshold %d, "
                "retry in %ds)",
                self.service, self.failure_count,
                self.failure_threshold, self.reset_timeout,
            )

    def _open(self):
        self.state = self.OPEN
        self.opened_count += 1

    @property
    def time_until_reset(self) -> float:
        """Seconds until the breaker allows a trial call (0 if not open)."""
        if self.state != self.OPEN:
            return 0.0
        elapsed = time.time() - self.last_failure_time
        return max(0.0, self.reset_timeout - elapsed)

    def status(self) -> dict:
        return {
            "service": self.service,
            "state": self.state,
            "failures": self.failure_count,
            "threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
            "times_opened": self.opened_count,
            "time_until_reset": round(self.time_until_reset, 1),
        }
