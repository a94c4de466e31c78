"""
Custom error classes for Pulse Hub.
Structured error handling with error codes and HTTP status mapping.

Hierarchy:
    HubError
    ├── APIError
    │   ├── APITimeoutError
    │   ├── APIRateLimitError
    │   ├── APIAuthError
    │   ├── CircuitOpenError
    │   └── PlatformAPIError
    ├── DataError
    │   ├── ConfigError
    │   ├── SchemaValidationError
    │   ├── DataFetchError
    │   └── IntegrationNotFoundError
    ├── SyncError
    │   └── SyncStepError
    ├── TrackingError
    │   ├── InvalidPixelError
    │   └── RateLimitExceededError
    └── WebhookSignatureError

Every error exposes ``http_status``; the API layer renders it as
``{"error": message}`` with that status.
"""


class HubError(Exception):
    """Base exception for all Pulse Hub errors."""

    http_status = 500

    def __init__(self, message: str, code: str = "UNKNOWN", details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(f"[{code}] {message}")


# --- API Errors ---

class APIError(HubError):
    """Base class for external API errors."""

    def __init__(self, message: str, code: str = "API_ERROR",
                 status_code: int = None, url: str = None, **kwargs):
        self.status_code = status_code
        self.url = url
        details = {"status_code": status_code, "url": url, **kwargs}
        super().__init__(message, code=code, details=details)


class APITimeoutError(APIError):
    """Request timed out."""

    http_status = 503

    def __init__(self, url: str, timeout: float):
        super().__init__(
            f"Request timed out after {timeout}s: {url}",
            code="API_TIMEOUT", url=url, timeout=timeout,
        )


class APIRateLimitError(APIError):
    """Rate limit exceeded on a third-party API."""

    http_status = 503

    def __init__(self, url: str, retry_after: int = None, status_code: int = 429):
        msg = f"Rate limit exceeded: {url}"
        if retry_after:
            msg += f" (retry after {retry_after}s)"
        self.retry_after = retry_after
        super().__init__(
            msg, code="API_RATE_LIMIT", url=url,
            status_code=status_code, retry_after=retry_after,
        )


class APIAuthError(APIError):
    """Token rejected by the platform. The user has to reconnect."""

    http_status = 401
    requires_reauth = True

    def __init__(self, url: str, status_code: int = 401):
        super().__init__(
            f"Authentication failed: {url}",
            code="API_AUTH_FAILED", url=url, status_code=status_code,
            requires_reauth=True,
        )


class CircuitOpenError(APIError):
    """Circuit breaker is open, requests blocked."""

    http_status = 503

    def __init__(self, service: str, failures: int, reset_time: float):
        super().__init__(
            f"Circuit open for '{service}' after {failures} failures. "
            f"Resets in {reset_time:.0f}s.",
            code="CIRCUIT_OPEN", service=service,
        )


class PlatformAPIError(APIError):
    """Non-2xx response from a platform that is not auth or rate limiting."""

    http_status = 500

    def __init__(self, platform: str, status_code: int, url: str, body: str = ""):
        self.platform = platform
        self.body = body[:500] if body else ""
        super().__init__(
            f"{platform} API returned {status_code}",
            code="PLATFORM_API_ERROR", status_code=status_code, url=url,
            platform=platform, body=self.body,
        )


# --- Data Errors ---

class DataError(HubError):
    """Base class for data processing errors."""
    pass


class ConfigError(DataError):
    """Missing or invalid configuration."""

    http_status = 503

    def __init__(self, message: str, setting: str = None):
        super().__init__(
            message, code="CONFIG_ERROR", details={"setting": setting},
        )


class SchemaValidationError(DataError):
    """Request or record doesn't match the expected shape."""

    http_status = 400

    def __init__(self, message: str, field: str = None):
        super().__init__(
            message, code="SCHEMA_INVALID", details={"field": field},
        )


class DataFetchError(DataError):
    """Failed to fetch or load data from storage."""

    def __init__(self, message: str, source: str = None):
        super().__init__(
            message, code="DATA_FETCH_FAILED", details={"source": source},
        )


class IntegrationNotFoundError(DataError):
    """No connected integration (or stored credentials) for a project."""

    http_status = 404

    def __init__(self, platform: str, project_id: str = None):
        target = f" for project {project_id}" if project_id else ""
        super().__init__(
            f"No connected {platform} integration{target}",
            code="INTEGRATION_NOT_FOUND",
            details={"platform": platform, "project_id": project_id},
        )


# --- Sync Errors ---

class SyncError(HubError):
    """Sync orchestration error."""
    pass


class SyncStepError(SyncError):
    """A specific sync step failed."""

    def __init__(self, step_name: str, cause: Exception = None):
        msg = f"Sync step '{step_name}' failed"
        if cause:
            msg += f": {cause}"
        super().__init__(
            msg, code="SYNC_STEP_FAILED", details={"step": step_name},
        )


# --- Tracking Errors ---

class TrackingError(HubError):
    """Base class for tracking ingestion errors."""

    http_status = 400


class InvalidPixelError(TrackingError):
    """Pixel id unknown, inactive, or not allowed on the sending domain."""

    def __init__(self, pixel_id: str, reason: str = "Invalid pixel ID"):
        self.pixel_id = pixel_id
        super().__init__(
            reason, code="INVALID_PIXEL", details={"pixel_id": pixel_id},
        )


class RateLimitExceededError(TrackingError):
    """Caller exceeded the ingestion rate limit."""

    http_status = 429

    def __init__(self, identifier: str, limit: int, window_seconds: int):
        super().__init__(
            "Rate limit exceeded", code="RATE_LIMITED",
            details={"limit": limit, "window_seconds": window_seconds},
        )
        self.identifier = identifier


class WebhookSignatureError(HubError):
    """Webhook payload failed signature verification."""

    http_status = 401

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, code="WEBHOOK_SIGNATURE_INVALID")
