"""
Pulse Hub — Platform API Client Base
======================================

Shared HTTP plumbing for the Calendly, Facebook Graph, GoHighLevel, Zoho CRM
and ClickFunnels clients:

  - httpx.AsyncClient per request (optionally with an injected transport)
  - tenacity retries, only for rate-limit responses (429, or 400 carrying a
    platform rate-limit code), waiting backoff_base * 2^(attempt-1) seconds
  - per-platform circuit breaker, tripped by 5xx, timeouts and exhausted
    rate-limit retries
  - uniform error mapping: 401 -> APIAuthError, other non-2xx -> PlatformAPIError
"""
from __future__ import annotations

import os
import time
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from scripts.lib.circuit_breaker import CircuitBreaker
from scripts.lib.errors import (
    APIAuthError,
    APIRateLimitError,
    APITimeoutError,
    PlatformAPIError,
)
from scripts.lib.logger import setup_logger

logger = setup_logger("platform_client")


def _default_backoff_base() -> float:
    return float(os.getenv("HTTP_BACKOFF_BASE", "1"))


class PlatformClient:
    """
    Base class for third-party platform clients.

    Subclasses set ``platform`` and ``base_url`` and may override
    ``_auth_headers`` and ``rate_limit_codes``.

    Usage:
        client = CalendlyClient(access_token="...")
        data = await client.get_json("/users/me")
    """

    platform = "platform"
    base_url = ""
    # Error codes inside a 400 body that mean "throttled, try later"
    rate_limit_codes: tuple = ()

    def __init__(
        self,
        access_token: Optional[str] = None,
        *,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_base: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_base = (
            _default_backoff_base() if backoff_base is None else backoff_base
        )
        self.transport = transport
        self.breaker = CircuitBreaker.get(self.platform)

    # ─── Hooks ────────────────────────────────────────────────

    def _auth_headers(self) -> Dict[str, str]:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code != 400 or not self.rate_limit_codes:
            return False
        try:
            error = response.json().get("error") or {}
        except ValueError:
            return False
        return isinstance(error, dict) and error.get("code") in self.rate_limit_codes

    # ─── Requests ─────────────────────────────────────────────

    async def _send(
        self,
        method: str,
        url: str,
        params: Optional[Dict] = None,
        json: Any = None,
        data: Optional[Dict] = None,
        headers: Optional[Dict] = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        request_headers = {"Accept": "application/json"}
        if authenticated:
            request_headers.update(self._auth_headers())
        if headers:
            request_headers.update(headers)

        start = time.time()
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport,
            ) as client:
                response = await client.request(
                    method, url, params=params, json=json, data=data,
                    headers=request_headers,
                )
        except httpx.TimeoutException:
            raise APITimeoutError(url, self.timeout)
        except httpx.TransportError as e:
            raise PlatformAPIError(self.platform, 0, url, str(e))

        logger.debug(
            "%s %s %s - %d in %.2fs",
            self.platform, method, url.split("?")[0],
            response.status_code, time.time() - start,
        )

        if self._is_rate_limited(response):
            retry_after = response.headers.get("retry-after")
            raise APIRateLimitError(
                url.split("?")[0],
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                status_code=response.status_code,
            )
        if response.status_code == 401:
            raise APIAuthError(url.split("?")[0], status_code=401)
        if response.status_code >= 400:
            raise PlatformAPIError(
                self.platform, response.status_code, url.split("?")[0], response.text,
            )
        return response

    async def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Make an HTTP request with rate-limit retries and circuit breaking.

        Raises:
            CircuitOpenError: the platform's breaker is open.
            APIRateLimitError: still rate limited after max_attempts.
            APIAuthError: the token was rejected (401).
            APITimeoutError / PlatformAPIError: any other failure.
        """
        self.breaker.guard()
        url = self._url(path)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff_base, min=0, max=60),
                retry=retry_if_exception_type(APIRateLimitError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "%s rate limited, retry %d/%d: %s",
                            self.platform, attempt.retry_state.attempt_number,
                            self.max_attempts, url.split("?")[0],
                        )
                    response = await self._send(method, url, **kwargs)
        except (APIRateLimitError, APITimeoutError) as e:
            self.breaker.record_failure()
            logger.error("%s request failed: %s", self.platform, e)
            raise
        except PlatformAPIError as e:
            if not e.status_code or e.status_code >= 500:
                self.breaker.record_failure()
            raise

        self.breaker.record_success()
        return response

    async def get_json(self, path: str, **kwargs) -> Dict:
        response = await self.request("GET", path, **kwargs)
        return response.json() if response.content else {}

    async def post_json(self, path: str, **kwargs) -> Any:
        response = await self.request("POST", path, **kwargs)
        return response.json() if response.content else {}
