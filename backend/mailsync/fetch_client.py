"""Authenticated fetch: one upstream request on behalf of a connected account.

Every Google API call made by the sync strategies goes through `FetchClient.request`.
The production client proxies through Pipedream Connect, which injects the
account's OAuth credentials server-side.
"""
import base64
import logging
import random
import threading
import time
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import httpx

from .config import settings
from .exceptions import (
    AuthenticationError,
    NetworkError,
    UpstreamError,
    UpstreamRateLimitError,
)

logger = logging.getLogger(__name__)


class FetchClient:
    """Interface consumed by the sync strategies."""

    def request(
        self,
        account_id: str,
        external_user_id: str,
        target_url: str,
        options: Optional[dict] = None,
    ) -> Any:
        """Return the parsed JSON body or raise UpstreamError (or a subclass)."""
        raise NotImplementedError


def _error_message(resp: httpx.Response) -> str:
    """Short human-readable message from an upstream error response."""
    try:
        data = resp.json()
    except ValueError:
        text = (resp.text or "").strip()
        return text[:200] or resp.reason_phrase or f"HTTP {resp.status_code}"
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return data.get("error_description") or err
        if data.get("message"):
            return str(data["message"])
    return resp.reason_phrase or f"HTTP {resp.status_code}"


def _retry_after_s(resp: httpx.Response) -> Optional[float]:
    value = resp.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _with_target_params(target_url: str, params: Optional[dict]) -> str:
    if not params:
        return target_url
    sep = "&" if "?" in target_url else "?"
    return f"{target_url}{sep}{urlencode(params, doseq=True)}"


class PipedreamFetchClient(FetchClient):
    """Pipedream Connect proxy client with bounded retry for 5xx / network errors."""

    def __init__(
        self,
        *,
        project_id: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        environment: Optional[str] = None,
        api_base: Optional[str] = None,
        max_retries: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
        max_delay_ms: Optional[int] = None,
        timeout_s: Optional[float] = None,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.project_id = project_id or settings.pipedream_project_id
        self.client_id = client_id or settings.pipedream_client_id
        self.client_secret = client_secret or settings.pipedream_client_secret
        self.environment = environment or settings.pipedream_environment
        self.api_base = (api_base or settings.pipedream_api_base).rstrip("/")
        self.max_retries = settings.fetch_max_retries if max_retries is None else max_retries
        self.base_delay_ms = settings.fetch_base_delay_ms if base_delay_ms is None else base_delay_ms
        self.max_delay_ms = settings.fetch_max_delay_ms if max_delay_ms is None else max_delay_ms
        self.timeout_s = settings.fetch_timeout_s if timeout_s is None else timeout_s
        self._client = http_client or httpx.Client(timeout=httpx.Timeout(self.timeout_s))
        self._sleep = sleep
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def close(self) -> None:
        self._client.close()

    # ----------------------------
    # Pipedream OAuth (client credentials)
    # ----------------------------

    def _access_token(self) -> str:
        with self._token_lock:
            # Refresh a minute early so in-flight requests never carry an expired token.
            if self._token and time.monotonic() < self._token_expires_at - 60:
                return self._token
            if not self.client_id or not self.client_secret:
                raise AuthenticationError(401, "Pipedream credentials are not configured")
            try:
                resp = self._client.post(
                    f"{self.api_base}/v1/oauth/token",
                    json={
                        "grant_type": "client_credentials",
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                    },
                )
            except httpx.TransportError as e:
                raise NetworkError(f"Could not reach Pipedream: {e}") from e
            if resp.status_code >= 400:
                raise AuthenticationError(resp.status_code, f"Pipedream token request failed: {_error_message(resp)}")
            data = resp.json()
            self._token = data["access_token"]
            self._token_expires_at = time.monotonic() + float(data.get("expires_in") or 3600)
            return self._token

    def _invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_expires_at = 0.0

    def _proxy_url(self, target_url: str) -> str:
        encoded = base64.urlsafe_b64encode(target_url.encode("utf-8")).decode("ascii").rstrip("=")
        return f"{self.api_base}/v1/connect/{self.project_id}/proxy/{encoded}"

    def _backoff_s(self, attempt: int) -> float:
        delay_ms = min(self.max_delay_ms, self.base_delay_ms * (2 ** attempt))
        return (delay_ms + random.uniform(0, delay_ms * 0.1)) / 1000.0

    # ----------------------------
    # Request
    # ----------------------------

    def request(
        self,
        account_id: str,
        external_user_id: str,
        target_url: str,
        options: Optional[dict] = None,
    ) -> Any:
        options = options or {}
        method = (options.get("method") or "GET").upper()
        url = _with_target_params(target_url, options.get("params"))
        body = options.get("body")
        deadline = time.monotonic() + self.timeout_s

        for attempt in range(self.max_retries + 1):
            headers = {
                "Authorization": f"Bearer {self._access_token()}",
                "x-pd-environment": self.environment,
            }
            headers.update(options.get("headers") or {})
            try:
                resp = self._client.request(
                    method,
                    self._proxy_url(url),
                    params={"external_user_id": external_user_id, "account_id": account_id},
                    headers=headers,
                    json=body if body is not None else None,
                )
            except httpx.TransportError as e:
                delay = self._backoff_s(attempt)
                if attempt >= self.max_retries or time.monotonic() + delay > deadline:
                    raise NetworkError(f"Network error calling upstream: {e}") from e
                logger.warning(f"Network error on {method} {target_url} (attempt {attempt + 1}): {e}; retrying")
                self._sleep(delay)
                continue

            status = resp.status_code
            if status in (401, 403):
                if status == 401:
                    self._invalidate_token()
                raise AuthenticationError(status)
            if status == 429:
                raise UpstreamRateLimitError(
                    f"Rate limit exceeded: {_error_message(resp)}",
                    retry_after_s=_retry_after_s(resp),
                )
            if status >= 500:
                delay = _retry_after_s(resp)
                if delay is None:
                    delay = self._backoff_s(attempt)
                delay = min(delay, self.max_delay_ms / 1000.0)
                if attempt >= self.max_retries or time.monotonic() + delay > deadline:
                    raise UpstreamError(status, f"Upstream error {status}: {_error_message(resp)}")
                logger.warning(f"Upstream {status} on {method} {target_url} (attempt {attempt + 1}); retrying")
                self._sleep(delay)
                continue
            if status >= 400:
                raise UpstreamError(status, f"Upstream error {status}: {_error_message(resp)}")

            if not resp.content:
                return {}
            return resp.json()

        # Unreachable: the loop either returns or raises on the final attempt.
        raise NetworkError("Upstream request failed")


_default_client: Optional[FetchClient] = None
_default_lock = threading.Lock()


def get_fetch_client() -> FetchClient:
    """Shared PipedreamFetchClient built from settings."""
    global _default_client
    with _default_lock:
        if _default_client is None:
            _default_client = PipedreamFetchClient()
        return _default_client
