"""
Retrying HTTP client for custodian REST APIs.

One loop handles every failure mode for a request:

* 401: refresh the token once and replay
* 429: wait ``retry-after`` seconds (default 300) and replay
* 5xx / transport errors: exponential backoff, capped, bounded retries
* any other 4xx: raise immediately
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

import requests

from config.settings import settings
from core.errors import ConnectivityError, CustodianApiError

logger = logging.getLogger(__name__)

REDACTED_HEADERS = {"authorization", "x-api-key"}


class TokenSource(Protocol):
    def current_token(self) -> Optional[str]:
        ...

    def refresh(self) -> Optional[str]:
        ...


@dataclass
class RequestContext:
    method: str
    url: str
    params: Optional[Dict[str, Any]] = None
    json: Optional[Any] = None
    timeout: float = 30.0
    server_retries: int = 0
    rate_limit_retries: int = 0
    token_refreshed: bool = False
    delays: list = field(default_factory=list)


def _redact(headers: Dict[str, str]) -> Dict[str, str]:
    return {k: ("***" if k.lower() in REDACTED_HEADERS else v) for k, v in headers.items()}


class CustodianHttpClient:
    def __init__(
        self,
        base_url: str,
        source: str,
        token_source: Optional[TokenSource] = None,
        auth_header: str = "Authorization",
        auth_scheme: Optional[str] = "Bearer",
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        max_server_retries: int = settings.SERVER_ERROR_MAX_RETRIES,
        backoff_base: float = settings.BACKOFF_BASE_SECONDS,
        backoff_cap: float = settings.BACKOFF_CAP_SECONDS,
        default_retry_after: int = settings.RATE_LIMIT_DEFAULT_RETRY_AFTER,
        max_rate_limit_retries: int = settings.RATE_LIMIT_MAX_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.source = source
        self.token_source = token_source
        self.auth_header = auth_header
        self.auth_scheme = auth_scheme
        self.timeout = timeout
        self.session = session or requests.Session()
        self.max_server_retries = max_server_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.default_retry_after = default_retry_after
        self.max_rate_limit_retries = max_rate_limit_retries
        self._sleep = sleep

    def get(self, path: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None):
        return self.request("GET", path, params=params, timeout=timeout)

    def post(self, path: str, json: Optional[Any] = None, timeout: Optional[float] = None):
        return self.request("POST", path, json=json, timeout=timeout)

    def request(self, method: str, path: str, params=None, json=None, timeout: Optional[float] = None):
        ctx = RequestContext(
            method=method,
            url=f"{self.base_url}/{path.lstrip('/')}",
            params=params,
            json=json,
            timeout=timeout or self.timeout,
        )
        return self._send(ctx)

    def backoff_delay(self, retry_number: int) -> float:
        return min(self.backoff_base * (2 ** retry_number), self.backoff_cap)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        token = self.token_source.current_token() if self.token_source else None
        if token:
            headers[self.auth_header] = f"{self.auth_scheme} {token}" if self.auth_scheme else token
        return headers

    def _send(self, ctx: RequestContext) -> requests.Response:
        while True:
            headers = self._headers()
            logger.debug(f"{self.source} {ctx.method} {ctx.url} params={ctx.params} headers={_redact(headers)}")

            try:
                response = self.session.request(
                    method=ctx.method,
                    url=ctx.url,
                    params=ctx.params,
                    json=ctx.json,
                    headers=headers,
                    timeout=ctx.timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                self._backoff_or_raise(ctx, f"{type(e).__name__}: {e}", None)
                continue

            status = response.status_code
            if status < 400:
                return response

            if status == 401:
                if ctx.token_refreshed or self.token_source is None:
                    raise ConnectivityError(f"{self.source} authentication failed for {ctx.url}", 401)
                ctx.token_refreshed = True
                logger.info(f"{self.source} token rejected, refreshing and replaying {ctx.method} {ctx.url}")
                if not self.token_source.refresh():
                    raise ConnectivityError(f"{self.source} token refresh failed", 401)
                continue

            if status == 429:
                if ctx.rate_limit_retries >= self.max_rate_limit_retries:
                    raise ConnectivityError(f"{self.source} rate limit persisted for {ctx.url}", 429)
                ctx.rate_limit_retries += 1
                retry_after = self._retry_after(response)
                logger.warning(f"{self.source} rate limit exceeded, retrying after {retry_after}s")
                ctx.delays.append(retry_after)
                self._sleep(retry_after)
                continue

            if status >= 500:
                self._backoff_or_raise(ctx, f"HTTP {status}", status)
                continue

            raise CustodianApiError(f"{self.source} {ctx.method} {ctx.url} returned HTTP {status}", status)

    def _backoff_or_raise(self, ctx: RequestContext, reason: str, status: Optional[int]) -> None:
        if ctx.server_retries >= self.max_server_retries:
            logger.error(f"{self.source} {ctx.method} {ctx.url} failed after {ctx.server_retries} retries: {reason}")
            raise ConnectivityError(f"{self.source} request failed after {ctx.server_retries} retries: {reason}", status)

        delay = self.backoff_delay(ctx.server_retries)
        ctx.server_retries += 1
        ctx.delays.append(delay)
        logger.warning(f"{self.source} {reason}, retry {ctx.server_retries}/{self.max_server_retries} in {delay}s")
        self._sleep(delay)

    def _retry_after(self, response: requests.Response) -> float:
        raw = response.headers.get("retry-after")
        try:
            return float(raw) if raw is not None else float(self.default_retry_after)
        except ValueError:
            return float(self.default_retry_after)
