"""
Rate-limited HTTP client shared by every connector.

- consults the RateLimiter before each attempt (fails fast when blocked)
- retries 429/5xx/network errors with exponential backoff + jitter
- maps 401/403 to AuthError and other 4xx to RequestError
- redacts tokens and secrets before anything is logged
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable

import httpx

from socialsync.errors import AuthError, RateLimitedError, RequestError, SyncError, TransientError
from socialsync.services.rate_limiter import PLATFORM_LIMITS, RateLimiter, RateLimitOptions
from socialsync.settings import get_settings

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_KEYS = frozenset({
    "access_token",
    "refresh_token",
    "client_secret",
    "code_verifier",
    "fb_exchange_token",
    "input_token",
    "id_token",
    "authorization",
})
# query strings also carry auth codes and API keys
SENSITIVE_PARAMS = SENSITIVE_KEYS | {"code", "key"}

# Meta reports expired/invalid tokens as 400 with these codes
META_AUTH_ERROR_CODES = frozenset({102, 190})


def redact_url(url: str | httpx.URL) -> str:
    parsed = httpx.URL(str(url))
    if not parsed.query:
        return str(parsed)
    params = [
        (k, REDACTED if k.lower() in SENSITIVE_PARAMS else v)
        for k, v in parsed.params.multi_items()
    ]
    return str(parsed.copy_with(params=params))


def redact(value: Any) -> Any:
    """Deep-copy `value` with every sensitive field masked."""
    if isinstance(value, dict):
        return {
            k: (REDACTED if isinstance(k, str) and k.lower() in SENSITIVE_KEYS else redact(v))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact(v) for v in value]
    if isinstance(value, str) and value.startswith(("http://", "https://")) and "?" in value:
        return redact_url(value)
    return value


def extract_error_message(platform: str, body: Any, status_code: int) -> str:
    """Pull a readable message out of a vendor error body."""
    fallback = f"{platform} API error (HTTP {status_code})"
    if not isinstance(body, dict):
        if isinstance(body, str) and body.strip():
            return f"{fallback}: {body.strip()[:300]}"
        return fallback

    if platform in ("facebook", "instagram"):
        err = body.get("error") or {}
        if isinstance(err, dict) and err.get("message"):
            parts = [err["message"]]
            if err.get("code") is not None:
                parts.append(f"code={err['code']}")
            if err.get("error_subcode") is not None:
                parts.append(f"subcode={err['error_subcode']}")
            return " ".join(str(p) for p in parts)
    elif platform == "tiktok":
        err = body.get("error") or {}
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
    elif platform == "youtube":
        err = body.get("error") or {}
        if isinstance(err, dict):
            errors = err.get("errors") or []
            if errors and isinstance(errors[0], dict) and errors[0].get("message"):
                return str(errors[0]["message"])
            if err.get("message"):
                return str(err["message"])
    elif platform == "twitter":
        errors = body.get("errors") or []
        if errors and isinstance(errors[0], dict):
            first = errors[0]
            return str(first.get("message") or first.get("detail") or first)
        if body.get("error_description"):
            return str(body["error_description"])
        if body.get("detail"):
            return str(body["detail"])
    elif platform == "linkedin":
        if body.get("message"):
            return str(body["message"])

    for key in ("error_description", "message", "error"):
        val = body.get(key)
        if isinstance(val, str) and val:
            return val
        if isinstance(val, dict) and val.get("message"):
            return str(val["message"])
    return fallback


def _is_meta_auth_error(platform: str, body: Any) -> bool:
    if platform not in ("facebook", "instagram") or not isinstance(body, dict):
        return False
    err = body.get("error")
    return isinstance(err, dict) and err.get("code") in META_AUTH_ERROR_CODES


def _parse_body(resp: httpx.Response) -> Any:
    if not resp.content:
        return {}
    try:
        return resp.json()
    except ValueError:
        return resp.text


def _retry_after_seconds(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


class ApiClient:
    """Shared outbound client. One instance per batch; close it when done."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
        *,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        limits: dict[str, RateLimitOptions] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        settings = get_settings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.api_timeout_sec)
        self.rate_limiter = rate_limiter or RateLimiter(max_buckets=settings.rate_limit_max_buckets)
        self._max_attempts = max(max_attempts or settings.api_max_attempts, 1)
        self._backoff_base = settings.api_backoff_base_sec if backoff_base is None else backoff_base
        self._limits = PLATFORM_LIMITS if limits is None else limits
        self._sleep = sleep

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _check_rate_limit(self, platform: str, operation: str) -> None:
        options = self._limits.get(platform)
        if options is None:
            return
        result = self.rate_limiter.check(f"{platform}:{operation}", options)
        if not result.allowed:
            raise RateLimitedError(
                f"{platform} rate limit reached for {operation}",
                retry_after_ms=result.retry_after_ms,
                platform=platform,
                operation=operation,
                status_code=429,
            )

    def _backoff_delay(self, attempt: int, retry_after: float | None) -> float:
        if retry_after is not None:
            return retry_after
        base = self._backoff_base * (2 ** attempt)
        return base + random.uniform(0, self._backoff_base)

    async def request(
        self,
        platform: str,
        url: str,
        *,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        auth: tuple[str, str] | None = None,
        operation: str = "request",
        quiet: bool = False,
    ) -> Any:
        """Perform a request and return the parsed body; raise a SyncError subclass on failure."""
        params = {k: v for k, v in (params or {}).items() if v is not None}
        last_error: SyncError | None = None

        for attempt in range(self._max_attempts):
            self._check_rate_limit(platform, operation)
            started = time.perf_counter()
            retry_after = None
            try:
                resp = await self._client.request(
                    method,
                    url,
                    params=params or None,
                    headers=headers,
                    json=json,
                    data=data,
                    auth=auth,
                )
            except httpx.TimeoutException as exc:
                last_error = TransientError(
                    f"{platform} {operation} timed out", platform=platform, operation=operation, status_code=408
                )
                logger.warning(
                    "[api] %s %s %s timeout after %dms (attempt %d/%d): %s",
                    platform, method, operation, (time.perf_counter() - started) * 1000,
                    attempt + 1, self._max_attempts, exc.__class__.__name__,
                )
            except httpx.TransportError as exc:
                last_error = TransientError(
                    f"{platform} {operation} network error: {exc.__class__.__name__}",
                    platform=platform, operation=operation, status_code=0,
                )
                logger.warning(
                    "[api] %s %s %s network error (attempt %d/%d): %s",
                    platform, method, operation, attempt + 1, self._max_attempts, exc.__class__.__name__,
                )
            else:
                elapsed_ms = (time.perf_counter() - started) * 1000
                status_code = resp.status_code
                logger.info(
                    "[api] %s %s %s -> %d (%dms) %s",
                    platform, method, operation, status_code, elapsed_ms, redact_url(resp.request.url),
                )
                body = _parse_body(resp)
                if 200 <= status_code < 300:
                    return body

                message = extract_error_message(platform, body, status_code)
                safe_body = redact(body)
                if status_code in (401, 403) or _is_meta_auth_error(platform, body):
                    raise AuthError(
                        message, platform=platform, operation=operation, status_code=status_code, raw=safe_body
                    )
                if status_code == 429 or status_code >= 500:
                    last_error = TransientError(
                        message, platform=platform, operation=operation, status_code=status_code, raw=safe_body
                    )
                    retry_after = _retry_after_seconds(resp)
                else:
                    if not quiet:
                        logger.warning("[api] %s %s failed: %s body=%s", platform, operation, message, safe_body)
                    raise RequestError(
                        message, platform=platform, operation=operation, status_code=status_code, raw=safe_body
                    )

            if attempt + 1 < self._max_attempts:
                delay = self._backoff_delay(attempt, retry_after)
                if not quiet:
                    logger.warning(
                        "[api] %s %s retrying in %.1fs (attempt %d/%d): %s",
                        platform, operation, delay, attempt + 1, self._max_attempts, last_error,
                    )
                await self._sleep(delay)

        raise last_error or TransientError(
            f"{platform} {operation} gave up", platform=platform, operation=operation, status_code=0
        )
