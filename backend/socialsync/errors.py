"""
Error taxonomy shared by the API client, connectors, token manager and
the sync orchestrator.

- ConfigurationError aborts a whole batch.
- Every other SyncError is account-level and ends up as a failed SyncLog.
"""
from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for every error raised by the sync core."""

    def __init__(
        self,
        message: str,
        *,
        platform: str | None = None,
        operation: str | None = None,
        status_code: int | None = None,
        raw: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.platform = platform
        self.operation = operation
        self.status_code = status_code
        self.raw = raw

    def __str__(self) -> str:
        return self.message


class ConfigurationError(SyncError):
    """A process-wide secret or credential is missing."""


class DecryptionError(SyncError):
    """Stored ciphertext is malformed or failed authentication."""


class AuthError(SyncError):
    """Token invalid or revoked (HTTP 401/403 or vendor token error)."""


class TokenRefreshError(SyncError):
    """The platform refresh flow failed; the account is marked expired."""


class RateLimitedError(SyncError):
    def __init__(self, message: str, retry_after_ms: int, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after_ms = retry_after_ms


class TransientError(SyncError):
    """429/5xx/network failure that survived every retry attempt."""


class RequestError(SyncError):
    """Non-retryable 4xx or malformed vendor response."""


class OAuthStateError(RequestError):
    """Bad, expired or unknown OAuth state, or a missing PKCE verifier."""
