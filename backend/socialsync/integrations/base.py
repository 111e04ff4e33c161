"""
Connector capability set.

Each platform module exposes plain async functions and registers them in
a `Connector` record; the registry dispatches on the platform value.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from socialsync.integrations.api_client import ApiClient
from socialsync.schemas import ConnectorResult, OAuthAccount, SyncContext, TokenGrant

SyncFn = Callable[[ApiClient, SyncContext], Awaitable[ConnectorResult]]
RefreshFn = Callable[[ApiClient, str, "str | None"], Awaitable[TokenGrant]]
AuthorizeUrlFn = Callable[[str, "str | None"], str]
ExchangeFn = Callable[[ApiClient, str, "str | None"], Awaitable[list[OAuthAccount]]]


@dataclass(frozen=True)
class Connector:
    platform: str
    sync: SyncFn
    refresh: RefreshFn | None = None
    authorize_url: AuthorizeUrlFn | None = None
    exchange_code: ExchangeFn | None = None
    uses_pkce: bool = False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Graph API sends "+0000" offsets
    if len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit() and text[-3] != ":":
        text = f"{text[:-2]}:{text[-2:]}"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def expires_in(seconds: Any) -> datetime | None:
    """Absolute expiry for an `expires_in` response field; None when absent or zero."""
    try:
        secs = int(seconds)
    except (TypeError, ValueError):
        return None
    if secs <= 0:
        return None
    return utcnow() + timedelta(seconds=secs)


def date_window(days: int, end: date | None = None) -> list[date]:
    """`days` consecutive dates ending at `end` (today, UTC) inclusive."""
    end = end or utcnow().date()
    return [end - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
