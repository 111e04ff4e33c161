from __future__ import annotations

import datetime as dt
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .services.metrics import coerce_metric, normalize_metrics

COUNTER_FIELDS = (
    "followers",
    "impressions",
    "reach",
    "engagements",
    "likes",
    "comments",
    "shares",
    "saves",
    "views",
    "watch_time",
    "posts_count",
)


class DailyMetricRow(BaseModel):
    """One canonical per-day metrics row produced by a connector."""

    date: dt.date
    followers: int = 0
    impressions: int = 0
    reach: int = 0
    engagements: int = 0
    likes: int = 0
    comments: int = 0
    shares: int = 0
    saves: int = 0
    views: int = 0
    watch_time: int = 0
    posts_count: int = 0
    raw_json: dict[str, Any] | None = None

    @field_validator(*COUNTER_FIELDS, mode="before")
    @classmethod
    def _coerce_counter(cls, v):
        return coerce_metric(v)


class PostRow(BaseModel):
    external_post_id: str
    posted_at: dt.datetime | None = None
    url: str | None = None
    caption: str | None = None
    media_type: str | None = None
    thumbnail_url: str | None = None
    media_url: str | None = None
    metrics: dict[str, Any] = Field(default_factory=dict)
    raw_json: dict[str, Any] | None = None

    @field_validator("external_post_id", mode="before")
    @classmethod
    def _stringify_id(cls, v):
        return str(v)

    @field_validator("metrics", mode="before")
    @classmethod
    def _parse_metrics(cls, v):
        return normalize_metrics(v)


class ConnectorResult(BaseModel):
    daily_metrics: list[DailyMetricRow] = Field(default_factory=list)
    posts: list[PostRow] = Field(default_factory=list)


class SyncContext(BaseModel):
    tenant_id: int
    social_account_id: int
    platform: str
    external_account_id: str
    access_token: str = ""
    refresh_token: str | None = None


class TokenGrant(BaseModel):
    """Result of a token exchange or refresh."""

    access_token: str
    refresh_token: str | None = None
    expires_at: dt.datetime | None = None


class OAuthAccount(BaseModel):
    """An account discovered during an OAuth callback, tokens still in plaintext."""

    platform: str
    external_account_id: str
    account_name: str | None = None
    access_token: str
    refresh_token: str | None = None
    expires_at: dt.datetime | None = None

    @field_validator("external_account_id", mode="before")
    @classmethod
    def _stringify_id(cls, v):
        return str(v)


class SocialAccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: int
    platform: str
    account_name: str | None = None
    external_account_id: str
    auth_status: str
    token_expires_at: dt.datetime | None = None
    last_sync_at: dt.datetime | None = None
    last_error: str | None = None


class SyncLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: int
    social_account_id: int | None = None
    platform: str
    status: str
    started_at: dt.datetime
    finished_at: dt.datetime | None = None
    rows_upserted: int = 0
    error_message: str | None = None
