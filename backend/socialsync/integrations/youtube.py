"""
YouTube Data API v3 connector.

Known limitation: the channel `viewCount` is cumulative since channel
creation. It is stored as-is in today's row, so a per-day series built
from it climbs like a staircase instead of showing daily views.
"""
from __future__ import annotations

import logging

import httpx

from socialsync.errors import ConfigurationError, RequestError
from socialsync.integrations.api_client import ApiClient
from socialsync.integrations.base import Connector, expires_in, parse_dt, utcnow
from socialsync.models import Platform
from socialsync.schemas import ConnectorResult, DailyMetricRow, OAuthAccount, PostRow, SyncContext, TokenGrant
from socialsync.services.metrics import coerce_metric
from socialsync.settings import get_settings

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
API_URL = "https://www.googleapis.com/youtube/v3"
SCOPES = (
    "https://www.googleapis.com/auth/youtube.readonly",
    "https://www.googleapis.com/auth/yt-analytics.readonly",
)
MAX_VIDEOS = 10

_PLATFORM = Platform.youtube.value


def _config() -> tuple[str, str, str]:
    settings = get_settings()
    if not settings.google_client_id or not settings.google_client_secret:
        raise ConfigurationError("YouTube OAuth not configured: GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are required")
    return (
        settings.google_client_id,
        settings.google_client_secret,
        settings.redirect_uri("youtube", settings.youtube_redirect_uri),
    )


def _auth(access_token: str | None) -> tuple[dict[str, str], dict[str, str]]:
    """(headers, extra params): OAuth bearer when available, otherwise the API key."""
    if access_token:
        return {"Authorization": f"Bearer {access_token}"}, {}
    api_key = get_settings().youtube_api_key
    if not api_key:
        raise ConfigurationError("No YouTube authentication available: missing OAuth token and YOUTUBE_API_KEY")
    return {}, {"key": api_key}


async def sync(api: ApiClient, ctx: SyncContext) -> ConnectorResult:
    headers, auth_params = _auth(ctx.access_token)
    channel_id = ctx.external_account_id

    channels = await api.request(
        _PLATFORM, f"{API_URL}/channels",
        params={"part": "statistics,snippet", "id": channel_id, **auth_params},
        headers=headers, operation="channels",
    )
    items = channels.get("items") or []
    if not items:
        raise RequestError(f"YouTube channel {channel_id} not found", platform=_PLATFORM, operation="channels")
    channel = items[0]
    stats = channel.get("statistics") or {}

    daily = DailyMetricRow(
        date=utcnow().date(),
        followers=stats.get("subscriberCount"),
        views=stats.get("viewCount"),
        posts_count=stats.get("videoCount"),
        raw_json={"statistics": stats, "snippet": channel.get("snippet"), "views_cumulative": True},
    )

    search = await api.request(
        _PLATFORM, f"{API_URL}/search",
        params={
            "part": "id",
            "channelId": channel_id,
            "order": "date",
            "maxResults": MAX_VIDEOS,
            "type": "video",
            **auth_params,
        },
        headers=headers, operation="search",
    )
    video_ids = [
        (item.get("id") or {}).get("videoId") for item in search.get("items") or []
    ]
    video_ids = [v for v in video_ids if v]
    if not video_ids:
        return ConnectorResult(daily_metrics=[daily], posts=[])

    videos = await api.request(
        _PLATFORM, f"{API_URL}/videos",
        params={"part": "snippet,statistics", "id": ",".join(video_ids), **auth_params},
        headers=headers, operation="videos",
    )
    posts: list[PostRow] = []
    for video in videos.get("items") or []:
        snippet = video.get("snippet") or {}
        vstats = video.get("statistics") or {}
        thumbs = snippet.get("thumbnails") or {}
        thumb = (thumbs.get("medium") or thumbs.get("default") or {}).get("url")
        watch_url = f"https://www.youtube.com/watch?v={video['id']}"
        posts.append(PostRow(
            external_post_id=video["id"],
            posted_at=parse_dt(snippet.get("publishedAt")),
            url=watch_url,
            caption=snippet.get("title"),
            media_type="video",
            thumbnail_url=thumb,
            media_url=watch_url,
            metrics={
                "views": coerce_metric(vstats.get("viewCount")),
                "likes": coerce_metric(vstats.get("likeCount")),
                "comments": coerce_metric(vstats.get("commentCount")),
            },
            raw_json=video,
        ))

    logger.info(f"[youtube] {channel_id}: {len(posts)} videos, subscribers={daily.followers}")
    return ConnectorResult(daily_metrics=[daily], posts=posts)


def authorize_url(state: str, code_challenge: str | None = None) -> str:
    client_id, _, redirect_uri = _config()
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    return str(httpx.URL(AUTH_URL, params=params))


def _grant_from(body: dict, fallback_refresh: str | None = None) -> TokenGrant:
    if not body.get("access_token"):
        message = body.get("error_description") or body.get("error") or "no access_token in response"
        raise RequestError(f"Google OAuth error: {message}", platform=_PLATFORM, operation="oauth")
    # Google does not rotate refresh tokens; keep the stored one
    return TokenGrant(
        access_token=body["access_token"],
        refresh_token=body.get("refresh_token") or fallback_refresh,
        expires_at=expires_in(body.get("expires_in")),
    )


async def exchange_code(api: ApiClient, code: str, code_verifier: str | None = None) -> list[OAuthAccount]:
    client_id, client_secret, redirect_uri = _config()
    body = await api.request(
        _PLATFORM, TOKEN_URL, method="POST",
        data={
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        },
        operation="oauth_exchange",
    )
    grant = _grant_from(body)
    channels = await api.request(
        _PLATFORM, f"{API_URL}/channels",
        params={"part": "snippet", "mine": "true"},
        headers={"Authorization": f"Bearer {grant.access_token}"},
        operation="channels_mine",
    )
    accounts = [
        OAuthAccount(
            platform=_PLATFORM,
            external_account_id=item["id"],
            account_name=(item.get("snippet") or {}).get("title"),
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
        )
        for item in channels.get("items") or []
        if item.get("id")
    ]
    if not accounts:
        raise RequestError("No YouTube channel found for this Google account", platform=_PLATFORM, operation="channels_mine")
    return accounts


async def refresh_token(api: ApiClient, access_token: str, refresh_token: str | None) -> TokenGrant:
    client_id, client_secret, _ = _config()
    if not refresh_token:
        raise RequestError("YouTube account has no refresh token", platform=_PLATFORM, operation="token_refresh")
    body = await api.request(
        _PLATFORM, TOKEN_URL, method="POST",
        data={
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        },
        operation="token_refresh",
    )
    return _grant_from(body, fallback_refresh=refresh_token)


CONNECTOR = Connector(
    platform=_PLATFORM,
    sync=sync,
    refresh=refresh_token,
    authorize_url=authorize_url,
    exchange_code=exchange_code,
)
