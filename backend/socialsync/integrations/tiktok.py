"""TikTok Display API v2 connector (OAuth with PKCE)."""
from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx

from socialsync.errors import AuthError, ConfigurationError, RequestError
from socialsync.integrations.api_client import ApiClient
from socialsync.integrations.base import Connector, expires_in, utcnow
from socialsync.models import Platform
from socialsync.schemas import ConnectorResult, DailyMetricRow, OAuthAccount, PostRow, SyncContext, TokenGrant
from socialsync.services.metrics import coerce_metric
from socialsync.settings import get_settings

logger = logging.getLogger(__name__)

AUTH_URL = "https://www.tiktok.com/v2/auth/authorize/"
TOKEN_URL = "https://open.tiktokapis.com/v2/oauth/token/"
API_URL = "https://open.tiktokapis.com/v2"
SCOPES = ("user.info.basic", "user.info.profile", "user.info.stats", "video.list")

USER_FIELDS = "open_id,display_name,avatar_url,follower_count,following_count,likes_count,video_count"
VIDEO_FIELDS = "id,title,cover_image_url,share_url,create_time,like_count,comment_count,share_count,view_count"
MAX_VIDEOS = 20

TOKEN_ERROR_CODES = frozenset({"access_token_invalid", "access_token_expired", "scope_not_authorized"})

_PLATFORM = Platform.tiktok.value


def _config() -> tuple[str, str, str]:
    settings = get_settings()
    if not settings.tiktok_client_key or not settings.tiktok_client_secret:
        raise ConfigurationError("TikTok OAuth not configured: TIKTOK_CLIENT_KEY and TIKTOK_CLIENT_SECRET are required")
    return (
        settings.tiktok_client_key,
        settings.tiktok_client_secret,
        settings.redirect_uri("tiktok", settings.tiktok_redirect_uri),
    )


def check_envelope(body: dict, operation: str) -> None:
    """TikTok wraps every response in {data, error}; code "ok"/"0" means success."""
    error = body.get("error")
    if not error:
        return
    code = str(error.get("code", "")).lower()
    message = str(error.get("message") or "")
    if code in ("ok", "0") or message.lower() == "ok":
        return
    if code in TOKEN_ERROR_CODES:
        raise AuthError(f"TikTok API error: {message or code}", platform=_PLATFORM, operation=operation)
    raise RequestError(f"TikTok API error: {message or code}", platform=_PLATFORM, operation=operation, raw=error)


async def sync(api: ApiClient, ctx: SyncContext) -> ConnectorResult:
    headers = {"Authorization": f"Bearer {ctx.access_token}"}

    info = await api.request(
        _PLATFORM, f"{API_URL}/user/info/", params={"fields": USER_FIELDS}, headers=headers, operation="user_info"
    )
    check_envelope(info, "user_info")
    user = (info.get("data") or {}).get("user")
    if not user:
        raise RequestError("Failed to fetch TikTok user info", platform=_PLATFORM, operation="user_info")

    videos_body = await api.request(
        _PLATFORM, f"{API_URL}/video/list/",
        method="POST",
        params={"fields": VIDEO_FIELDS},
        headers=headers,
        json={"max_count": MAX_VIDEOS},
        operation="video_list",
    )
    check_envelope(videos_body, "video_list")

    posts: list[PostRow] = []
    total_views = 0
    total_engagements = 0
    for video in (videos_body.get("data") or {}).get("videos") or []:
        views = coerce_metric(video.get("view_count"))
        likes = coerce_metric(video.get("like_count"))
        comments = coerce_metric(video.get("comment_count"))
        shares = coerce_metric(video.get("share_count"))
        total_views += views
        total_engagements += likes + comments + shares
        created = video.get("create_time")
        posts.append(PostRow(
            external_post_id=video["id"],
            posted_at=datetime.fromtimestamp(int(created), tz=timezone.utc) if created else None,
            url=video.get("share_url"),
            caption=video.get("title"),
            media_type="video",
            thumbnail_url=video.get("cover_image_url"),
            media_url=video.get("share_url"),
            metrics={"views": views, "likes": likes, "comments": comments, "shares": shares},
            raw_json=video,
        ))

    # account stats are only available as current totals
    row = DailyMetricRow(
        date=utcnow().date(),
        followers=user.get("follower_count"),
        likes=user.get("likes_count"),
        posts_count=user.get("video_count"),
        impressions=total_views,
        reach=total_views,
        views=total_views,
        engagements=total_engagements,
        raw_json=user,
    )
    logger.info(f"[tiktok] {ctx.external_account_id}: {len(posts)} videos, followers={row.followers}")
    return ConnectorResult(daily_metrics=[row], posts=posts)


def authorize_url(state: str, code_challenge: str | None = None) -> str:
    client_key, _, redirect_uri = _config()
    params = {
        "client_key": client_key,
        "scope": ",".join(SCOPES),
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "state": state,
    }
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    return str(httpx.URL(AUTH_URL, params=params))


def _grant_from(body: dict, fallback_refresh: str | None = None) -> TokenGrant:
    if body.get("error") or not body.get("access_token"):
        message = body.get("error_description") or body.get("error") or "no access_token in response"
        raise RequestError(f"TikTok OAuth error: {message}", platform=_PLATFORM, operation="oauth")
    return TokenGrant(
        access_token=body["access_token"],
        refresh_token=body.get("refresh_token") or fallback_refresh,
        expires_at=expires_in(body.get("expires_in")),
    )


async def exchange_code(api: ApiClient, code: str, code_verifier: str | None = None) -> list[OAuthAccount]:
    client_key, client_secret, redirect_uri = _config()
    if not code_verifier:
        raise RequestError("TikTok token exchange requires a PKCE code verifier", platform=_PLATFORM)
    body = await api.request(
        _PLATFORM, TOKEN_URL, method="POST",
        data={
            "client_key": client_key,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        },
        operation="oauth_exchange",
    )
    grant = _grant_from(body)

    info = await api.request(
        _PLATFORM, f"{API_URL}/user/info/",
        params={"fields": "open_id,display_name,avatar_url,follower_count,video_count"},
        headers={"Authorization": f"Bearer {grant.access_token}"},
        operation="user_info",
    )
    check_envelope(info, "user_info")
    user = (info.get("data") or {}).get("user") or {}
    open_id = user.get("open_id") or body.get("open_id")
    if not open_id:
        raise RequestError("TikTok user info has no open_id", platform=_PLATFORM, operation="user_info")
    return [OAuthAccount(
        platform=_PLATFORM,
        external_account_id=open_id,
        account_name=user.get("display_name"),
        access_token=grant.access_token,
        refresh_token=grant.refresh_token,
        expires_at=grant.expires_at,
    )]


async def refresh_token(api: ApiClient, access_token: str, refresh_token: str | None) -> TokenGrant:
    client_key, client_secret, _ = _config()
    if not refresh_token:
        raise RequestError("TikTok account has no refresh token", platform=_PLATFORM, operation="token_refresh")
    body = await api.request(
        _PLATFORM, TOKEN_URL, method="POST",
        data={
            "client_key": client_key,
            "client_secret": client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
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
    uses_pkce=True,
)
