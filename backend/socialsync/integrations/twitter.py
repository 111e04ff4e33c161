"""Twitter / X API v2 connector (OAuth 2.0 with PKCE)."""
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

AUTH_URL = "https://twitter.com/i/oauth2/authorize"
TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
API_URL = "https://api.twitter.com/2"
SCOPES = ("tweet.read", "users.read", "offline.access")
MAX_TWEETS = 10

_PLATFORM = Platform.twitter.value


def _config() -> tuple[str, str, str]:
    settings = get_settings()
    if not settings.twitter_client_id or not settings.twitter_client_secret:
        raise ConfigurationError("Twitter OAuth not configured: TWITTER_CLIENT_ID and TWITTER_CLIENT_SECRET are required")
    return (
        settings.twitter_client_id,
        settings.twitter_client_secret,
        settings.redirect_uri("twitter", settings.twitter_redirect_uri),
    )


async def sync(api: ApiClient, ctx: SyncContext) -> ConnectorResult:
    headers = {"Authorization": f"Bearer {ctx.access_token}"}
    user_id = ctx.external_account_id

    user_body = await api.request(
        _PLATFORM, f"{API_URL}/users/{user_id}",
        params={"user.fields": "public_metrics"}, headers=headers, operation="users",
    )
    user = user_body.get("data")
    if not user:
        raise RequestError("Failed to fetch Twitter user", platform=_PLATFORM, operation="users")
    public = user.get("public_metrics") or {}

    daily = DailyMetricRow(
        date=utcnow().date(),
        followers=public.get("followers_count"),
        posts_count=public.get("tweet_count"),
        raw_json=user,
    )

    tweets_body = await api.request(
        _PLATFORM, f"{API_URL}/users/{user_id}/tweets",
        params={
            "max_results": MAX_TWEETS,
            "tweet.fields": "created_at,public_metrics,attachments",
            "expansions": "attachments.media_keys",
            "media.fields": "type,url,preview_image_url",
        },
        headers=headers,
        operation="tweets",
    )
    media_lookup = {
        m["media_key"]: m for m in (tweets_body.get("includes") or {}).get("media") or [] if m.get("media_key")
    }

    posts: list[PostRow] = []
    for tweet in tweets_body.get("data") or []:
        media_type = "text"
        thumbnail = None
        keys = (tweet.get("attachments") or {}).get("media_keys") or []
        media = media_lookup.get(keys[0]) if keys else None
        if media:
            media_type = media.get("type") or media_type
            thumbnail = media.get("preview_image_url") or media.get("url")
        stats = tweet.get("public_metrics") or {}
        likes = coerce_metric(stats.get("like_count"))
        retweets = coerce_metric(stats.get("retweet_count"))
        replies = coerce_metric(stats.get("reply_count"))
        quotes = coerce_metric(stats.get("quote_count"))
        posts.append(PostRow(
            external_post_id=tweet["id"],
            posted_at=parse_dt(tweet.get("created_at")),
            url=f"https://twitter.com/{user.get('username')}/status/{tweet['id']}",
            caption=(tweet.get("text") or "")[:280],
            media_type=media_type,
            thumbnail_url=thumbnail,
            metrics={
                "likes": likes,
                "retweets": retweets,
                "replies": replies,
                "quotes": quotes,
                "shares": retweets + quotes,
                "comments": replies,
                "impressions": coerce_metric(stats.get("impression_count")),
            },
            raw_json=tweet,
        ))

    logger.info(f"[twitter] {user_id}: {len(posts)} tweets, followers={daily.followers}")
    return ConnectorResult(daily_metrics=[daily], posts=posts)


def authorize_url(state: str, code_challenge: str | None = None) -> str:
    client_id, _, redirect_uri = _config()
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": " ".join(SCOPES),
        "state": state,
    }
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    return str(httpx.URL(AUTH_URL, params=params))


def _grant_from(body: dict, fallback_refresh: str | None = None) -> TokenGrant:
    if not body.get("access_token"):
        message = body.get("error_description") or body.get("error") or "no access_token in response"
        raise RequestError(f"Twitter OAuth error: {message}", platform=_PLATFORM, operation="oauth")
    return TokenGrant(
        access_token=body["access_token"],
        refresh_token=body.get("refresh_token") or fallback_refresh,
        expires_at=expires_in(body.get("expires_in")),
    )


async def exchange_code(api: ApiClient, code: str, code_verifier: str | None = None) -> list[OAuthAccount]:
    client_id, client_secret, redirect_uri = _config()
    if not code_verifier:
        raise RequestError("Twitter token exchange requires a PKCE code verifier", platform=_PLATFORM)
    body = await api.request(
        _PLATFORM, TOKEN_URL, method="POST",
        data={
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        },
        auth=(client_id, client_secret),
        operation="oauth_exchange",
    )
    grant = _grant_from(body)

    me = await api.request(
        _PLATFORM, f"{API_URL}/users/me",
        headers={"Authorization": f"Bearer {grant.access_token}"},
        operation="users_me",
    )
    user = me.get("data") or {}
    if not user.get("id"):
        raise RequestError("Twitter users/me returned no id", platform=_PLATFORM, operation="users_me")
    return [OAuthAccount(
        platform=_PLATFORM,
        external_account_id=user["id"],
        account_name=user.get("username") or user.get("name"),
        access_token=grant.access_token,
        refresh_token=grant.refresh_token,
        expires_at=grant.expires_at,
    )]


async def refresh_token(api: ApiClient, access_token: str, refresh_token: str | None) -> TokenGrant:
    client_id, client_secret, _ = _config()
    if not refresh_token:
        raise RequestError("Twitter account has no refresh token", platform=_PLATFORM, operation="token_refresh")
    body = await api.request(
        _PLATFORM, TOKEN_URL, method="POST",
        data={"grant_type": "refresh_token", "refresh_token": refresh_token, "client_id": client_id},
        auth=(client_id, client_secret),
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
