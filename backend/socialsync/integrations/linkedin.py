"""
LinkedIn connector (Pages Data Portability / DMA endpoints).

Follower analytics come back as per-day gains, not a running total; the
rows returned here carry those deltas in `followers` and the sync
orchestrator turns them into a cumulative series. The current total, when
known, is attached to the latest row's raw_json as `follower_total`.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from typing import Any
from urllib.parse import quote

import httpx

from socialsync.errors import ConfigurationError, RateLimitedError, RequestError, TransientError
from socialsync.integrations.api_client import ApiClient
from socialsync.integrations.base import Connector, date_window, expires_in, parse_dt, utcnow
from socialsync.models import Platform
from socialsync.schemas import ConnectorResult, DailyMetricRow, OAuthAccount, PostRow, SyncContext, TokenGrant
from socialsync.services.metrics import coerce_metric
from socialsync.settings import get_settings

logger = logging.getLogger(__name__)

AUTH_URL = "https://www.linkedin.com/oauth/v2/authorization"
TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"
API_URL = "https://api.linkedin.com/rest"
SCOPES = ("r_dma_admin_pages_content",)

WINDOW_DAYS = 30
MAX_POSTS = 50
POST_BATCH_SIZE = 20
CONTENT_METRICS = "List(IMPRESSIONS,UNIQUE_IMPRESSIONS,CLICKS,COMMENTS,REACTIONS,REPOSTS)"
POST_METRICS = "List(IMPRESSIONS,UNIQUE_IMPRESSIONS,CLICKS)"

# optional data; auth errors still abort the job
_SOFT_ERRORS = (RequestError, TransientError)

_PLATFORM = Platform.linkedin.value


def _config() -> tuple[str, str, str]:
    settings = get_settings()
    if not settings.linkedin_client_id or not settings.linkedin_client_secret:
        raise ConfigurationError(
            "LinkedIn OAuth not configured: LINKEDIN_CLIENT_ID and LINKEDIN_CLIENT_SECRET are required"
        )
    return (
        settings.linkedin_client_id,
        settings.linkedin_client_secret,
        settings.redirect_uri("linkedin", settings.linkedin_redirect_uri),
    )


def api_version() -> str:
    """LinkedIn-Version header value, normalized to YYYYMM."""
    raw = (get_settings().linkedin_version or "").strip()
    digits = "".join(ch for ch in raw if ch.isdigit())
    if len(digits) >= 6:
        return digits[:6]
    return digits or "202501"


def build_headers(access_token: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {access_token}",
        "X-Restli-Protocol-Version": "2.0.0",
        "LinkedIn-Version": api_version(),
    }


def normalize_organization_id(value: str) -> str:
    return value.replace("urn:li:organization:", "").replace("urn:li:organizationalPage:", "")


def _has(mapping: dict, key: str) -> bool:
    # empty objects are markers too: {"carousel": {}} is a carousel post
    value = mapping.get(key)
    return isinstance(value, (dict, list)) or bool(value)


def detect_media_type(content: dict | None) -> str:
    if not content:
        return "text"
    if _has(content, "carousel") or _has(content, "multiImage"):
        return "carousel"
    if _has(content, "poll"):
        return "text"
    if _has(content, "article"):
        return "link"
    if _has(content, "celebration"):
        return "image"
    media = content.get("media")
    if _has(content, "media"):
        if isinstance(media, dict) and _has(media, "video"):
            return "video"
        if isinstance(media, dict) and _has(media, "document"):
            return "link"
        return "image"
    return "text"


def _total_count(value: dict | None) -> int:
    value = value or {}
    total = value.get("totalCount") or {}
    if total.get("long") is not None:
        return coerce_metric(total["long"])
    if total.get("bigDecimal") is not None:
        try:
            return int(float(total["bigDecimal"]))
        except ValueError:
            return 0
    cv = (value.get("typeSpecificValue") or {}).get("contentAnalyticsValue") or {}
    return coerce_metric((cv.get("organicValue") or {}).get("long")) + coerce_metric(
        (cv.get("sponsoredValue") or {}).get("long")
    )


def _ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _day_of(ms: Any) -> date | None:
    dt_value = parse_dt(coerce_metric(ms) / 1000) if ms else None
    return dt_value.date() if dt_value else None


def _page_urn(org_id: str) -> str:
    return quote(f"urn:li:organizationalPage:{org_id}", safe="")


async def fetch_follower_trend(api: ApiClient, headers: dict, org_id: str, start_ms: int, end_ms: int) -> tuple[dict[date, int], int]:
    url = (
        f"{API_URL}/dmaOrganizationalPageEdgeAnalytics?q=trend"
        f"&organizationalPage={_page_urn(org_id)}&analyticsType=FOLLOWER"
        f"&timeIntervals=(timeRange:(start:{start_ms},end:{end_ms}))"
    )
    body = await api.request(_PLATFORM, url, headers=headers, operation="follower_trend")
    daily: dict[date, int] = {}
    total = 0
    for element in body.get("elements") or []:
        day = _day_of(((element.get("timeIntervals") or {}).get("timeRange") or {}).get("start"))
        if day is None:
            continue
        value = element.get("value") or {}
        gains = (value.get("typeSpecificValue") or {}).get("followerEdgeAnalyticsValue") or {}
        daily[day] = daily.get(day, 0) + coerce_metric(gains.get("organicValue")) + coerce_metric(gains.get("sponsoredValue"))
        total = max(total, _total_count(value))
    return daily, total


async def fetch_follower_count(api: ApiClient, headers: dict, org_id: str) -> int:
    url = (
        f"{API_URL}/dmaOrganizationalPageFollows?q=followee&followee={_page_urn(org_id)}"
        "&edgeType=MEMBER_FOLLOWS_ORGANIZATIONAL_PAGE&maxPaginationCount=1"
    )
    body = await api.request(_PLATFORM, url, headers=headers, operation="follower_count")
    return coerce_metric((body.get("paging") or {}).get("total"))


async def fetch_content_trend(api: ApiClient, headers: dict, org_id: str, start_ms: int, end_ms: int) -> dict[date, dict[str, int]]:
    url = (
        f"{API_URL}/dmaOrganizationalPageContentAnalytics?q=trend"
        f"&sourceEntity={_page_urn(org_id)}&metricTypes={CONTENT_METRICS}"
        f"&timeIntervals=(timeRange:(start:{start_ms},end:{end_ms}),timeGranularityType:DAY)"
    )
    body = await api.request(_PLATFORM, url, headers=headers, operation="content_trend")
    trend: dict[date, dict[str, int]] = {}
    for element in body.get("elements") or []:
        metric = element.get("metric") or {}
        day = _day_of(((metric.get("timeIntervals") or {}).get("timeRange") or {}).get("start"))
        if day is None:
            continue
        counts = trend.setdefault(day, {})
        kind = (element.get("type") or "").lower()
        counts[kind] = counts.get(kind, 0) + _total_count(metric.get("value"))
    return trend


async def fetch_post_urns(api: ApiClient, headers: dict, org_id: str, limit: int = MAX_POSTS) -> list[str]:
    author = quote(f"urn:li:organization:{org_id}", safe="")
    url = f"{API_URL}/dmaFeedContentsExternal?q=postsByAuthor&author=List({author})&maxPaginationCount={limit}"
    body = await api.request(_PLATFORM, url, headers=headers, operation="feed_contents")
    urns = [e.get("id") or e.get("contentUrn") for e in body.get("elements") or []]
    return [u for u in urns if u][:limit]


async def fetch_post_details(api: ApiClient, headers: dict, urns: list[str]) -> dict[str, dict]:
    details: dict[str, dict] = {}
    for i in range(0, len(urns), POST_BATCH_SIZE):
        batch = urns[i:i + POST_BATCH_SIZE]
        ids = ",".join(quote(u, safe="") for u in batch)
        try:
            body = await api.request(
                _PLATFORM, f"{API_URL}/dmaPosts?ids=List({ids})&viewContext=AUTHOR",
                headers=headers, operation="post_batch",
            )
            details.update(body.get("results") or {})
        except RateLimitedError as exc:
            logger.warning(f"[linkedin] post details budget spent, remaining posts keep defaults: {exc}")
            break
        except _SOFT_ERRORS as exc:
            logger.warning(f"[linkedin] batch post fetch failed, falling back per post: {exc}")
            for urn in batch:
                try:
                    details[urn] = await api.request(
                        _PLATFORM, f"{API_URL}/dmaPosts/{quote(urn, safe='')}",
                        headers=headers, operation="post_detail", quiet=True,
                    )
                except RateLimitedError as exc:
                    logger.warning(f"[linkedin] post details budget spent, remaining posts keep defaults: {exc}")
                    return details
                except _SOFT_ERRORS:
                    continue
    return details


async def fetch_social_metadata(api: ApiClient, headers: dict, urn: str) -> dict[str, int]:
    body = await api.request(
        _PLATFORM, f"{API_URL}/dmaSocialMetadata/{quote(urn, safe='')}",
        headers=headers, operation="social_metadata", quiet=True,
    )
    return {
        "reactions": coerce_metric((body.get("reactionSummary") or {}).get("totalCount")),
        "comments": coerce_metric((body.get("commentSummary") or {}).get("totalCount")),
        "reposts": coerce_metric(body.get("shareCount")),
    }


async def fetch_post_analytics(api: ApiClient, headers: dict, urn: str) -> dict[str, int]:
    url = (
        f"{API_URL}/dmaOrganizationalPageContentAnalytics?q=trend"
        f"&sourceEntity={quote(urn, safe='')}&metricTypes={POST_METRICS}"
    )
    body = await api.request(_PLATFORM, url, headers=headers, operation="post_analytics", quiet=True)
    counts: dict[str, int] = {}
    for element in body.get("elements") or []:
        kind = (element.get("type") or "").lower()
        counts[kind] = counts.get(kind, 0) + _total_count((element.get("metric") or {}).get("value"))
    return counts


POST_COUNTERS = (
    ("social_metadata", fetch_social_metadata),
    ("post_analytics", fetch_post_analytics),
)


async def fetch_post_counters(api: ApiClient, headers: dict, urns: list[str]) -> list[tuple[dict, dict]]:
    """
    Per-post (metadata, analytics) pairs, fetched one post at a time.

    Each operation has its own daily budget shared by every organization
    synced through the same client. Once one is spent the remaining posts
    keep empty counters for it rather than failing the account.
    """
    spent: set[str] = set()
    counters: list[tuple[dict, dict]] = []
    for urn in urns:
        pair = []
        for operation, fetch in POST_COUNTERS:
            if operation in spent:
                pair.append({})
                continue
            try:
                pair.append(await fetch(api, headers, urn))
            except RateLimitedError as exc:
                logger.warning(f"[linkedin] {operation} budget spent, remaining posts keep empty counters: {exc}")
                spent.add(operation)
                pair.append({})
            except _SOFT_ERRORS as exc:
                logger.warning(f"[linkedin] optional fetch failed: {exc}")
                pair.append({})
        counters.append((pair[0], pair[1]))
    return counters


async def _soft(coro, default):
    try:
        return await coro
    except _SOFT_ERRORS as exc:
        logger.warning(f"[linkedin] optional fetch failed: {exc}")
        return default


async def sync(api: ApiClient, ctx: SyncContext) -> ConnectorResult:
    headers = build_headers(ctx.access_token)
    org_id = normalize_organization_id(ctx.external_account_id)

    days = date_window(WINDOW_DAYS)
    start_ms = _ms(datetime.combine(days[0], time.min, tzinfo=timezone.utc))
    end_ms = _ms(datetime.combine(days[-1], time.max, tzinfo=timezone.utc))
    daily: dict[date, dict[str, Any]] = {day: {} for day in days}

    gains, follower_total = await _soft(fetch_follower_trend(api, headers, org_id, start_ms, end_ms), ({}, 0))
    if follower_total == 0:
        follower_total = await _soft(fetch_follower_count(api, headers, org_id), 0)

    trend = await _soft(fetch_content_trend(api, headers, org_id, start_ms, end_ms), {})
    urns = await _soft(fetch_post_urns(api, headers, org_id), [])

    posts: list[PostRow] = []
    if urns:
        details = await fetch_post_details(api, headers, urns)
        counters = await fetch_post_counters(api, headers, urns)
        for urn, (meta, stats) in zip(urns, counters):
            detail = details.get(urn) or {}
            created = detail.get("publishedAt") or (detail.get("created") or {}).get("time") or detail.get("createdAt")
            posted_at = parse_dt(coerce_metric(created) / 1000) if created else utcnow()
            reactions = meta.get("reactions", 0)
            comments = meta.get("comments", 0)
            reposts = meta.get("reposts", 0)
            clicks = stats.get("clicks", 0)
            posts.append(PostRow(
                external_post_id=urn,
                posted_at=posted_at,
                url=f"https://www.linkedin.com/feed/update/{urn}",
                caption=(detail.get("commentary") or "")[:280] or "LinkedIn post",
                media_type=detect_media_type(detail.get("content")),
                metrics={
                    "impressions": stats.get("impressions", 0),
                    "reach": stats.get("unique_impressions", 0),
                    "engagements": reactions + comments + reposts + clicks,
                    "likes": reactions,
                    "comments": comments,
                    "shares": reposts,
                    "clicks": clicks,
                },
                raw_json=detail,
            ))
            if posted_at and posted_at.date() in daily:
                entry = daily[posted_at.date()]
                entry["posts_count"] = entry.get("posts_count", 0) + 1

    rows: list[DailyMetricRow] = []
    for day in days:
        counts = trend.get(day, {})
        reactions = counts.get("reactions", 0)
        comments = counts.get("comments", 0)
        reposts = counts.get("reposts", 0)
        rows.append(DailyMetricRow(
            date=day,
            followers=gains.get(day, 0),
            impressions=counts.get("impressions", 0),
            reach=counts.get("unique_impressions", 0),
            likes=reactions,
            comments=comments,
            shares=reposts,
            engagements=reactions + comments + reposts + counts.get("clicks", 0),
            views=counts.get("impressions", 0),
            posts_count=daily[day].get("posts_count", 0),
            raw_json={"follower_gain": gains.get(day, 0), **counts},
        ))
    if rows and follower_total:
        rows[-1].raw_json["follower_total"] = follower_total

    logger.info(f"[linkedin] org {org_id}: {len(rows)} daily rows, {len(posts)} posts, total followers={follower_total}")
    return ConnectorResult(daily_metrics=rows, posts=posts)


def authorize_url(state: str, code_challenge: str | None = None) -> str:
    client_id, _, redirect_uri = _config()
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "scope": " ".join(SCOPES),
    }
    return str(httpx.URL(AUTH_URL, params=params))


def _grant_from(body: dict, fallback_refresh: str | None = None) -> TokenGrant:
    if not body.get("access_token"):
        raise RequestError("LinkedIn token response has no access_token", platform=_PLATFORM)
    return TokenGrant(
        access_token=body["access_token"],
        refresh_token=body.get("refresh_token") or fallback_refresh,
        expires_at=expires_in(body.get("expires_in")),
    )


async def fetch_organizations(api: ApiClient, access_token: str) -> list[tuple[str, str]]:
    """(organization id, name) for every organization the member may read analytics for."""
    headers = build_headers(access_token)
    url = (
        f"{API_URL}/dmaOrganizationAuthorizations?bq=authorizationActionsAndImpersonator"
        "&authorizationActions=List((authorizationAction:(organizationAnalyticsAuthorizationAction:"
        "(actionType:UPDATE_ANALYTICS_READ))))&start=0&count=100"
    )
    body = await api.request(_PLATFORM, url, headers=headers, operation="org_authorizations")
    raw = body.get("elements") or []
    nested = [inner for entry in raw for inner in (entry.get("elements") or [])]
    elements = nested or raw

    org_ids: list[str] = []
    for element in elements:
        if not (element.get("status") or {}).get("approved"):
            continue
        org = normalize_organization_id(str(element.get("organization") or ""))
        if org and org not in org_ids:
            org_ids.append(org)
    if not org_ids:
        return []

    orgs = await api.request(
        _PLATFORM, f"{API_URL}/dmaOrganizations?ids=List({','.join(org_ids)})",
        headers=headers, operation="organizations",
    )
    results = orgs.get("results") or {}
    return [
        (org_id, (results.get(org_id) or {}).get("localizedName") or "Unknown Organization")
        for org_id in org_ids
    ]


async def exchange_code(api: ApiClient, code: str, code_verifier: str | None = None) -> list[OAuthAccount]:
    client_id, client_secret, redirect_uri = _config()
    body = await api.request(
        _PLATFORM, TOKEN_URL, method="POST",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
        },
        operation="oauth_exchange",
    )
    grant = _grant_from(body)
    organizations = await fetch_organizations(api, grant.access_token)
    if not organizations:
        raise RequestError(
            "No LinkedIn organizations with analytics access were granted", platform=_PLATFORM, operation="organizations"
        )
    return [
        OAuthAccount(
            platform=_PLATFORM,
            external_account_id=org_id,
            account_name=name,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
        )
        for org_id, name in organizations
    ]


async def refresh_token(api: ApiClient, access_token: str, refresh_token: str | None) -> TokenGrant:
    client_id, client_secret, _ = _config()
    if not refresh_token:
        raise RequestError("LinkedIn account has no refresh token", platform=_PLATFORM, operation="token_refresh")
    body = await api.request(
        _PLATFORM, TOKEN_URL, method="POST",
        data={
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
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
