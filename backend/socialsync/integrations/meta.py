"""
Meta Graph API connector (Facebook pages + Instagram business accounts).

Instagram insights come in two flavours that need separate calls:
time-series metrics (reach, per day) and total-value metrics (one number
for the whole window). Totals are spread across days in proportion to
daily reach so every daily row carries a share.

Facebook page metrics are requested one by one because availability
differs per page; unavailable metrics are skipped.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

import httpx

from socialsync.errors import AuthError, ConfigurationError, RateLimitedError, RequestError
from socialsync.integrations.api_client import ApiClient
from socialsync.integrations.base import Connector, date_window, expires_in, parse_dt, utcnow
from socialsync.models import Platform
from socialsync.schemas import ConnectorResult, DailyMetricRow, OAuthAccount, PostRow, SyncContext, TokenGrant
from socialsync.services.metrics import coerce_metric
from socialsync.settings import get_settings

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.facebook.com/v21.0"
AUTH_URL = "https://www.facebook.com/v21.0/dialog/oauth"
TOKEN_URL = f"{GRAPH_URL}/oauth/access_token"

SCOPES = (
    "pages_show_list",
    "pages_read_engagement",
    "pages_read_user_content",
    "pages_manage_metadata",
    "read_insights",
    "instagram_basic",
    "instagram_manage_insights",
    "business_management",
)
PAGE_FIELDS = (
    "id,name,access_token,category,fan_count,followers_count,"
    "instagram_business_account{id,username,profile_picture_url,followers_count}"
)

IG_TIME_SERIES_METRICS = ("reach",)
IG_TOTAL_VALUE_METRICS = (
    "profile_views",
    "website_clicks",
    "accounts_engaged",
    "total_interactions",
    "likes",
    "comments",
    "shares",
    "saves",
    "replies",
    "views",
    "content_views",
)
IG_MEDIA_FIELDS = (
    "id,caption,media_type,media_product_type,media_url,thumbnail_url,permalink,timestamp,like_count,comments_count"
)
IG_MEDIA_INSIGHTS = {
    "REEL": ("impressions", "reach", "views", "total_interactions", "saved"),
    "VIDEO": ("impressions", "reach", "views", "total_interactions", "saved"),
    "IMAGE": ("impressions", "reach", "total_interactions", "saved"),
}
IG_WINDOW_DAYS = 30

FB_PAGE_METRICS = (
    "page_impressions_unique",
    "page_impressions_organic",
    "page_impressions_viral",
    "page_consumptions",
    "page_engaged_users",
    "page_actions_post_reactions_total",
)
FB_POST_FIELDS = (
    "id,message,created_time,permalink_url,full_picture,shares,"
    "reactions.summary(total_count),comments.summary(total_count)"
)
FB_POST_METRICS = ("post_impressions", "post_impressions_unique", "post_clicks")
FB_WINDOW_DAYS = 90

MEDIA_PAGE_SIZE = 50
MAX_MEDIA_PAGES = 2
MAX_INSIGHT_PAGES = 10

INSIGHT_RENAMES = {"saved": "saves", "total_interactions": "engagements"}
POST_INSIGHT_RENAMES = {"post_impressions": "impressions", "post_impressions_unique": "reach", "post_clicks": "clicks"}


def _config() -> tuple[str, str, str]:
    settings = get_settings()
    if not settings.meta_app_id or not settings.meta_app_secret:
        raise ConfigurationError("Meta OAuth not configured: META_APP_ID and META_APP_SECRET are required")
    return settings.meta_app_id, settings.meta_app_secret, settings.redirect_uri("meta", settings.meta_redirect_uri)


async def _paginate(
    api: ApiClient,
    platform: str,
    url: str,
    params: dict[str, Any],
    operation: str,
    max_pages: int = MAX_INSIGHT_PAGES,
    quiet: bool = False,
) -> list[dict]:
    items: list[dict] = []
    next_url: str | None = url
    next_params: dict[str, Any] | None = params
    pages = 0
    while next_url and pages < max_pages:
        body = await api.request(platform, next_url, params=next_params, operation=operation, quiet=quiet)
        items.extend(body.get("data") or [])
        next_url = (body.get("paging") or {}).get("next")
        # the `next` link already embeds the query string
        next_params = None
        pages += 1
    return items


def _insight_value(value: Any) -> int:
    if isinstance(value, dict):
        return sum(coerce_metric(v) for v in value.values() if isinstance(v, (int, float)))
    return coerce_metric(value)


def _epoch(moment: datetime) -> int:
    return int(moment.timestamp())


def _pick(values: dict[str, int], *keys: str) -> int:
    for key in keys:
        if key in values:
            return values[key]
    return 0


def _distribute(total: int, weights: list[int]) -> list[int]:
    weight_sum = sum(weights)
    return [round(total * w / weight_sum) for w in weights]


def build_daily_rows(insights: list[dict], followers: int, fallback_date: date | None) -> dict[date, DailyMetricRow]:
    """Fold Graph insight series into canonical rows keyed by date."""
    daily: dict[date, dict[str, int]] = {}
    totals: dict[str, int] = {}

    for metric in insights:
        name = metric.get("name")
        values = metric.get("values") or []
        if not values and metric.get("total_value") is not None:
            totals[name] = _insight_value((metric.get("total_value") or {}).get("value"))
            continue
        for point in values:
            end_time = parse_dt(point.get("end_time"))
            day = end_time.date() if end_time else fallback_date
            if day is None:
                continue
            daily.setdefault(day, {})[name] = _insight_value(point.get("value"))

    if totals:
        days = sorted(daily)
        reach = [daily[d].get("reach", 0) for d in days]
        if sum(reach) > 0:
            for metric_name, total in totals.items():
                for day, share in zip(days, _distribute(total, reach)):
                    daily[day][metric_name] = share
        elif fallback_date is not None:
            daily.setdefault(fallback_date, {}).update(totals)

    rows: dict[date, DailyMetricRow] = {}
    for day, values in daily.items():
        likes = _pick(values, "likes", "page_actions_post_reactions_total")
        comments = values.get("comments", 0)
        shares = values.get("shares", 0)
        saves = values.get("saves", 0)
        impressions = _pick(values, "page_impressions", "page_posts_impressions", "impressions")
        if not impressions:
            impressions = values.get("page_impressions_organic", 0) + values.get("page_impressions_viral", 0)
        reach = _pick(values, "reach", "page_impressions_unique")

        media_views = values.get("page_media_view", 0)
        video_views = values.get("page_video_views", 0)
        direct_views = _pick(values, "views", "content_views")
        views = media_views or video_views or direct_views or impressions

        manual = likes + comments + shares + saves
        reported = values.get("page_post_engagements", 0)
        account_level = (
            values.get("accounts_engaged", 0)
            + values.get("total_interactions", 0)
            + values.get("page_engaged_users", 0)
        )
        engagements = reported or manual or account_level

        rows[day] = DailyMetricRow(
            date=day,
            followers=followers,
            impressions=impressions,
            reach=reach,
            engagements=engagements,
            likes=likes,
            comments=comments,
            shares=shares,
            saves=saves,
            views=views,
            raw_json=dict(values),
        )
    return rows


def _fold_posts_into_daily(daily: dict[date, DailyMetricRow], posts: list[PostRow], followers: int) -> None:
    for post in posts:
        if post.posted_at is None:
            continue
        day = post.posted_at.date()
        row = daily.get(day) or DailyMetricRow(date=day, followers=followers)
        metrics = post.metrics
        daily[day] = row.model_copy(update={
            "posts_count": row.posts_count + 1,
            "engagements": row.engagements + coerce_metric(metrics.get("likes")) + coerce_metric(metrics.get("comments")),
            "views": row.views + coerce_metric(metrics.get("views")),
        })


def _media_insight_values(body: dict) -> dict[str, int]:
    values: dict[str, int] = {}
    for entry in body.get("data") or []:
        name = entry.get("name")
        points = entry.get("values") or []
        if points:
            raw = points[0].get("value")
        else:
            raw = (entry.get("total_value") or {}).get("value")
        values[INSIGHT_RENAMES.get(name, name)] = _insight_value(raw)
    return values


def _instagram_media_type(item: dict) -> str:
    if (item.get("media_product_type") or "").upper() == "REELS":
        return "reel"
    return (item.get("media_type") or "image").lower()


def _insight_kind(media_type: str) -> str:
    if media_type == "reel":
        return "REEL"
    if media_type == "video":
        return "VIDEO"
    return "IMAGE"


async def _fetch_media_insights(api: ApiClient, media: list[dict], token: str) -> dict[str, dict[str, int]]:
    """
    Per-media insights; metrics the API rejects are remembered per media kind.

    Requests go out one media at a time. When the media_insights budget is
    spent the remaining media keep their public counters only.
    """
    rejected: dict[str, set[str]] = defaultdict(set)
    result: dict[str, dict[str, int]] = {}

    try:
        for item in media:
            kind = _insight_kind(_instagram_media_type(item))
            metrics = [m for m in IG_MEDIA_INSIGHTS[kind] if m not in rejected[kind]]
            if not metrics:
                continue
            url = f"{GRAPH_URL}/{item['id']}/insights"
            try:
                body = await api.request(
                    Platform.instagram.value, url,
                    params={"metric": ",".join(metrics), "access_token": token},
                    operation="media_insights", quiet=True,
                )
                result[item["id"]] = _media_insight_values(body)
                continue
            except RequestError:
                pass

            values: dict[str, int] = {}
            for metric in metrics:
                try:
                    body = await api.request(
                        Platform.instagram.value, url,
                        params={"metric": metric, "access_token": token},
                        operation="media_insights", quiet=True,
                    )
                except RequestError:
                    rejected[kind].add(metric)
                    continue
                values.update(_media_insight_values(body))
            result[item["id"]] = values
    except RateLimitedError as exc:
        logger.warning("[instagram] media insights stopped after %d of %d media: %s", len(result), len(media), exc)

    for kind, names in rejected.items():
        logger.info("[instagram] %s media rejected insight metrics: %s", kind, ", ".join(sorted(names)))
    return result


async def sync_instagram(api: ApiClient, ctx: SyncContext) -> ConnectorResult:
    ig_id = ctx.external_account_id
    token = ctx.access_token
    settings = get_settings()
    platform = Platform.instagram.value

    days = date_window(IG_WINDOW_DAYS)
    since = _epoch(datetime.combine(days[0], time.min, tzinfo=timezone.utc))
    until = _epoch(datetime.combine(days[-1], time.max, tzinfo=timezone.utc))

    info = await api.request(
        platform, f"{GRAPH_URL}/{ig_id}",
        params={"fields": "followers_count,media_count,username", "access_token": token},
        operation="account_info",
    )
    followers = coerce_metric(info.get("followers_count"))

    insights_url = f"{GRAPH_URL}/{ig_id}/insights"
    base_params = {"period": "day", "since": since, "until": until, "access_token": token}
    try:
        series = await _paginate(
            api, platform, insights_url,
            {**base_params, "metric": ",".join(IG_TIME_SERIES_METRICS)}, "insights_time_series",
        )
        totals = await _paginate(
            api, platform, insights_url,
            {**base_params, "metric": ",".join(IG_TOTAL_VALUE_METRICS), "metric_type": "total_value"},
            "insights_total",
        )
    except RequestError as exc:
        logger.warning(f"[instagram] insights unavailable for {ig_id}: {exc}")
        series, totals = [], []

    today = days[-1]
    daily = build_daily_rows(series + totals, followers, fallback_date=today)
    if not daily:
        daily[today] = DailyMetricRow(date=today, followers=followers, posts_count=info.get("media_count"))

    media = await _paginate(
        api, platform, f"{GRAPH_URL}/{ig_id}/media",
        {"fields": IG_MEDIA_FIELDS, "limit": MEDIA_PAGE_SIZE, "access_token": token},
        "media", max_pages=MAX_MEDIA_PAGES,
    )
    insights_by_media = await _fetch_media_insights(api, media[: settings.instagram_post_insights_limit], token)

    posts: list[PostRow] = []
    for item in media:
        likes = coerce_metric(item.get("like_count"))
        comments = coerce_metric(item.get("comments_count"))
        insights = insights_by_media.get(item["id"])
        base = likes + comments
        metrics: dict[str, int] = {"likes": likes, "comments": comments}
        if insights:
            metrics.update({k: v for k, v in insights.items() if k != "engagements"})
            metrics["engagements"] = base if base > 0 else insights.get("engagements", 0)
        else:
            metrics["engagements"] = base
        posts.append(PostRow(
            external_post_id=item["id"],
            posted_at=parse_dt(item.get("timestamp")),
            url=item.get("permalink"),
            caption=(item.get("caption") or "")[:500] or None,
            media_type=_instagram_media_type(item),
            thumbnail_url=item.get("thumbnail_url") or item.get("media_url"),
            media_url=item.get("media_url"),
            metrics=metrics,
            raw_json=item,
        ))

    _fold_posts_into_daily(daily, posts, followers)
    logger.info(f"[instagram] {ig_id}: {len(daily)} daily rows, {len(posts)} posts")
    return ConnectorResult(daily_metrics=sorted(daily.values(), key=lambda r: r.date), posts=posts)


async def _probe_post_metrics(api: ApiClient, post_id: str, token: str) -> list[str]:
    supported = []
    for metric in FB_POST_METRICS:
        try:
            await api.request(
                Platform.facebook.value, f"{GRAPH_URL}/{post_id}/insights",
                params={"metric": metric, "access_token": token},
                operation="post_insights_probe", quiet=True,
            )
        except RequestError:
            continue
        except RateLimitedError as exc:
            logger.warning("[facebook] post metric probe stopped: %s", exc)
            break
        supported.append(metric)
    return supported


async def sync_facebook(api: ApiClient, ctx: SyncContext) -> ConnectorResult:
    page_id = ctx.external_account_id
    token = ctx.access_token
    settings = get_settings()
    platform = Platform.facebook.value

    page = await api.request(
        platform, f"{GRAPH_URL}/{page_id}",
        params={"fields": "followers_count,fan_count,name", "access_token": token},
        operation="page_info",
    )
    followers = coerce_metric(page.get("followers_count") or page.get("fan_count"))

    now = utcnow()
    since = _epoch(now - timedelta(days=FB_WINDOW_DAYS))
    until = _epoch(now)
    insights: list[dict] = []
    failed: list[str] = []
    for metric in FB_PAGE_METRICS:
        try:
            body = await api.request(
                platform, f"{GRAPH_URL}/{page_id}/insights",
                params={"metric": metric, "period": "day", "since": since, "until": until, "access_token": token},
                operation=f"insights_{metric}", quiet=True,
            )
        except RequestError:
            failed.append(metric)
            continue
        insights.extend(body.get("data") or [])
    if failed:
        logger.info("[facebook] %s: unavailable page metrics: %s", page_id, ", ".join(failed))

    daily = build_daily_rows(insights, followers, fallback_date=None)

    raw_posts = await _paginate(
        api, platform, f"{GRAPH_URL}/{page_id}/posts",
        {"fields": FB_POST_FIELDS, "limit": MEDIA_PAGE_SIZE, "access_token": token},
        "posts", max_pages=MAX_MEDIA_PAGES,
    )

    post_insights: dict[str, dict[str, int]] = {}
    if raw_posts:
        supported = await _probe_post_metrics(api, raw_posts[0]["id"], token)
        if supported:
            for item in raw_posts[: settings.facebook_post_insights_limit]:
                try:
                    body = await api.request(
                        platform, f"{GRAPH_URL}/{item['id']}/insights",
                        params={"metric": ",".join(supported), "access_token": token},
                        operation="post_insights", quiet=True,
                    )
                except RateLimitedError as exc:
                    logger.warning("[facebook] post insights stopped after %d posts: %s", len(post_insights), exc)
                    break
                except RequestError:
                    continue
                values = _media_insight_values(body)
                post_insights[item["id"]] = {POST_INSIGHT_RENAMES.get(k, k): v for k, v in values.items()}

    posts: list[PostRow] = []
    for item in raw_posts:
        likes = coerce_metric(((item.get("reactions") or {}).get("summary") or {}).get("total_count"))
        comments = coerce_metric(((item.get("comments") or {}).get("summary") or {}).get("total_count"))
        shares = coerce_metric((item.get("shares") or {}).get("count"))
        metrics: dict[str, int] = {
            "likes": likes,
            "comments": comments,
            "shares": shares,
            "engagements": likes + comments + shares,
        }
        metrics.update(post_insights.get(item["id"], {}))
        posts.append(PostRow(
            external_post_id=item["id"],
            posted_at=parse_dt(item.get("created_time")),
            url=item.get("permalink_url"),
            caption=(item.get("message") or "")[:500] or None,
            media_type="image" if item.get("full_picture") else "text",
            thumbnail_url=item.get("full_picture"),
            media_url=item.get("full_picture"),
            metrics=metrics,
            raw_json=item,
        ))

    if daily:
        _fold_posts_into_daily(daily, posts, followers)
    else:
        daily = _daily_from_posts(posts, followers)
        if not daily:
            today = utcnow().date()
            daily[today] = DailyMetricRow(
                date=today, followers=followers, raw_json={"_error": "No insights metrics available for this page"}
            )

    logger.info(f"[facebook] {page_id}: {len(daily)} daily rows, {len(posts)} posts")
    return ConnectorResult(daily_metrics=sorted(daily.values(), key=lambda r: r.date), posts=posts)


def _daily_from_posts(posts: list[PostRow], followers: int) -> dict[date, DailyMetricRow]:
    buckets: dict[date, dict[str, int]] = {}
    for post in posts:
        if post.posted_at is None:
            continue
        agg = buckets.setdefault(post.posted_at.date(), defaultdict(int))
        agg["posts_count"] += 1
        for key in ("likes", "comments", "shares", "impressions", "reach", "engagements"):
            agg[key] += coerce_metric(post.metrics.get(key))
    return {
        day: DailyMetricRow(date=day, followers=followers, raw_json={"source": "posts"}, **agg)
        for day, agg in buckets.items()
    }


def authorize_url(state: str, code_challenge: str | None = None) -> str:
    app_id, _, redirect_uri = _config()
    params = {
        "client_id": app_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "scope": ",".join(SCOPES),
        "response_type": "code",
    }
    return str(httpx.URL(AUTH_URL, params=params))


async def exchange_code(api: ApiClient, code: str, code_verifier: str | None = None) -> list[OAuthAccount]:
    """Code -> long-lived user token -> every page (+ linked Instagram account)."""
    app_id, app_secret, redirect_uri = _config()
    platform = Platform.facebook.value

    short = await api.request(
        platform, TOKEN_URL,
        params={"client_id": app_id, "client_secret": app_secret, "redirect_uri": redirect_uri, "code": code},
        operation="oauth_exchange",
    )
    long_lived = await api.request(
        platform, TOKEN_URL,
        params={
            "grant_type": "fb_exchange_token",
            "client_id": app_id,
            "client_secret": app_secret,
            "fb_exchange_token": short["access_token"],
        },
        operation="oauth_long_lived",
    )
    user_token = long_lived.get("access_token") or short["access_token"]

    debug = await api.request(
        platform, f"{GRAPH_URL}/debug_token",
        params={"input_token": user_token, "access_token": f"{app_id}|{app_secret}"},
        operation="debug_token",
    )
    scopes = (debug.get("data") or {}).get("scopes") or []
    if scopes and "pages_show_list" not in scopes:
        raise AuthError("Meta authorization is missing the pages_show_list permission", platform=platform)

    pages = await _paginate(
        api, platform, f"{GRAPH_URL}/me/accounts",
        {"fields": PAGE_FIELDS, "limit": 100, "access_token": user_token},
        "pages", max_pages=5,
    )

    accounts: list[OAuthAccount] = []
    for page in pages:
        page_token = page.get("access_token")
        if not page_token:
            continue
        # page tokens derived from a long-lived user token do not expire
        accounts.append(OAuthAccount(
            platform=Platform.facebook.value,
            external_account_id=page["id"],
            account_name=page.get("name"),
            access_token=page_token,
        ))
        ig = page.get("instagram_business_account") or {}
        if ig.get("id"):
            accounts.append(OAuthAccount(
                platform=Platform.instagram.value,
                external_account_id=ig["id"],
                account_name=ig.get("username"),
                access_token=page_token,
            ))
    if not accounts:
        raise RequestError("No Facebook pages were granted to the app", platform=platform, operation="pages")
    return accounts


async def refresh_token(api: ApiClient, access_token: str, refresh_token: str | None = None) -> TokenGrant:
    """Meta has no refresh token; an expiring token is re-exchanged for a long-lived one."""
    app_id, app_secret, _ = _config()
    body = await api.request(
        Platform.facebook.value, TOKEN_URL,
        params={
            "grant_type": "fb_exchange_token",
            "client_id": app_id,
            "client_secret": app_secret,
            "fb_exchange_token": access_token,
        },
        operation="token_refresh",
    )
    if not body.get("access_token"):
        raise AuthError("Meta token exchange returned no access_token", platform=Platform.facebook.value)
    return TokenGrant(access_token=body["access_token"], expires_at=expires_in(body.get("expires_in")))


FACEBOOK_CONNECTOR = Connector(
    platform=Platform.facebook.value,
    sync=sync_facebook,
    refresh=refresh_token,
    authorize_url=authorize_url,
    exchange_code=exchange_code,
)
INSTAGRAM_CONNECTOR = Connector(
    platform=Platform.instagram.value,
    sync=sync_instagram,
    refresh=refresh_token,
    authorize_url=authorize_url,
    exchange_code=exchange_code,
)
