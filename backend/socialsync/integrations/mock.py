"""
Demo-mode connectors: deterministic, plausible data without vendor calls.

Values are seeded from the account id so repeated syncs are idempotent.
"""
from __future__ import annotations

import random
from datetime import datetime, time, timedelta, timezone

from socialsync.integrations.api_client import ApiClient
from socialsync.integrations.base import Connector, date_window
from socialsync.models import Platform
from socialsync.schemas import ConnectorResult, DailyMetricRow, OAuthAccount, PostRow, SyncContext, TokenGrant

DEMO_DAYS = 31
DEMO_POSTS = 8

_MEDIA_TYPES = {
    Platform.instagram.value: ("image", "reel", "carousel_album"),
    Platform.facebook.value: ("image", "text", "video"),
    Platform.linkedin.value: ("text", "image", "link"),
    Platform.tiktok.value: ("video",),
    Platform.youtube.value: ("video",),
    Platform.twitter.value: ("text", "photo"),
}


def _build_sync(platform: str):
    async def sync(api: ApiClient, ctx: SyncContext) -> ConnectorResult:
        rng = random.Random(f"{platform}:{ctx.social_account_id}")
        followers = rng.randint(800, 25_000)
        rows: list[DailyMetricRow] = []
        for day in date_window(DEMO_DAYS):
            # linkedin rows carry follower gains, every other platform a gauge
            if platform == Platform.linkedin.value:
                follower_value = rng.randint(-2, 12)
            else:
                followers += rng.randint(-5, 40)
                follower_value = followers
            impressions = rng.randint(500, 8_000)
            likes = rng.randint(10, 400)
            comments = rng.randint(0, 60)
            shares = rng.randint(0, 30)
            rows.append(DailyMetricRow(
                date=day,
                followers=follower_value,
                impressions=impressions,
                reach=int(impressions * rng.uniform(0.5, 0.9)),
                likes=likes,
                comments=comments,
                shares=shares,
                engagements=likes + comments + shares,
                views=int(impressions * rng.uniform(0.2, 1.1)),
                raw_json={"demo": True},
            ))

        media_types = _MEDIA_TYPES[platform]
        posts: list[PostRow] = []
        today = rows[-1].date
        for i in range(DEMO_POSTS):
            posted = datetime.combine(today - timedelta(days=i * 3), time(12, 0), tzinfo=timezone.utc)
            media_type = media_types[i % len(media_types)]
            posts.append(PostRow(
                external_post_id=f"demo-{platform}-{ctx.social_account_id}-{i}",
                posted_at=posted,
                caption=f"Demo {platform} post #{i + 1}",
                media_type=media_type,
                url=f"https://example.com/{platform}/{i}",
                metrics={
                    "likes": rng.randint(5, 500),
                    "comments": rng.randint(0, 80),
                    "shares": rng.randint(0, 40),
                    "impressions": rng.randint(200, 9_000),
                    "views": rng.randint(100, 12_000),
                },
                raw_json={"demo": True},
            ))
        return ConnectorResult(daily_metrics=rows, posts=posts)

    return sync


async def _refresh(api: ApiClient, access_token: str, refresh_token: str | None) -> TokenGrant:
    return TokenGrant(access_token=f"demo-{random.getrandbits(32):08x}", refresh_token=refresh_token)


def _exchange(platform: str):
    async def exchange_code(api: ApiClient, code: str, code_verifier: str | None = None) -> list[OAuthAccount]:
        return [OAuthAccount(
            platform=platform,
            external_account_id=f"demo-{platform}-{code[:12]}",
            account_name=f"Demo {platform.title()}",
            access_token=f"demo-token-{code[:12]}",
        )]

    return exchange_code


def build_connector(platform: str) -> Connector:
    return Connector(
        platform=platform,
        sync=_build_sync(platform),
        refresh=_refresh,
        authorize_url=lambda state, code_challenge=None: f"/api/oauth/{platform}/callback?code=demo&state={state}",
        exchange_code=_exchange(platform),
    )
