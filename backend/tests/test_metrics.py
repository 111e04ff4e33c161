import json

import pytest

from socialsync.schemas import DailyMetricRow, PostRow
from socialsync.services.metrics import (
    coerce_metric,
    get_post_engagements,
    get_post_impressions,
    get_post_visibility,
    normalize_metrics,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("12/34", 34),
        ("1,234 views", 1234),
        ("", 0),
        (42, 42),
        (None, 0),
        (True, 0),
        (12.9, 12),
        (float("nan"), 0),
        ("abc", 0),
        ("7 / n/a", 7),
        ("-5", -5),
    ],
)
def test_coerce_metric(value, expected):
    assert coerce_metric(value) == expected


def test_engagements_prefer_explicit_field():
    assert get_post_engagements({"engagements": "90", "likes": 10}) == 90
    assert get_post_engagements({"likes": 10, "comments": 2, "shares": "3", "saves": 1}) == 16
    assert get_post_engagements({}) == 0


def test_visibility_reel_prefers_views():
    assert get_post_visibility({"views": 500, "impressions": 0}, "reel") == ("Vues", 500)


def test_visibility_static_post_prefers_impressions():
    assert get_post_visibility({"impressions": 200, "views": 0}, "image") == ("Impressions", 200)


def test_visibility_all_zero_falls_back_to_reach():
    result = get_post_visibility({"impressions": 0, "views": 0, "reach": 0}, "image")
    assert result.label == "Portée"
    assert result.value == 0


def test_visibility_reel_without_views_uses_impressions():
    assert get_post_visibility({"impressions": 80, "plays": 0}, "REELS") == ("Impressions", 80)


def test_impressions_fallback_order():
    assert get_post_impressions({"impressions": None, "views": None, "reach": 30, "plays": 99}) == 30
    assert get_post_impressions({"reach": 30, "plays": 99}) == 30
    assert get_post_impressions({"video_views": "1/5"}) == 5


def test_metrics_may_arrive_double_encoded():
    blob = json.dumps(json.dumps({"likes": 4, "comments": 1}))
    assert normalize_metrics(blob) == {"likes": 4, "comments": 1}
    assert get_post_engagements(blob) == 5
    assert get_post_engagements("{not json") == 0
    assert get_post_impressions("[1, 2]") == 0


def test_rows_coerce_vendor_values_at_the_boundary():
    row = DailyMetricRow(date="2026-01-05", followers="1,200", impressions=None, views="10/25")
    assert (row.followers, row.impressions, row.views) == (1200, 0, 25)

    post = PostRow(external_post_id=123, metrics=json.dumps({"likes": 3}))
    assert post.external_post_id == "123"
    assert post.metrics == {"likes": 3}


def test_explicit_zero_stops_the_fallback_chain():
    assert get_post_impressions({"impressions": 0, "views": 100}) == 0
    assert get_post_impressions({"views": 0, "reach": 40}) == 0


def test_visibility_view_chain_takes_first_present_value():
    # plays is present, so video_views is never consulted
    assert get_post_visibility({"plays": 0, "video_views": 900, "reach": 12}, "reel") == ("Portée", 12)
    assert get_post_visibility({"views": None, "media_views": 45}, "reel") == ("Vues", 45)
