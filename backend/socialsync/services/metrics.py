"""
Metric normalization helpers.

Vendors report the same concept under different names and shapes
(numbers, "1,234" strings, "12/34" composites, JSON blobs stored as
strings). Everything here is pure and never raises on bad input.
"""
from __future__ import annotations

import json
import math
import re
from typing import Any, NamedTuple

_NON_NUMERIC = re.compile(r"[^\d-]")

LABEL_IMPRESSIONS = "Impressions"
LABEL_VIEWS = "Vues"
LABEL_REACH = "Portée"

VIEW_KEYS = ("views", "media_views", "plays", "video_views")
IMPRESSION_FALLBACK_KEYS = ("impressions", "views", "reach", "media_views", "plays", "video_views")
ENGAGEMENT_PARTS = ("likes", "comments", "shares", "saves")


class Visibility(NamedTuple):
    label: str
    value: int


def _parse_int(text: str) -> int | None:
    digits = _NON_NUMERIC.sub("", text)
    if not digits or digits == "-":
        return None
    try:
        return int(digits)
    except ValueError:
        return None


def coerce_metric(value: Any) -> int:
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else 0

    text = str(value).strip()
    if "/" in text:
        parts = [_parse_int(part) for part in text.split("/")]
        parts = [p for p in parts if p is not None]
        return max(parts) if parts else 0
    parsed = _parse_int(text)
    return parsed if parsed is not None else 0


def normalize_metrics(metrics: Any) -> dict[str, Any]:
    """Return a metrics dict, unwrapping JSON strings (possibly double encoded)."""
    value = metrics
    for _ in range(3):
        if not isinstance(value, str):
            break
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    return value if isinstance(value, dict) else {}


def is_reel(media_type: str | None) -> bool:
    return bool(media_type) and "reel" in media_type.lower()


def _first_present(metrics: dict[str, Any], keys: tuple[str, ...]) -> int:
    """Coerce the first key that is present and not None; an explicit 0 wins."""
    for key in keys:
        if metrics.get(key) is not None:
            return coerce_metric(metrics[key])
    return 0


def get_post_engagements(metrics: Any) -> int:
    data = normalize_metrics(metrics)
    if data.get("engagements") is not None:
        return coerce_metric(data["engagements"])
    return sum(coerce_metric(data.get(key)) for key in ENGAGEMENT_PARTS)


def get_post_visibility(metrics: Any, media_type: str | None = None) -> Visibility:
    data = normalize_metrics(metrics)
    views = _first_present(data, VIEW_KEYS)
    impressions = coerce_metric(data.get("impressions"))

    if is_reel(media_type) and views > 0:
        return Visibility(LABEL_VIEWS, views)
    if impressions > 0:
        return Visibility(LABEL_IMPRESSIONS, impressions)
    if views > 0:
        return Visibility(LABEL_VIEWS, views)
    return Visibility(LABEL_REACH, coerce_metric(data.get("reach")))


def get_post_impressions(metrics: Any) -> int:
    return _first_present(normalize_metrics(metrics), IMPRESSION_FALLBACK_KEYS)
