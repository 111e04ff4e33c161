from __future__ import annotations

from socialsync.errors import RequestError
from socialsync.integrations import linkedin, meta, mock, tiktok, twitter, youtube
from socialsync.integrations.base import Connector
from socialsync.models import Platform
from socialsync.settings import get_settings

CONNECTORS: dict[str, Connector] = {
    Platform.facebook.value: meta.FACEBOOK_CONNECTOR,
    Platform.instagram.value: meta.INSTAGRAM_CONNECTOR,
    Platform.linkedin.value: linkedin.CONNECTOR,
    Platform.tiktok.value: tiktok.CONNECTOR,
    Platform.youtube.value: youtube.CONNECTOR,
    Platform.twitter.value: twitter.CONNECTOR,
}


def get_connector(platform: str) -> Connector:
    """Dispatch on the platform value; demo mode swaps in mock connectors."""
    key = platform.value if isinstance(platform, Platform) else str(platform)
    if key not in CONNECTORS:
        raise RequestError(f"Unsupported platform: {platform}", platform=key)
    if get_settings().demo_mode:
        return mock.build_connector(key)
    return CONNECTORS[key]
