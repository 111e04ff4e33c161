from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "socialsync"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "SOCIALSYNC_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/socialsync",
        validation_alias=AliasChoices("DATABASE_URL", "SOCIALSYNC_DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "SOCIALSYNC_REDIS_URL"))
    site_url: str = Field(default="http://localhost:8000", validation_alias=AliasChoices("SITE_URL", "SOCIALSYNC_SITE_URL"))

    # secrets
    encryption_secret: str = Field(default="", validation_alias=AliasChoices("ENCRYPTION_SECRET", "SOCIALSYNC_ENCRYPTION_SECRET"))
    cron_secret: str | None = Field(default=None, validation_alias=AliasChoices("CRON_SECRET", "SOCIALSYNC_CRON_SECRET"))
    demo_mode: bool = Field(default=False, validation_alias=AliasChoices("DEMO_MODE", "SOCIALSYNC_DEMO_MODE"))

    # sync / token lifecycle
    sync_concurrency: int = Field(default=2, validation_alias=AliasChoices("SYNC_CONCURRENCY", "SOCIALSYNC_SYNC_CONCURRENCY"))
    sync_interval_hours: int = Field(default=6, validation_alias=AliasChoices("SYNC_INTERVAL_HOURS", "SOCIALSYNC_SYNC_INTERVAL_HOURS"))
    token_refresh_buffer_sec: int = Field(default=300, validation_alias=AliasChoices("TOKEN_REFRESH_BUFFER_SEC", "SOCIALSYNC_TOKEN_REFRESH_BUFFER_SEC"))
    token_refresh_lookahead_hours: int = Field(default=24, validation_alias=AliasChoices("TOKEN_REFRESH_LOOKAHEAD_HOURS", "SOCIALSYNC_TOKEN_REFRESH_LOOKAHEAD_HOURS"))
    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "SOCIALSYNC_SCHEDULER_ENABLED"))
    celery_enabled: bool = Field(default=False, validation_alias=AliasChoices("CELERY_ENABLED", "SOCIALSYNC_CELERY_ENABLED"))

    # outbound HTTP
    api_timeout_sec: float = Field(default=30.0, validation_alias=AliasChoices("API_TIMEOUT_SEC", "SOCIALSYNC_API_TIMEOUT_SEC"))
    api_max_attempts: int = Field(default=3, validation_alias=AliasChoices("API_MAX_ATTEMPTS", "SOCIALSYNC_API_MAX_ATTEMPTS"))
    api_backoff_base_sec: float = Field(default=1.0, validation_alias=AliasChoices("API_BACKOFF_BASE_SEC", "SOCIALSYNC_API_BACKOFF_BASE_SEC"))
    rate_limit_max_buckets: int = Field(default=10_000, validation_alias=AliasChoices("RATE_LIMIT_MAX_BUCKETS", "SOCIALSYNC_RATE_LIMIT_MAX_BUCKETS"))

    # oauth
    oauth_state_ttl_sec: int = Field(default=3600, validation_alias=AliasChoices("OAUTH_STATE_TTL_SEC", "SOCIALSYNC_OAUTH_STATE_TTL_SEC"))
    oauth_verifier_ttl_sec: int = Field(default=600, validation_alias=AliasChoices("OAUTH_VERIFIER_TTL_SEC", "SOCIALSYNC_OAUTH_VERIFIER_TTL_SEC"))
    oauth_verifier_backend: str = Field(default="memory", validation_alias=AliasChoices("OAUTH_VERIFIER_BACKEND", "SOCIALSYNC_OAUTH_VERIFIER_BACKEND"))

    meta_app_id: str | None = Field(default=None, validation_alias=AliasChoices("META_APP_ID", "SOCIALSYNC_META_APP_ID"))
    meta_app_secret: str | None = Field(default=None, validation_alias=AliasChoices("META_APP_SECRET", "SOCIALSYNC_META_APP_SECRET"))
    meta_redirect_uri: str | None = Field(default=None, validation_alias=AliasChoices("META_REDIRECT_URI", "SOCIALSYNC_META_REDIRECT_URI"))
    linkedin_client_id: str | None = Field(default=None, validation_alias=AliasChoices("LINKEDIN_CLIENT_ID", "SOCIALSYNC_LINKEDIN_CLIENT_ID"))
    linkedin_client_secret: str | None = Field(default=None, validation_alias=AliasChoices("LINKEDIN_CLIENT_SECRET", "SOCIALSYNC_LINKEDIN_CLIENT_SECRET"))
    linkedin_redirect_uri: str | None = Field(default=None, validation_alias=AliasChoices("LINKEDIN_REDIRECT_URI", "SOCIALSYNC_LINKEDIN_REDIRECT_URI"))
    linkedin_version: str = Field(default="202501", validation_alias=AliasChoices("LINKEDIN_VERSION", "SOCIALSYNC_LINKEDIN_VERSION"))
    tiktok_client_key: str | None = Field(default=None, validation_alias=AliasChoices("TIKTOK_CLIENT_KEY", "SOCIALSYNC_TIKTOK_CLIENT_KEY"))
    tiktok_client_secret: str | None = Field(default=None, validation_alias=AliasChoices("TIKTOK_CLIENT_SECRET", "SOCIALSYNC_TIKTOK_CLIENT_SECRET"))
    tiktok_redirect_uri: str | None = Field(default=None, validation_alias=AliasChoices("TIKTOK_REDIRECT_URI", "SOCIALSYNC_TIKTOK_REDIRECT_URI"))
    google_client_id: str | None = Field(default=None, validation_alias=AliasChoices("GOOGLE_CLIENT_ID", "SOCIALSYNC_GOOGLE_CLIENT_ID"))
    google_client_secret: str | None = Field(default=None, validation_alias=AliasChoices("GOOGLE_CLIENT_SECRET", "SOCIALSYNC_GOOGLE_CLIENT_SECRET"))
    youtube_redirect_uri: str | None = Field(default=None, validation_alias=AliasChoices("YOUTUBE_REDIRECT_URI", "SOCIALSYNC_YOUTUBE_REDIRECT_URI"))
    youtube_api_key: str | None = Field(default=None, validation_alias=AliasChoices("YOUTUBE_API_KEY", "SOCIALSYNC_YOUTUBE_API_KEY"))
    twitter_client_id: str | None = Field(default=None, validation_alias=AliasChoices("TWITTER_CLIENT_ID", "SOCIALSYNC_TWITTER_CLIENT_ID"))
    twitter_client_secret: str | None = Field(default=None, validation_alias=AliasChoices("TWITTER_CLIENT_SECRET", "SOCIALSYNC_TWITTER_CLIENT_SECRET"))
    twitter_redirect_uri: str | None = Field(default=None, validation_alias=AliasChoices("TWITTER_REDIRECT_URI", "SOCIALSYNC_TWITTER_REDIRECT_URI"))

    instagram_post_insights_limit: int = Field(default=30, validation_alias=AliasChoices("INSTAGRAM_POST_INSIGHTS_LIMIT", "SOCIALSYNC_INSTAGRAM_POST_INSIGHTS_LIMIT"))
    facebook_post_insights_limit: int = Field(default=25, validation_alias=AliasChoices("FACEBOOK_POST_INSIGHTS_LIMIT", "SOCIALSYNC_FACEBOOK_POST_INSIGHTS_LIMIT"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if self.database_url.startswith("postgres://"):
            return self.database_url.replace("postgres://", "postgresql+asyncpg://", 1)
        return self.database_url

    def redirect_uri(self, platform: str, explicit: str | None) -> str:
        """Configured redirect URI, or the default callback under SITE_URL."""
        if explicit:
            return explicit
        return f"{self.site_url.rstrip('/')}/api/oauth/{platform}/callback"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
