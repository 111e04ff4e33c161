from __future__ import annotations

import datetime as dt
from datetime import datetime
from enum import Enum
from typing import Any

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


class Platform(str, Enum):
    facebook = "facebook"
    instagram = "instagram"
    linkedin = "linkedin"
    tiktok = "tiktok"
    youtube = "youtube"
    twitter = "twitter"


META_PLATFORMS = frozenset({Platform.facebook.value, Platform.instagram.value})


class AuthStatus(str, Enum):
    pending = "pending"
    active = "active"
    expired = "expired"
    revoked = "revoked"


class SyncStatus(str, Enum):
    running = "running"
    success = "success"
    failed = "failed"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )


def _counter() -> Mapped[int]:
    # daily counters are never null; a missing vendor value is stored as 0
    return mapped_column(sa.BigInteger(), nullable=False, server_default="0")


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    slug: Mapped[str] = mapped_column(sa.String(255), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.true())
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    accounts: Mapped[list["SocialAccount"]] = relationship(
        back_populates="tenant", cascade="all, delete-orphan", passive_deletes=True
    )


class SocialAccount(TimestampMixin, Base):
    __tablename__ = "social_accounts"
    __table_args__ = (
        sa.UniqueConstraint(
            "tenant_id", "platform", "external_account_id", name="uq_social_accounts_tenant_platform_external"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    account_name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    external_account_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    auth_status: Mapped[str] = mapped_column(sa.String(16), nullable=False, server_default=AuthStatus.pending.value)
    token_encrypted: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)

    tenant: Mapped["Tenant"] = relationship(back_populates="accounts")


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    social_account_id: Mapped[int | None] = mapped_column(
        sa.ForeignKey("social_accounts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    started_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    rows_upserted: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")


class DailyMetric(TimestampMixin, Base):
    __tablename__ = "social_daily_metrics"
    __table_args__ = (
        sa.UniqueConstraint(
            "tenant_id", "platform", "social_account_id", "date", name="uq_social_daily_metrics_account_date"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    social_account_id: Mapped[int] = mapped_column(
        sa.ForeignKey("social_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    date: Mapped[dt.date] = mapped_column(sa.Date(), nullable=False)
    followers: Mapped[int] = _counter()
    impressions: Mapped[int] = _counter()
    reach: Mapped[int] = _counter()
    engagements: Mapped[int] = _counter()
    likes: Mapped[int] = _counter()
    comments: Mapped[int] = _counter()
    shares: Mapped[int] = _counter()
    saves: Mapped[int] = _counter()
    views: Mapped[int] = _counter()
    watch_time: Mapped[int] = _counter()
    posts_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    raw_json: Mapped[dict[str, Any] | None] = mapped_column(sa.JSON(), nullable=True)


class Post(TimestampMixin, Base):
    __tablename__ = "social_posts"
    __table_args__ = (
        sa.UniqueConstraint(
            "tenant_id", "platform", "social_account_id", "external_post_id", name="uq_social_posts_account_external"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    social_account_id: Mapped[int] = mapped_column(
        sa.ForeignKey("social_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    external_post_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    posted_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    caption: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    media_type: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    media_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    metrics: Mapped[dict[str, Any] | None] = mapped_column(sa.JSON(), nullable=True)
    raw_json: Mapped[dict[str, Any] | None] = mapped_column(sa.JSON(), nullable=True)
