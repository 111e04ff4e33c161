"""create tenants, social accounts, sync logs, daily metrics and posts

Revision ID: 0001_sync_core
Revises:
Create Date: 2026-10-18 10:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_sync_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
            nullable=False,
        ),
    ]


def _counter(name: str) -> sa.Column:
    return sa.Column(name, sa.BigInteger(), nullable=False, server_default="0")


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("slug", name="uq_tenants_slug"),
    )

    op.create_table(
        "social_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("account_name", sa.String(length=255), nullable=True),
        sa.Column("external_account_id", sa.String(length=255), nullable=False),
        sa.Column("auth_status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("token_encrypted", sa.Text(), nullable=True),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id", "platform", "external_account_id", name="uq_social_accounts_tenant_platform_external"
        ),
    )
    op.create_index("ix_social_accounts_tenant_id", "social_accounts", ["tenant_id"])

    op.create_table(
        "sync_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "social_account_id",
            sa.Integer(),
            sa.ForeignKey("social_accounts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("rows_upserted", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_sync_logs_tenant_id", "sync_logs", ["tenant_id"])
    op.create_index("ix_sync_logs_social_account_id", "sync_logs", ["social_account_id"])

    op.create_table(
        "social_daily_metrics",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column(
            "social_account_id",
            sa.Integer(),
            sa.ForeignKey("social_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("date", sa.Date(), nullable=False),
        _counter("followers"),
        _counter("impressions"),
        _counter("reach"),
        _counter("engagements"),
        _counter("likes"),
        _counter("comments"),
        _counter("shares"),
        _counter("saves"),
        _counter("views"),
        _counter("watch_time"),
        sa.Column("posts_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("raw_json", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id", "platform", "social_account_id", "date", name="uq_social_daily_metrics_account_date"
        ),
    )
    op.create_index("ix_social_daily_metrics_social_account_id", "social_daily_metrics", ["social_account_id"])

    op.create_table(
        "social_posts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column(
            "social_account_id",
            sa.Integer(),
            sa.ForeignKey("social_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_post_id", sa.String(length=255), nullable=False),
        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("caption", sa.Text(), nullable=True),
        sa.Column("media_type", sa.String(length=32), nullable=True),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("media_url", sa.Text(), nullable=True),
        sa.Column("metrics", sa.JSON(), nullable=True),
        sa.Column("raw_json", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id", "platform", "social_account_id", "external_post_id", name="uq_social_posts_account_external"
        ),
    )
    op.create_index("ix_social_posts_social_account_id", "social_posts", ["social_account_id"])


def downgrade() -> None:
    op.drop_index("ix_social_posts_social_account_id", table_name="social_posts")
    op.drop_table("social_posts")
    op.drop_index("ix_social_daily_metrics_social_account_id", table_name="social_daily_metrics")
    op.drop_table("social_daily_metrics")
    op.drop_index("ix_sync_logs_social_account_id", table_name="sync_logs")
    op.drop_index("ix_sync_logs_tenant_id", table_name="sync_logs")
    op.drop_table("sync_logs")
    op.drop_index("ix_social_accounts_tenant_id", table_name="social_accounts")
    op.drop_table("social_accounts")
    op.drop_table("tenants")
