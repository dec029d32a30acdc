"""initial schema: core, two-factor, admin roles, assets, blog, analytics

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _user_fk(ondelete: str = "SET NULL"):
    return sa.ForeignKey("users.id", ondelete=ondelete)


def upgrade() -> None:
    """Create the core, two-factor, admin role, asset, blog and analytics tables."""
    # Check if tables already exist (idempotent)
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    # Core: users, roles, permissions, audit trail
    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("name", sa.String(255), nullable=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("role", sa.String(32), nullable=False, server_default="VIEWER"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("last_login_at", sa.DateTime(), nullable=True),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("two_factor_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("two_factor_secret", sa.Text(), nullable=True),
            sa.Column("preferred_2fa_method", sa.String(16), nullable=True),
            sa.Column("two_factor_verified_at", sa.DateTime(), nullable=True),
            sa.Column("phone_number", sa.String(32), nullable=True),
            sa.Column("phone_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("failed_login_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_failed_login_at", sa.DateTime(), nullable=True),
            sa.Column("locked_until", sa.DateTime(), nullable=True),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(64), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "permissions" not in existing_tables:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(128), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), _user_fk("CASCADE"), primary_key=True),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        )

    if "role_permissions" not in existing_tables:
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), _user_fk(), nullable=True),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
        )
        op.create_index("idx_audit_events_entity", "audit_events", ["entity_type", "entity_id"])
        op.create_index("idx_audit_events_action", "audit_events", ["action"])

    # Two-factor authentication
    if "two_factor_backup_codes" not in existing_tables:
        op.create_table(
            "two_factor_backup_codes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), _user_fk("CASCADE"), nullable=False),
            sa.Column("code_hash", sa.String(255), nullable=False),
            sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("used_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_backup_codes_user_used", "two_factor_backup_codes", ["user_id", "used"])

    if "sms_verification_codes" not in existing_tables:
        op.create_table(
            "sms_verification_codes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), _user_fk("CASCADE"), nullable=False),
            sa.Column("phone_number", sa.String(32), nullable=False),
            sa.Column("purpose", sa.String(32), nullable=False, server_default="two_factor_auth"),
            sa.Column("code_hash", sa.String(255), nullable=False),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("verified_at", sa.DateTime(), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("twilio_message_sid", sa.String(64), nullable=True),
            sa.Column("delivery_status", sa.String(32), nullable=True),
            sa.Column("delivery_error", sa.Text(), nullable=True),
            sa.Column("cost", sa.Float(), nullable=True),
        )
        op.create_index("idx_sms_codes_user_created", "sms_verification_codes", ["user_id", "created_at"])
        op.create_index("idx_sms_codes_message_sid", "sms_verification_codes", ["twilio_message_sid"])
        op.create_index("idx_sms_codes_expires_at", "sms_verification_codes", ["expires_at"])

    # Admin roles
    if "admin_roles" not in existing_tables:
        op.create_table(
            "admin_roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.Integer(), _user_fk("CASCADE"), nullable=False),
            sa.Column("department", sa.String(32), nullable=False),
            sa.Column("seniority", sa.String(16), nullable=False, server_default="JUNIOR"),
            sa.Column("permissions", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("created_by_user_id", sa.Integer(), _user_fk(), nullable=True),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("deleted_by_user_id", sa.Integer(), _user_fk(), nullable=True),
            sa.Column("deletion_reason", sa.String(512), nullable=True),
        )
        op.create_index("idx_admin_roles_user", "admin_roles", ["user_id"])
        op.create_index("idx_admin_roles_department", "admin_roles", ["department"])
        op.create_index("idx_admin_roles_expires_at", "admin_roles", ["expires_at"])

    # Assets
    if "ip_assets" not in existing_tables:
        op.create_table(
            "ip_assets",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("owner_user_id", sa.Integer(), _user_fk(), nullable=True),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("type", sa.String(16), nullable=False, server_default="OTHER"),
            sa.Column("storage_key", sa.String(512), nullable=False, server_default=""),
            sa.Column("file_size", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("mime_type", sa.String(128), nullable=False, server_default="application/octet-stream"),
            sa.Column("sha256", sa.String(64), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="DRAFT"),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("parent_asset_id", sa.Integer(), sa.ForeignKey("ip_assets.id", ondelete="SET NULL"), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
        )
        op.create_index("idx_ip_assets_owner", "ip_assets", ["owner_user_id"])
        op.create_index("idx_ip_assets_parent", "ip_assets", ["parent_asset_id"])
        op.create_index("idx_ip_assets_status", "ip_assets", ["status"])

    if "file_relationships" not in existing_tables:
        op.create_table(
            "file_relationships",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("source_asset_id", sa.Integer(), sa.ForeignKey("ip_assets.id", ondelete="CASCADE"), nullable=False),
            sa.Column("target_asset_id", sa.Integer(), sa.ForeignKey("ip_assets.id", ondelete="CASCADE"), nullable=False),
            sa.Column("relationship_type", sa.String(32), nullable=False),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), _user_fk(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
        )
        op.create_index("idx_file_relationships_source", "file_relationships", ["source_asset_id"])
        op.create_index("idx_file_relationships_target", "file_relationships", ["target_asset_id"])
        op.create_index("idx_file_relationships_type", "file_relationships", ["relationship_type"])

    # Blog
    if "blog_categories" not in existing_tables:
        op.create_table(
            "blog_categories",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("slug", sa.String(150), nullable=False, unique=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column(
                "parent_category_id", sa.Integer(), sa.ForeignKey("blog_categories.id", ondelete="SET NULL"), nullable=True
            ),
            sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "blog_posts" not in existing_tables:
        op.create_table(
            "blog_posts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("title", sa.String(500), nullable=False),
            sa.Column("slug", sa.String(150), nullable=False, unique=True),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("excerpt", sa.String(500), nullable=True),
            sa.Column("author_id", sa.Integer(), _user_fk("RESTRICT"), nullable=False),
            sa.Column("category_id", sa.Integer(), sa.ForeignKey("blog_categories.id", ondelete="SET NULL"), nullable=True),
            sa.Column("featured_image_url", sa.String(1024), nullable=True),
            sa.Column("status", sa.String(16), nullable=False, server_default="DRAFT"),
            sa.Column("published_at", sa.DateTime(), nullable=True),
            sa.Column("scheduled_for", sa.DateTime(), nullable=True),
            sa.Column("read_time_minutes", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("view_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("tags", sa.JSON(), nullable=False),
            sa.Column("seo_title", sa.String(70), nullable=True),
            sa.Column("seo_description", sa.String(160), nullable=True),
            sa.Column("seo_keywords", sa.String(500), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
        )
        op.create_index("idx_blog_posts_status", "blog_posts", ["status"])
        op.create_index("idx_blog_posts_author", "blog_posts", ["author_id"])
        op.create_index("idx_blog_posts_category", "blog_posts", ["category_id"])
        op.create_index("idx_blog_posts_scheduled_for", "blog_posts", ["scheduled_for"])

    if "blog_post_revisions" not in existing_tables:
        op.create_table(
            "blog_post_revisions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("post_id", sa.Integer(), sa.ForeignKey("blog_posts.id", ondelete="CASCADE"), nullable=False),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("author_id", sa.Integer(), _user_fk(), nullable=True),
            sa.Column("revision_note", sa.String(500), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_blog_post_revisions_post", "blog_post_revisions", ["post_id", "created_at"])

    # Analytics
    if "analytics_events" not in existing_tables:
        op.create_table(
            "analytics_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("occurred_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("event_type", sa.String(64), nullable=False),
            sa.Column("source", sa.String(32), nullable=False, server_default="web"),
            sa.Column("actor_id", sa.Integer(), _user_fk(), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("ip_asset_id", sa.Integer(), sa.ForeignKey("ip_assets.id", ondelete="SET NULL"), nullable=True),
            sa.Column("license_id", sa.Integer(), nullable=True),
            sa.Column("session_id", sa.String(128), nullable=True),
            sa.Column("value_cents", sa.Integer(), nullable=True),
            sa.Column("engagement_seconds", sa.Integer(), nullable=True),
            sa.Column("props_json", sa.Text(), nullable=True),
        )
        op.create_index("idx_analytics_events_occurred_at", "analytics_events", ["occurred_at"])
        op.create_index("idx_analytics_events_type", "analytics_events", ["event_type", "occurred_at"])
        op.create_index("idx_analytics_events_asset", "analytics_events", ["ip_asset_id", "occurred_at"])

    if "daily_metrics" not in existing_tables:
        op.create_table(
            "daily_metrics",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("date", sa.Date(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("ip_asset_id", sa.Integer(), nullable=True),
            sa.Column("license_id", sa.Integer(), nullable=True),
            sa.Column("views", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("clicks", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("conversions", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("revenue_cents", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("unique_visitors", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("engagement_time", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_daily_metrics_scope", "daily_metrics", ["date", "project_id", "ip_asset_id", "license_id"])

    if "weekly_metrics" not in existing_tables:
        op.create_table(
            "weekly_metrics",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("week_start_date", sa.Date(), nullable=False),
            sa.Column("week_end_date", sa.Date(), nullable=False),
            *_rollup_columns(),
        )
        op.create_index(
            "idx_weekly_metrics_scope", "weekly_metrics", ["week_start_date", "project_id", "ip_asset_id", "license_id"]
        )

    if "monthly_metrics" not in existing_tables:
        op.create_table(
            "monthly_metrics",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("month_start_date", sa.Date(), nullable=False),
            sa.Column("month_end_date", sa.Date(), nullable=False),
            sa.Column("year", sa.Integer(), nullable=False),
            sa.Column("month", sa.Integer(), nullable=False),
            sa.Column("weeks_in_month", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("weekly_breakdown", sa.JSON(), nullable=False),
            *_rollup_columns(),
        )
        op.create_index(
            "idx_monthly_metrics_scope", "monthly_metrics", ["month_start_date", "project_id", "ip_asset_id", "license_id"]
        )

    if "realtime_metrics" not in existing_tables:
        op.create_table(
            "realtime_metrics",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("metric_key", sa.String(255), nullable=False, unique=True),
            sa.Column("metric_type", sa.String(16), nullable=False),
            sa.Column("current_value", sa.Float(), nullable=False, server_default="0"),
            sa.Column("dimensions", sa.JSON(), nullable=False),
            sa.Column("unit", sa.String(32), nullable=True),
            sa.Column("last_updated", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_realtime_metrics_expires_at", "realtime_metrics", ["expires_at"])

    if "custom_metric_definitions" not in existing_tables:
        op.create_table(
            "custom_metric_definitions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("metric_type", sa.String(32), nullable=False, server_default="CUSTOM"),
            sa.Column("data_source", sa.String(32), nullable=False),
            sa.Column("calculation_formula", sa.Text(), nullable=False),
            sa.Column("dimensions", sa.JSON(), nullable=False),
            sa.Column("filters", sa.JSON(), nullable=False),
            sa.Column("aggregation_method", sa.String(32), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), _user_fk(), nullable=True),
            sa.Column("visibility", sa.String(16), nullable=False, server_default="PRIVATE"),
            sa.Column("allowed_roles", sa.JSON(), nullable=False),
            sa.Column("is_validated", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("validation_errors", sa.JSON(), nullable=True),
            sa.Column("estimated_cost", sa.String(8), nullable=False, server_default="low"),
            sa.Column("query_timeout_seconds", sa.Integer(), nullable=False, server_default="30"),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column(
                "parent_metric_id",
                sa.Integer(),
                sa.ForeignKey("custom_metric_definitions.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_calculated_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
        )
        op.create_index("idx_custom_metric_definitions_creator", "custom_metric_definitions", ["created_by_user_id"])
        op.create_index("idx_custom_metric_definitions_active", "custom_metric_definitions", ["is_active"])

    if "custom_metric_values" not in existing_tables:
        op.create_table(
            "custom_metric_values",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "metric_definition_id",
                sa.Integer(),
                sa.ForeignKey("custom_metric_definitions.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("period_type", sa.String(16), nullable=False),
            sa.Column("period_start_date", sa.DateTime(), nullable=False),
            sa.Column("period_end_date", sa.DateTime(), nullable=False),
            sa.Column("dimension_values", sa.JSON(), nullable=False),
            sa.Column("metric_value", sa.Float(), nullable=False, server_default="0"),
            sa.Column("metric_value_string", sa.String(255), nullable=True),
            sa.Column("calculation_duration_ms", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("record_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("calculated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index(
            "idx_custom_metric_values_period", "custom_metric_values", ["metric_definition_id", "period_start_date"]
        )


def _rollup_columns() -> list:
    """Columns shared by weekly_metrics and monthly_metrics."""
    return [
        sa.Column("project_id", sa.Integer(), nullable=True),
        sa.Column("ip_asset_id", sa.Integer(), nullable=True),
        sa.Column("license_id", sa.Integer(), nullable=True),
        sa.Column("total_views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_clicks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_conversions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_revenue_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unique_visitors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_engagement_time", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_daily_views", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_daily_clicks", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_daily_conversions", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_daily_revenue_cents", sa.Float(), nullable=False, server_default="0"),
        sa.Column("views_growth_percent", sa.Float(), nullable=True),
        sa.Column("clicks_growth_percent", sa.Float(), nullable=True),
        sa.Column("conversions_growth_percent", sa.Float(), nullable=True),
        sa.Column("revenue_growth_percent", sa.Float(), nullable=True),
        sa.Column("days_in_period", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    ]


def downgrade() -> None:
    """Drop tables in reverse order."""
    existing_tables = set(sa.inspect(op.get_bind()).get_table_names())
    for table in (
        "custom_metric_values",
        "custom_metric_definitions",
        "realtime_metrics",
        "monthly_metrics",
        "weekly_metrics",
        "daily_metrics",
        "analytics_events",
        "blog_post_revisions",
        "blog_posts",
        "blog_categories",
        "file_relationships",
        "ip_assets",
        "admin_roles",
        "sms_verification_codes",
        "two_factor_backup_codes",
        "audit_events",
        "role_permissions",
        "user_roles",
        "permissions",
        "roles",
        "users",
    ):
        if table in existing_tables:
            op.drop_table(table)
