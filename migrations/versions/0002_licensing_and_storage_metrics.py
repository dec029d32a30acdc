"""add licenses, ip_ownerships and storage_metrics tables

Revision ID: 0002_licensing_and_storage_metrics
Revises: 0001_initial_schema
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_licensing_and_storage_metrics"
down_revision: Union[str, Sequence[str], None] = "0001_initial_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create licenses, ip_ownerships, and storage_metrics tables."""
    # Check if tables already exist (idempotent)
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    # Create licenses table
    if "licenses" not in existing_tables:
        op.create_table(
            "licenses",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("ip_asset_id", sa.Integer(), sa.ForeignKey("ip_assets.id", ondelete="CASCADE"), nullable=False),
            sa.Column("brand_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("license_type", sa.String(32), nullable=False, server_default="NON_EXCLUSIVE"),
            sa.Column("status", sa.String(32), nullable=False, server_default="DRAFT"),
            sa.Column("start_date", sa.DateTime(), nullable=False),
            sa.Column("end_date", sa.DateTime(), nullable=False),
            sa.Column("fee_cents", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("rev_share_bps", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("payment_terms", sa.Text(), nullable=True),
            sa.Column("billing_frequency", sa.String(16), nullable=True),
            sa.Column("scope", sa.JSON(), nullable=False),
            sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("metadata_json", sa.JSON(), nullable=False),
            sa.Column("parent_license_id", sa.Integer(), sa.ForeignKey("licenses.id", ondelete="SET NULL"), nullable=True),
            sa.Column("signed_at", sa.DateTime(), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("updated_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
        )
        op.create_index("idx_licenses_asset", "licenses", ["ip_asset_id", "status"])
        op.create_index("idx_licenses_brand", "licenses", ["brand_user_id"])
        op.create_index("idx_licenses_end_date", "licenses", ["end_date"])

    # Create ip_ownerships table
    if "ip_ownerships" not in existing_tables:
        op.create_table(
            "ip_ownerships",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("ip_asset_id", sa.Integer(), sa.ForeignKey("ip_assets.id", ondelete="CASCADE"), nullable=False),
            sa.Column("owner_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("share_bps", sa.Integer(), nullable=False),
            sa.Column("ownership_type", sa.String(16), nullable=False, server_default="PRIMARY"),
            sa.Column("start_date", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("end_date", sa.DateTime(), nullable=True),
            sa.Column("contract_reference", sa.String(255), nullable=True),
            sa.Column("notes", sa.JSON(), nullable=True),
            sa.Column("disputed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
            sa.Column("disputed_at", sa.DateTime(), nullable=True),
            sa.Column("dispute_reason", sa.String(512), nullable=True),
            sa.Column("disputed_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("resolved_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("resolution_notes", sa.Text(), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_ip_ownerships_asset", "ip_ownerships", ["ip_asset_id", "end_date"])
        op.create_index("idx_ip_ownerships_owner", "ip_ownerships", ["owner_user_id"])
        op.create_index("idx_ip_ownerships_disputed", "ip_ownerships", ["disputed"])

    # Create storage_metrics table
    if "storage_metrics" not in existing_tables:
        op.create_table(
            "storage_metrics",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("snapshot_date", sa.Date(), nullable=False),
            sa.Column("entity_type", sa.String(16), nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("total_bytes", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("file_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("average_file_size", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("largest_file_size", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("largest_file_id", sa.Integer(), nullable=True),
            sa.Column("storage_trend_bps", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("breakdown_by_type", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_storage_metrics_entity", "storage_metrics", ["entity_type", "entity_id", "snapshot_date"])


def downgrade() -> None:
    """Drop tables in reverse order."""
    existing_tables = set(sa.inspect(op.get_bind()).get_table_names())
    for table in ("storage_metrics", "ip_ownerships", "licenses"):
        if table in existing_tables:
            op.drop_table(table)
