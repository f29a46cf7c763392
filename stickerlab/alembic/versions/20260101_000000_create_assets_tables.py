"""Create assets, asset_tags and asset_usages tables

Revision ID: 20260101_000000
Revises:
Create Date: 2026-01-01 00:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20260101_000000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create assets table
    op.create_table(
        "assets",
        sa.Column("id", sa.String(24), nullable=False),
        sa.Column("hash", sa.String(64), nullable=False),
        sa.Column("asset_id", sa.String(255), nullable=False),
        sa.Column("original_path", sa.String(1024), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("mime_type", sa.String(100), nullable=False),
        sa.Column("blob_url", sa.String(1024), nullable=True),
        sa.Column("blob_file_name", sa.String(1024), nullable=True),
        sa.Column("category", sa.String(50), nullable=False, server_default="other"),
        sa.Column("subcategory", sa.String(50), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("asset_metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "last_used",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_assets_hash"), "assets", ["hash"], unique=True)
    op.create_index(op.f("ix_assets_asset_id"), "assets", ["asset_id"], unique=True)
    op.create_index(op.f("ix_assets_original_path"), "assets", ["original_path"])
    op.create_index(op.f("ix_assets_name"), "assets", ["name"])
    op.create_index(op.f("ix_assets_filename"), "assets", ["filename"])
    op.create_index(op.f("ix_assets_blob_url"), "assets", ["blob_url"])
    op.create_index(op.f("ix_assets_blob_file_name"), "assets", ["blob_file_name"])
    op.create_index(op.f("ix_assets_category"), "assets", ["category"])
    op.create_index(op.f("ix_assets_subcategory"), "assets", ["subcategory"])
    op.create_index(op.f("ix_assets_usage_count"), "assets", ["usage_count"])
    op.create_index(op.f("ix_assets_is_active"), "assets", ["is_active"])
    op.create_index(op.f("ix_assets_last_used"), "assets", ["last_used"])
    op.create_index("ix_assets_category_subcategory", "assets", ["category", "subcategory"])

    # Create asset_tags table
    op.create_table(
        "asset_tags",
        sa.Column("asset_id", sa.String(24), nullable=False),
        sa.Column("kind", sa.String(10), nullable=False),
        sa.Column("tag", sa.String(255), nullable=False),
        sa.ForeignKeyConstraint(["asset_id"], ["assets.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("asset_id", "kind", "tag"),
    )
    op.create_index(op.f("ix_asset_tags_tag"), "asset_tags", ["tag"])

    # Create asset_usages table
    op.create_table(
        "asset_usages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("asset_id", sa.String(24), nullable=False),
        sa.Column("project_id", sa.String(24), nullable=True),
        sa.Column("template_id", sa.String(24), nullable=True),
        sa.Column(
            "added_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.ForeignKeyConstraint(["asset_id"], ["assets.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_asset_usages_asset_id"), "asset_usages", ["asset_id"])
    op.create_index(op.f("ix_asset_usages_project_id"), "asset_usages", ["project_id"])
    op.create_index(op.f("ix_asset_usages_template_id"), "asset_usages", ["template_id"])


def downgrade() -> None:
    op.drop_index(op.f("ix_asset_usages_template_id"), table_name="asset_usages")
    op.drop_index(op.f("ix_asset_usages_project_id"), table_name="asset_usages")
    op.drop_index(op.f("ix_asset_usages_asset_id"), table_name="asset_usages")
    op.drop_table("asset_usages")

    op.drop_index(op.f("ix_asset_tags_tag"), table_name="asset_tags")
    op.drop_table("asset_tags")

    op.drop_index("ix_assets_category_subcategory", table_name="assets")
    for column in (
        "last_used",
        "is_active",
        "usage_count",
        "subcategory",
        "category",
        "blob_file_name",
        "blob_url",
        "filename",
        "name",
        "original_path",
        "asset_id",
        "hash",
    ):
        op.drop_index(op.f(f"ix_assets_{column}"), table_name="assets")
    op.drop_table("assets")
