"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

Catalog tables: assets and their ordered renditions.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the catalog tables."""
    op.create_table(
        "assets",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, server_default=""),
        sa.Column("original_filename", sa.String(255), nullable=False),
        sa.Column("size_bytes", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("mime_type", sa.String(100), nullable=False),
        sa.Column("duration", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="ready"),
        sa.Column("source_path", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("status IN ('ready', 'unprocessed')", name="ck_assets_status"),
        sa.CheckConstraint("duration >= 0", name="ck_assets_duration_non_negative"),
        sa.CheckConstraint("size_bytes >= 0", name="ck_assets_size_non_negative"),
    )
    op.create_index("ix_assets_created_at", "assets", ["created_at"])

    op.create_table(
        "asset_renditions",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("asset_id", sa.String(32), sa.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("label", sa.String(20), nullable=False),
        sa.Column("video_bitrate", sa.Integer, nullable=False),
        sa.Column("audio_bitrate", sa.Integer, nullable=False),
        sa.Column("playlist_path", sa.String(255), nullable=False),
        sa.UniqueConstraint("asset_id", "label", name="uq_asset_renditions_asset_label"),
    )
    op.create_index("ix_asset_renditions_asset_id", "asset_renditions", ["asset_id"])


def downgrade() -> None:
    op.drop_index("ix_asset_renditions_asset_id", table_name="asset_renditions")
    op.drop_table("asset_renditions")
    op.drop_index("ix_assets_created_at", table_name="assets")
    op.drop_table("assets")
