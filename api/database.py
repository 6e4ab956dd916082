from datetime import datetime, timezone
from typing import Optional

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


assets = sa.Table(
    "assets",
    metadata,
    # uuid4 hex, generated before transcoding; also the asset directory name
    sa.Column("id", sa.String(32), primary_key=True),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, default=""),
    sa.Column("original_filename", sa.String(255), nullable=False),
    sa.Column("size_bytes", sa.BigInteger, nullable=False, default=0),
    sa.Column("mime_type", sa.String(100), nullable=False),
    sa.Column("duration", sa.Integer, nullable=False, default=0),  # whole seconds
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint("status IN ('ready', 'unprocessed')", name="ck_assets_status"),
        nullable=False,
        default="ready",
    ),  # ready, unprocessed
    # Relative path of the stored original (unprocessed assets only)
    sa.Column("source_path", sa.String(255), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)),
    sa.CheckConstraint("duration >= 0", name="ck_assets_duration_non_negative"),
    sa.CheckConstraint("size_bytes >= 0", name="ck_assets_size_non_negative"),
    sa.Index("ix_assets_created_at", "created_at"),
)

asset_renditions = sa.Table(
    "asset_renditions",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("asset_id", sa.String(32), sa.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False),
    # Ladder position; renditions are always read back in this order
    sa.Column("position", sa.Integer, nullable=False),
    sa.Column("label", sa.String(20), nullable=False),  # 360p, 720p, etc.
    sa.Column("video_bitrate", sa.Integer, nullable=False),  # bits per second
    sa.Column("audio_bitrate", sa.Integer, nullable=False),  # bits per second
    sa.Column("playlist_path", sa.String(255), nullable=False),  # relative to the asset root
    sa.UniqueConstraint("asset_id", "label", name="uq_asset_renditions_asset_label"),
    sa.Index("ix_asset_renditions_asset_id", "asset_id"),
)


def create_tables(url: Optional[str] = None):
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(url or DATABASE_URL)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
