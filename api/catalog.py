"""
Catalog store for processed video assets.

An asset row is written only once the whole package exists on disk (or, for
the encoder-unavailable fallback, once the original has been stored), so a
catalog entry always points at a complete directory under the uploads root.
"""

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from databases import Database

from api.database import asset_renditions, assets
from api.db_retry import (
    DatabaseRetryableError,
    execute_with_retry,
    fetch_all_with_retry,
    fetch_one_with_retry,
)
from api.enums import AssetStatus
from api.errors import NotFoundError, PersistenceError
from config import Rendition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenditionDescriptor:
    """One stored rendition of an asset (bitrates in bits/sec)."""

    label: str
    video_bitrate: int
    audio_bitrate: int
    playlist_path: str  # relative to the asset root

    @classmethod
    def from_rendition(cls, rendition: Rendition) -> "RenditionDescriptor":
        return cls(
            label=rendition.label,
            video_bitrate=rendition.video_bitrate * 1000,
            audio_bitrate=rendition.audio_bitrate * 1000,
            playlist_path=rendition.playlist_path,
        )


@dataclass
class VideoAsset:
    id: str
    title: str
    original_filename: str
    size_bytes: int
    mime_type: str
    description: str = ""
    duration: int = 0
    renditions: List[RenditionDescriptor] = field(default_factory=list)
    status: AssetStatus = AssetStatus.READY
    source_path: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_processed(self) -> bool:
        return self.status == AssetStatus.READY


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite drops tzinfo) as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _asset_from_rows(row, rendition_rows: Sequence) -> VideoAsset:
    return VideoAsset(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        original_filename=row["original_filename"],
        size_bytes=row["size_bytes"],
        mime_type=row["mime_type"],
        duration=row["duration"] or 0,
        status=AssetStatus(row["status"]),
        source_path=row["source_path"],
        created_at=ensure_utc(row["created_at"]),
        renditions=[
            RenditionDescriptor(
                label=r["label"],
                video_bitrate=r["video_bitrate"],
                audio_bitrate=r["audio_bitrate"],
                playlist_path=r["playlist_path"],
            )
            for r in rendition_rows
        ],
    )


class CatalogStore:
    """
    Persists VideoAsset records and owns deletion of their directories.

    Every database failure (including exhausted retries) is raised as
    PersistenceError so callers never see driver exceptions.
    """

    def __init__(self, database: Database, uploads_root: Path):
        self.database = database
        self.uploads_root = Path(uploads_root)

    def asset_dir(self, asset_id: str) -> Path:
        return self.uploads_root / asset_id

    async def create(self, asset: VideoAsset) -> VideoAsset:
        """Insert the asset row and its renditions in one transaction."""

        async def _insert():
            async with self.database.transaction():
                await self.database.execute(
                    assets.insert().values(
                        id=asset.id,
                        title=asset.title,
                        description=asset.description,
                        original_filename=asset.original_filename,
                        size_bytes=asset.size_bytes,
                        mime_type=asset.mime_type,
                        duration=asset.duration,
                        status=asset.status.value,
                        source_path=asset.source_path,
                        created_at=asset.created_at,
                    )
                )
                for position, rendition in enumerate(asset.renditions):
                    await self.database.execute(
                        asset_renditions.insert().values(
                            asset_id=asset.id,
                            position=position,
                            label=rendition.label,
                            video_bitrate=rendition.video_bitrate,
                            audio_bitrate=rendition.audio_bitrate,
                            playlist_path=rendition.playlist_path,
                        )
                    )

        try:
            await execute_with_retry(_insert, operation="create_asset")
        except DatabaseRetryableError as e:
            raise PersistenceError(str(e)) from e
        except Exception as e:
            logger.error(f"Failed to persist asset {asset.id}: {e}")
            raise PersistenceError(f"Failed to persist asset {asset.id}: {e}") from e

        logger.info(f"Persisted asset {asset.id} ({asset.status.value}, {len(asset.renditions)} renditions)")
        return asset

    async def _renditions_for(self, asset_ids: List[str]) -> dict:
        grouped = {asset_id: [] for asset_id in asset_ids}
        if not asset_ids:
            return grouped
        rows = await fetch_all_with_retry(
            self.database,
            asset_renditions.select()
            .where(asset_renditions.c.asset_id.in_(asset_ids))
            .order_by(asset_renditions.c.asset_id, asset_renditions.c.position),
        )
        for r in rows:
            grouped[r["asset_id"]].append(r)
        return grouped

    async def list(self) -> List[VideoAsset]:
        """All assets, newest first; renditions in ladder order."""
        try:
            rows = await fetch_all_with_retry(
                self.database,
                assets.select().order_by(assets.c.created_at.desc(), assets.c.id),
            )
            renditions = await self._renditions_for([row["id"] for row in rows])
        except DatabaseRetryableError as e:
            raise PersistenceError(str(e)) from e
        except Exception as e:
            logger.error(f"Failed to list assets: {e}")
            raise PersistenceError(f"Failed to list assets: {e}") from e
        return [_asset_from_rows(row, renditions[row["id"]]) for row in rows]

    async def get(self, asset_id: str) -> VideoAsset:
        try:
            row = await fetch_one_with_retry(self.database, assets.select().where(assets.c.id == asset_id))
            if row is None:
                raise NotFoundError(asset_id)
            renditions = await self._renditions_for([asset_id])
        except NotFoundError:
            raise
        except DatabaseRetryableError as e:
            raise PersistenceError(str(e)) from e
        except Exception as e:
            logger.error(f"Failed to load asset {asset_id}: {e}")
            raise PersistenceError(f"Failed to load asset {asset_id}: {e}") from e
        return _asset_from_rows(row, renditions[asset_id])

    async def delete(self, asset_id: str) -> None:
        """
        Delete the asset record, then its directory tree.

        Raises:
            NotFoundError: If no record exists for asset_id
            PersistenceError: If the database delete fails (directory is left in place)
        """
        await self.get(asset_id)

        async def _delete():
            async with self.database.transaction():
                await self.database.execute(
                    asset_renditions.delete().where(asset_renditions.c.asset_id == asset_id)
                )
                await self.database.execute(assets.delete().where(assets.c.id == asset_id))

        try:
            await execute_with_retry(_delete, operation="delete_asset")
        except DatabaseRetryableError as e:
            raise PersistenceError(str(e)) from e
        except Exception as e:
            logger.error(f"Failed to delete asset {asset_id}: {e}")
            raise PersistenceError(f"Failed to delete asset {asset_id}: {e}") from e

        # Directory may already be gone; that is not an error
        shutil.rmtree(self.asset_dir(asset_id), ignore_errors=True)
        logger.info(f"Deleted asset {asset_id}")

