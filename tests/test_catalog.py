"""Tests for the catalog store (api/catalog.py) against a SQLite database."""

import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from databases import Database

from api.catalog import CatalogStore, RenditionDescriptor, VideoAsset, ensure_utc
from api.enums import AssetStatus
from api.errors import NotFoundError, PersistenceError
from config import Rendition


def _asset(asset_id: str, created_at=None, renditions=None, **kwargs) -> VideoAsset:
    return VideoAsset(
        id=asset_id,
        title=kwargs.pop("title", f"Video {asset_id[:4]}"),
        original_filename="clip.mp4",
        size_bytes=1024,
        mime_type="video/mp4",
        duration=13,
        renditions=renditions
        if renditions is not None
        else [
            RenditionDescriptor.from_rendition(Rendition("360p", 640, 360, 800, 96)),
            RenditionDescriptor.from_rendition(Rendition("720p", 1280, 720, 2800, 128)),
        ],
        created_at=created_at or datetime.now(timezone.utc),
        **kwargs,
    )


class TestRenditionDescriptor:
    """Tests for RenditionDescriptor."""

    def test_from_rendition_converts_to_bits_per_second(self):
        """Ladder bitrates are kbps; stored bitrates are bits/sec."""
        descriptor = RenditionDescriptor.from_rendition(Rendition("480p", 854, 480, 1400, 128))

        assert descriptor.video_bitrate == 1_400_000
        assert descriptor.audio_bitrate == 128_000
        assert descriptor.playlist_path == "480p/480p.m3u8"


class TestEnsureUtc:
    """Tests for ensure_utc."""

    def test_naive_datetime_is_treated_as_utc(self):
        """SQLite returns naive datetimes."""
        result = ensure_utc(datetime(2026, 1, 1, 12, 0))
        assert result.tzinfo == timezone.utc
        assert result.hour == 12

    def test_none_passthrough(self):
        assert ensure_utc(None) is None


class TestCatalogStore:
    """Tests for CatalogStore create/list/get/delete."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, catalog: CatalogStore):
        """A created asset reads back with its renditions in ladder order."""
        await catalog.create(_asset("a" * 32, description="A test clip"))

        asset = await catalog.get("a" * 32)

        assert asset.title == "Video aaaa"
        assert asset.description == "A test clip"
        assert asset.duration == 13
        assert asset.status == AssetStatus.READY
        assert asset.is_processed
        assert [r.label for r in asset.renditions] == ["360p", "720p"]
        assert asset.renditions[1].video_bitrate == 2_800_000
        assert asset.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_unprocessed_asset_has_source_path(self, catalog: CatalogStore):
        """Fallback assets carry no renditions and point at the stored original."""
        await catalog.create(
            _asset("b" * 32, renditions=[], status=AssetStatus.UNPROCESSED, source_path="original.mp4")
        )

        asset = await catalog.get("b" * 32)

        assert asset.status == AssetStatus.UNPROCESSED
        assert not asset.is_processed
        assert asset.renditions == []
        assert asset.source_path == "original.mp4"

    @pytest.mark.asyncio
    async def test_list_newest_first(self, catalog: CatalogStore):
        """list() orders by creation time, newest first."""
        now = datetime.now(timezone.utc)
        await catalog.create(_asset("1" * 32, created_at=now - timedelta(hours=2)))
        await catalog.create(_asset("3" * 32, created_at=now))
        await catalog.create(_asset("2" * 32, created_at=now - timedelta(hours=1)))

        assets = await catalog.list()

        assert [a.id for a in assets] == ["3" * 32, "2" * 32, "1" * 32]
        assert all(len(a.renditions) == 2 for a in assets)

    @pytest.mark.asyncio
    async def test_list_empty(self, catalog: CatalogStore):
        assert await catalog.list() == []

    @pytest.mark.asyncio
    async def test_get_missing_raises_not_found(self, catalog: CatalogStore):
        """Unknown ids raise NotFoundError."""
        with pytest.raises(NotFoundError) as exc_info:
            await catalog.get("f" * 32)
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_duplicate_id_raises_persistence_error(self, catalog: CatalogStore):
        """Constraint violations surface as PersistenceError."""
        await catalog.create(_asset("c" * 32))

        with pytest.raises(PersistenceError):
            await catalog.create(_asset("c" * 32))

    @pytest.mark.asyncio
    async def test_failed_create_leaves_no_partial_rows(self, catalog: CatalogStore):
        """Asset and rendition rows are written in one transaction."""
        duplicate_labels = [
            RenditionDescriptor("360p", 800_000, 96_000, "360p/360p.m3u8"),
            RenditionDescriptor("360p", 800_000, 96_000, "360p/360p.m3u8"),
        ]

        with pytest.raises(PersistenceError):
            await catalog.create(_asset("d" * 32, renditions=duplicate_labels))

        with pytest.raises(NotFoundError):
            await catalog.get("d" * 32)

    @pytest.mark.asyncio
    async def test_delete_removes_record_and_directory(self, catalog: CatalogStore):
        """delete() removes the row and the asset directory tree."""
        asset_id = "e" * 32
        await catalog.create(_asset(asset_id))
        asset_dir = catalog.asset_dir(asset_id)
        (asset_dir / "360p").mkdir(parents=True)
        (asset_dir / "360p" / "360p.m3u8").write_text("#EXTM3U\n")

        await catalog.delete(asset_id)

        assert not asset_dir.exists()
        with pytest.raises(NotFoundError):
            await catalog.get(asset_id)

    @pytest.mark.asyncio
    async def test_delete_without_directory(self, catalog: CatalogStore):
        """A missing directory does not fail the delete."""
        await catalog.create(_asset("0" * 32))

        await catalog.delete("0" * 32)

        assert await catalog.list() == []

    @pytest.mark.asyncio
    async def test_delete_missing_raises_not_found(self, catalog: CatalogStore):
        with pytest.raises(NotFoundError):
            await catalog.delete("9" * 32)

    @pytest.mark.asyncio
    async def test_missing_tables_raise_persistence_error(self, tmp_path):
        """Driver errors never escape the catalog."""
        database = Database(f"sqlite:///{tmp_path / 'empty.db'}")
        await database.connect()
        try:
            store = CatalogStore(database, tmp_path)
            with pytest.raises(PersistenceError):
                await store.list()
            with pytest.raises(PersistenceError):
                await store.create(_asset("a" * 32))
        finally:
            await database.disconnect()

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_persistence_error(self, catalog: CatalogStore):
        """A database that stays locked ends in PersistenceError after retries."""
        locked = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))

        with patch.object(catalog.database, "fetch_all", locked):
            with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock):
                with pytest.raises(PersistenceError):
                    await catalog.list()

        assert locked.call_count == 6

    @pytest.mark.asyncio
    async def test_transient_lock_is_retried(self, catalog: CatalogStore):
        """A single lock error is retried transparently."""
        await catalog.create(_asset("7" * 32))
        real_fetch_one = catalog.database.fetch_one
        calls = {"n": 0}

        async def flaky_fetch_one(query):
            calls["n"] += 1
            if calls["n"] == 1:
                raise sqlite3.OperationalError("database is locked")
            return await real_fetch_one(query)

        with patch.object(catalog.database, "fetch_one", flaky_fetch_one):
            with patch("api.db_retry.asyncio.sleep", new_callable=AsyncMock):
                asset = await catalog.get("7" * 32)

        assert asset.id == "7" * 32
        assert calls["n"] == 2
