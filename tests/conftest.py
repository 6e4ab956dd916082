"""
Pytest fixtures for vodpack tests.
Provides a throwaway SQLite catalog, isolated storage directories, fake
encoder/prober executables and an API test client.

The fake tools are small /bin/sh scripts, so the full pipeline (subprocess
spawning, progress parsing, timeouts, cancellation) runs without ffmpeg.
"""

import io
import os
import stat
import tempfile
from pathlib import Path

import pytest

# Set up test environment BEFORE importing config
_test_temp_dir = tempfile.mkdtemp()
os.environ["VODPACK_TEST_MODE"] = "1"
os.environ["VODPACK_RATE_LIMIT_ENABLED"] = "false"
os.environ.setdefault("VODPACK_STORAGE_PATH", _test_temp_dir)
os.environ.setdefault("VODPACK_DATABASE_URL", f"sqlite:///{_test_temp_dir}/default.db")

from databases import Database  # noqa: E402

from api.catalog import CatalogStore  # noqa: E402
from api.database import create_tables  # noqa: E402
from config import PipelineConfig, Rendition  # noqa: E402
from pipeline.receiver import UploadReceiver  # noqa: E402

TEST_LADDER = (
    Rendition("360p", 640, 360, 800, 96, 4),
    Rendition("720p", 1280, 720, 2800, 128, 4),
)

# Writes a one-segment playlist at the output path (last argument) and reports 2s of progress
FAKE_FFMPEG_OK = """#!/bin/sh
for last; do :; done
out_dir=$(dirname "$last")
mkdir -p "$out_dir"
echo "out_time_ms=1000000"
echo "out_time_ms=2000000"
echo "progress=end"
printf '#EXTM3U\\n#EXT-X-VERSION:3\\n#EXT-X-TARGETDURATION:4\\n#EXTINF:2.0,\\nsegment_000.ts\\n#EXT-X-ENDLIST\\n' > "$last"
printf 'segment-data' > "$out_dir/segment_000.ts"
exit 0
"""

FAKE_FFMPEG_FAIL = """#!/bin/sh
echo "Invalid data found when processing input" >&2
exit 1
"""

FAKE_FFMPEG_HANG = """#!/bin/sh
exec sleep 30
"""

FAKE_FFMPEG_NO_PLAYLIST = """#!/bin/sh
echo "progress=end"
exit 0
"""

FAKE_FFPROBE_OK = """#!/bin/sh
echo '{"format": {"duration": "12.6"}}'
"""


def write_script(path: Path, body: str) -> Path:
    """Write an executable shell script and return its path."""
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


class FakeUploadFile:
    """Minimal stand-in for Starlette's UploadFile (filename, content_type, async read)."""

    def __init__(self, data: bytes, filename: str = "clip.mp4", content_type: str = "video/mp4"):
        self.filename = filename
        self.content_type = content_type
        self._buffer = io.BytesIO(data)

    async def read(self, size: int = -1) -> bytes:
        return self._buffer.read(size)


@pytest.fixture
def test_storage(tmp_path: Path) -> dict:
    """Create isolated uploads and temp directories."""
    uploads_dir = tmp_path / "uploads"
    temp_dir = tmp_path / "incoming"
    uploads_dir.mkdir()
    temp_dir.mkdir()
    return {"root": tmp_path, "uploads": uploads_dir, "temp": temp_dir}


@pytest.fixture
def tools_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "bin"
    directory.mkdir()
    return directory


@pytest.fixture
def make_tool(tools_dir: Path):
    """Factory for custom fake executables: make_tool(name, script_body) -> Path."""

    def _make(name: str, body: str) -> Path:
        return write_script(tools_dir / name, body)

    return _make


@pytest.fixture
def fake_ffmpeg(tools_dir: Path) -> Path:
    return write_script(tools_dir / "ffmpeg", FAKE_FFMPEG_OK)


@pytest.fixture
def failing_ffmpeg(tools_dir: Path) -> Path:
    return write_script(tools_dir / "ffmpeg-fail", FAKE_FFMPEG_FAIL)


@pytest.fixture
def hanging_ffmpeg(tools_dir: Path) -> Path:
    return write_script(tools_dir / "ffmpeg-hang", FAKE_FFMPEG_HANG)


@pytest.fixture
def silent_ffmpeg(tools_dir: Path) -> Path:
    """Exits 0 without writing a playlist."""
    return write_script(tools_dir / "ffmpeg-silent", FAKE_FFMPEG_NO_PLAYLIST)


@pytest.fixture
def fake_ffprobe(tools_dir: Path) -> Path:
    return write_script(tools_dir / "ffprobe", FAKE_FFPROBE_OK)


@pytest.fixture
def pipeline_config(test_storage: dict, fake_ffmpeg: Path, fake_ffprobe: Path) -> PipelineConfig:
    """Pipeline settings pointing at the test storage and fake tools."""
    return PipelineConfig(
        uploads_dir=test_storage["uploads"],
        temp_dir=test_storage["temp"],
        max_upload_size=64 * 1024,
        upload_chunk_size=1024,
        ladder=TEST_LADDER,
        probe_timeout=5.0,
        job_timeout=10.0,
        max_concurrent_jobs=3,
        ffmpeg_path=str(fake_ffmpeg),
        ffprobe_path=str(fake_ffprobe),
    )


@pytest.fixture
def test_db_url(tmp_path: Path) -> str:
    """SQLite catalog database with all tables created."""
    url = f"sqlite:///{tmp_path / 'catalog.db'}"
    create_tables(url)
    return url


@pytest.fixture
async def test_database(test_db_url: str):
    """Connected catalog database."""
    database = Database(test_db_url)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def catalog(test_database: Database, test_storage: dict) -> CatalogStore:
    return CatalogStore(test_database, test_storage["uploads"])


@pytest.fixture
def receiver(pipeline_config: PipelineConfig, catalog: CatalogStore) -> UploadReceiver:
    return UploadReceiver(pipeline_config, catalog)


@pytest.fixture
def upload_file():
    """Factory for FakeUploadFile objects."""
    return FakeUploadFile


@pytest.fixture
def video_bytes() -> bytes:
    """Payload standing in for a video file; the fake tools never parse it."""
    return b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 2048


@pytest.fixture
def app_client_factory(test_db_url: str):
    """Factory returning an unstarted TestClient for a given config (use as a context manager)."""
    from fastapi.testclient import TestClient

    from api.app import create_app

    def _factory(config: PipelineConfig, api_secret: str = "") -> TestClient:
        app = create_app(config=config, database=Database(test_db_url), api_secret=api_secret)
        return TestClient(app)

    return _factory


@pytest.fixture
def client(app_client_factory, pipeline_config: PipelineConfig):
    """API test client with lifespan events run."""
    with app_client_factory(pipeline_config) as test_client:
        yield test_client
