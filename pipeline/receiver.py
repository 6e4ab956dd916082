"""
Upload ingestion: validate, store, transcode, assemble, persist.

UploadReceiver is the single entry point for a new upload. Validation
happens before anything reaches disk; once the temp file exists, every
failure goes through the cleanup coordinator before the original error
is re-raised, so a failed upload leaves neither files nor a catalog row.
"""

import asyncio
import logging
import mimetypes
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from api.catalog import CatalogStore, RenditionDescriptor, VideoAsset
from api.enums import AssetStatus
from api.errors import (
    EncoderUnavailableError,
    FileTooLargeError,
    InputError,
    PipelineError,
    StorageUnavailableError,
)
from api.metrics import UPLOAD_BYTES_TOTAL, UPLOADS_TOTAL
from config import PipelineConfig
from pipeline.cleanup import CleanupCoordinator
from pipeline.manifest import MASTER_PLAYLIST_NAME, write_master_manifest
from pipeline.prober import probe_duration
from pipeline.transcoder import TranscodeJob, TranscodeOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = ".mp4"
MAX_FILENAME_LENGTH = 255
# Allowance for multipart framing and form fields on top of the file itself
MULTIPART_OVERHEAD = 1024 * 1024


@dataclass
class SourceUpload:
    """A validated upload sitting in the temp directory."""

    temp_path: Path
    size: int
    mime_type: str
    original_filename: str

    @property
    def extension(self) -> str:
        ext = Path(self.original_filename).suffix.lower()
        if ext:
            return ext
        return mimetypes.guess_extension(self.mime_type) or DEFAULT_EXTENSION


@dataclass
class UploadResult:
    asset: VideoAsset
    stream_base_url: str
    master_playlist_url: Optional[str] = None
    jobs: List[TranscodeJob] = field(default_factory=list)


def normalize_mime_type(content_type: Optional[str]) -> str:
    """Strip parameters and case from a Content-Type value."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def check_content_length(content_length: Optional[str], max_size: int, overhead: int = MULTIPART_OVERHEAD) -> None:
    """
    Reject an upload early from its Content-Length header.

    The header covers the whole multipart body (boundaries, part headers,
    form fields), so only bodies larger than max_size + overhead are refused
    here. The exact file size is enforced while streaming. A missing or
    malformed header is not an error.
    """
    if content_length:
        try:
            declared = int(content_length)
        except ValueError:
            return
        if declared > max_size + overhead:
            raise FileTooLargeError(max_size)


async def save_upload_with_size_limit(file, upload_path: Path, max_size: int, chunk_size: int = 1024 * 1024) -> int:
    """
    Stream an upload to disk with size validation.
    Returns the total bytes written.

    The partial file is removed on any failure.

    Raises:
        FileTooLargeError: If the stream exceeds max_size
        StorageUnavailableError: If the file cannot be written
    """
    total_size = 0
    try:
        with open(upload_path, "wb") as f:
            while True:
                chunk = await file.read(chunk_size)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > max_size:
                    raise FileTooLargeError(max_size)
                f.write(chunk)
    except FileTooLargeError:
        upload_path.unlink(missing_ok=True)
        raise
    except OSError as e:
        upload_path.unlink(missing_ok=True)
        logger.warning(f"Storage error during upload to {upload_path}: {e}")
        raise StorageUnavailableError(str(e)) from e
    except BaseException:
        upload_path.unlink(missing_ok=True)
        raise

    return total_size


class UploadReceiver:
    """
    Drives one upload through the whole pipeline.

    Collaborators are injected so tests can supply their own catalog,
    orchestrator or cleanup coordinator.
    """

    def __init__(
        self,
        config: PipelineConfig,
        catalog: CatalogStore,
        orchestrator: Optional[TranscodeOrchestrator] = None,
        cleanup: Optional[CleanupCoordinator] = None,
    ):
        self.config = config
        self.catalog = catalog
        self.orchestrator = orchestrator or TranscodeOrchestrator(config)
        self.cleanup = cleanup or CleanupCoordinator()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_mime_type(self, content_type: Optional[str]) -> str:
        mime_type = normalize_mime_type(content_type)
        if mime_type not in self.config.allowed_mime_types:
            allowed = ", ".join(sorted(self.config.allowed_mime_types))
            raise InputError(f"Invalid file type '{mime_type or 'unknown'}'. Allowed: {allowed}")
        return mime_type

    def validate_metadata(
        self, filename: str, title: Optional[str], description: Optional[str]
    ) -> Tuple[str, str]:
        """Return (title, description), defaulting the title to the filename stem."""
        title = (title or "").strip() or Path(filename).stem or "Untitled"
        description = (description or "").strip()
        if len(title) > self.config.max_title_length:
            raise InputError(f"Title must be {self.config.max_title_length} characters or less")
        if len(description) > self.config.max_description_length:
            raise InputError(f"Description must be {self.config.max_description_length} characters or less")
        return title, description

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def receive(
        self,
        file,
        title: Optional[str] = None,
        description: Optional[str] = None,
        content_length: Optional[str] = None,
    ) -> UploadResult:
        """
        Validate and store an uploaded file, then run the pipeline on it.

        Args:
            file: Upload object with ``filename``, ``content_type`` and async ``read(n)``
                (a Starlette UploadFile in production)
            title: Optional title; defaults to the filename stem
            description: Optional description
            content_length: Raw Content-Length header of the request, if any

        Raises:
            InputError / FileTooLargeError: Invalid upload, nothing kept on disk
            EncodeError, PersistenceError: Pipeline failure, all artifacts removed
        """
        try:
            if file is None or not getattr(file, "filename", None):
                raise InputError("No video file provided")
            check_content_length(content_length, self.config.max_upload_size)
            mime_type = self.validate_mime_type(file.content_type)
            original_filename = Path(file.filename).name[:MAX_FILENAME_LENGTH]
            title, description = self.validate_metadata(original_filename, title, description)
        except InputError:
            UPLOADS_TOTAL.labels(result="rejected").inc()
            raise

        source = await self._store_temp(file, mime_type, original_filename)
        return await self.process(source, title, description)

    async def _store_temp(self, file, mime_type: str, original_filename: str) -> SourceUpload:
        self.config.temp_dir.mkdir(parents=True, exist_ok=True)
        ext = Path(original_filename).suffix.lower() or DEFAULT_EXTENSION
        temp_path = self.config.temp_dir / f"{uuid.uuid4().hex}{ext}"
        try:
            size = await save_upload_with_size_limit(
                file, temp_path, self.config.max_upload_size, self.config.upload_chunk_size
            )
        except InputError:
            UPLOADS_TOTAL.labels(result="rejected").inc()
            raise
        if size == 0:
            temp_path.unlink(missing_ok=True)
            UPLOADS_TOTAL.labels(result="rejected").inc()
            raise InputError("Uploaded file is empty")

        UPLOAD_BYTES_TOTAL.inc(size)
        logger.info(f"Received upload {original_filename} ({size} bytes, {mime_type})")
        return SourceUpload(temp_path=temp_path, size=size, mime_type=mime_type, original_filename=original_filename)

    async def process(self, source: SourceUpload, title: str, description: str = "") -> UploadResult:
        """
        Run probe + transcode, write the master playlist and persist the asset.

        The temp file is consumed: it is deleted on success and on failure.
        """
        asset_id = uuid.uuid4().hex
        asset_dir = self.config.uploads_dir / asset_id

        try:
            asset_dir.mkdir(parents=True)
        except OSError as e:
            # Never clean up a directory we did not create
            self.cleanup.cleanup(source.temp_path, None)
            UPLOADS_TOTAL.labels(result="failed").inc()
            raise StorageUnavailableError(f"Could not create {asset_dir}: {e}") from e

        try:
            probe_task = asyncio.create_task(
                probe_duration(source.temp_path, timeout=self.config.probe_timeout, prober=self.config.ffprobe_path)
            )
            try:
                jobs = await self.orchestrator.run(source.temp_path, asset_dir)
            except EncoderUnavailableError as e:
                if not self.config.encoder_fallback:
                    probe_task.cancel()
                    await asyncio.gather(probe_task, return_exceptions=True)
                    raise
                logger.warning(f"Encoder unavailable ({e}), storing {source.original_filename} unprocessed")
                duration = await probe_task
                result = await self._store_unprocessed(source, asset_id, asset_dir, title, description, duration)
                UPLOADS_TOTAL.labels(result="fallback").inc()
                return result
            except BaseException:
                probe_task.cancel()
                await asyncio.gather(probe_task, return_exceptions=True)
                raise

            duration = await probe_task
            write_master_manifest(asset_dir, self.config.ladder)

            asset = VideoAsset(
                id=asset_id,
                title=title,
                description=description,
                original_filename=source.original_filename,
                size_bytes=source.size,
                mime_type=source.mime_type,
                duration=duration,
                renditions=[RenditionDescriptor.from_rendition(job.rendition) for job in jobs],
                status=AssetStatus.READY,
            )
            await self.catalog.create(asset)
        except BaseException as e:
            if isinstance(e, PipelineError):
                logger.error(f"Upload {asset_id} failed ({type(e).__name__}): {e}")
            else:
                logger.exception(f"Upload {asset_id} failed unexpectedly: {e}")
            self.cleanup.cleanup(source.temp_path, asset_dir)
            UPLOADS_TOTAL.labels(result="failed").inc()
            raise

        self.cleanup.cleanup(source.temp_path, None)
        UPLOADS_TOTAL.labels(result="success").inc()
        logger.info(f"Asset {asset_id} ready with {len(asset.renditions)} renditions ({duration}s)")
        return UploadResult(
            asset=asset,
            stream_base_url=self.stream_base_url(asset_id),
            master_playlist_url=self.master_playlist_url(asset_id),
            jobs=jobs,
        )

    async def _store_unprocessed(
        self, source: SourceUpload, asset_id: str, asset_dir: Path, title: str, description: str, duration: int
    ) -> UploadResult:
        # Rendition folders may exist if the encoder failed to spawn mid-run
        for rendition in self.config.ladder:
            shutil.rmtree(asset_dir / rendition.folder_name, ignore_errors=True)

        original_name = f"original{source.extension}"
        shutil.move(str(source.temp_path), str(asset_dir / original_name))

        asset = VideoAsset(
            id=asset_id,
            title=title,
            description=description,
            original_filename=source.original_filename,
            size_bytes=source.size,
            mime_type=source.mime_type,
            duration=duration,
            renditions=[],
            status=AssetStatus.UNPROCESSED,
            source_path=original_name,
        )
        await self.catalog.create(asset)
        return UploadResult(asset=asset, stream_base_url=self.stream_base_url(asset_id))

    # ------------------------------------------------------------------
    # URLs
    # ------------------------------------------------------------------

    def stream_base_url(self, asset_id: str) -> str:
        return f"{self.config.url_prefix}/stream/{asset_id}/"

    def master_playlist_url(self, asset_id: str) -> str:
        return f"{self.stream_base_url(asset_id)}{MASTER_PLAYLIST_NAME}"
