"""
Pipeline exception taxonomy and error message sanitization.

Every failure the ingestion pipeline can surface is a PipelineError subclass
carrying the HTTP status it maps to. Internal details (paths, encoder output)
are logged but never returned to API clients.
"""
import logging
import re
from typing import Iterable, Optional

from config import ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for all errors raised by the ingestion pipeline."""

    status_code = 500
    public_message = "An error occurred while processing your request. Please try again."

    def __init__(self, message: str = "", public_message: Optional[str] = None):
        super().__init__(message or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class InputError(PipelineError):
    """Missing file, disallowed type or otherwise invalid upload."""

    status_code = 400
    public_message = "Invalid upload."

    def __init__(self, message: str):
        # Input errors describe the caller's mistake, so the message is safe to return
        super().__init__(message, public_message=message)


def format_size_limit(size: int) -> str:
    """Human-readable byte limit: MB from 1 MB up, KB below that."""
    if size >= 1024 * 1024:
        return f"{size / (1024 * 1024):.0f} MB"
    if size >= 1024:
        return f"{size / 1024:.0f} KB"
    return f"{size} bytes"


class FileTooLargeError(InputError):
    """Upload exceeds the configured size ceiling."""

    status_code = 413

    def __init__(self, max_size: int):
        super().__init__(f"File too large. Maximum upload size is {format_size_limit(max_size)}")
        self.max_size = max_size


class ProbeError(PipelineError):
    """Prober timed out or failed. Never surfaced; duration degrades to 0."""

    public_message = "Could not read video file. The file may be corrupted or in an unsupported format."


class EncodeError(PipelineError):
    """One or more rendition jobs failed or timed out."""

    public_message = "Video transcoding failed. Please try uploading again."

    def __init__(
        self,
        message: str,
        timed_out: bool = False,
        failed_renditions: Iterable[str] = (),
        jobs: Iterable = (),
    ):
        super().__init__(message)
        self.timed_out = timed_out
        self.failed_renditions = list(failed_renditions)
        self.jobs = list(jobs)
        if timed_out:
            self.status_code = 408
            self.public_message = "Video processing timed out. Please try again with a shorter video."


class EncoderUnavailableError(EncodeError):
    """The encoder executable itself cannot be invoked."""

    public_message = "Video processing is currently unavailable."


class PersistenceError(PipelineError):
    """Catalog read or write failed."""

    public_message = "A database error occurred. Please try again."


class NotFoundError(PipelineError):
    """Requested asset does not exist."""

    status_code = 404
    public_message = "Video not found"

    def __init__(self, asset_id: str):
        super().__init__(f"Asset {asset_id} not found")
        self.asset_id = asset_id


class StorageUnavailableError(PipelineError):
    """Upload storage could not be written (read-only mount, full disk, permissions)."""

    status_code = 503
    public_message = "Video storage temporarily unavailable. Please try again later."


class CleanupError(PipelineError):
    """Cleanup could not remove an artifact. Logged, never returned to callers."""


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r"/home/\w+/",  # Home directory paths
    r"/mnt/\w+/",  # Mount paths
    r"/tmp/\w+",  # Temp paths
    r"/var/\w+/",  # Var paths
    r"line \d+",  # Line numbers in stack traces
    r'File "[^"]+\.py"',  # Python file paths
    r"ffmpeg:.*\.\w+",  # FFmpeg with file paths
    r"ffprobe:.*\.\w+",  # FFprobe with file paths
    r"Permission denied",
    r"No such file or directory",
    r"UNIQUE constraint failed",
    r"sqlite3?\.",
]


def truncate_error(message: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """Truncate an error message to max_length, marking the cut with '...'."""
    if message is None:
        return None
    if len(message) <= max_length:
        return message
    if max_length <= 3:
        return message[:max_length]
    return message[: max_length - 3] + "..."


def sanitize_error_message(error: Optional[str], log_original: bool = True, context: str = "") -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "asset_id=abc")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return PipelineError.public_message

    # Short messages without path-like segments are considered safe
    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return PipelineError.public_message


def public_error_message(exc: PipelineError) -> str:
    """
    Message to return to the client for a pipeline error.

    Input errors describe the caller's own request and are returned as-is.
    Any other message goes through sanitize_error_message, since callers may
    override public_message per instance.
    """
    if isinstance(exc, InputError):
        return exc.public_message
    return sanitize_error_message(exc.public_message, log_original=False) or PipelineError.public_message
