"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class AssetStatus(str, Enum):
    """Catalog status of a video asset."""

    READY = "ready"  # All renditions encoded, master manifest written
    UNPROCESSED = "unprocessed"  # Encoder unavailable, original stored as-is


class JobStatus(str, Enum):
    """Terminal status of one rendition transcode job."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)
