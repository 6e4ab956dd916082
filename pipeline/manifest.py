"""HLS master playlist generation."""

import logging
import os
from pathlib import Path
from typing import Sequence

from config import Rendition

logger = logging.getLogger(__name__)

MASTER_PLAYLIST_NAME = "master.m3u8"

# H.264 Constrained Baseline level 3.0 + AAC-LC, matching the encoder settings
DEFAULT_CODECS = "avc1.42e01e,mp4a.40.2"


def build_master_manifest(ladder: Sequence[Rendition], codecs: str = DEFAULT_CODECS) -> str:
    """
    Render the master playlist for a ladder.

    Variants are listed in ladder order; bandwidth is the rendition's video
    bitrate in bits per second.
    """
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-INDEPENDENT-SEGMENTS"]
    for rendition in ladder:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={rendition.video_bitrate * 1000},"
            f"RESOLUTION={rendition.resolution},"
            f'CODECS="{codecs}"'
        )
        lines.append(rendition.playlist_path)
    return "\n".join(lines) + "\n"


def write_master_manifest(asset_dir: Path, ladder: Sequence[Rendition]) -> Path:
    """Write master.m3u8 into asset_dir atomically and return its path."""
    asset_dir = Path(asset_dir)
    master_path = asset_dir / MASTER_PLAYLIST_NAME
    temp_path = asset_dir / f".{MASTER_PLAYLIST_NAME}.tmp"

    temp_path.write_text(build_master_manifest(ladder))
    os.replace(temp_path, master_path)

    logger.info(f"Wrote master playlist with {len(ladder)} variants to {asset_dir.name}/{MASTER_PLAYLIST_NAME}")
    return master_path
