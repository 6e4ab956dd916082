"""
Duration probing with ffprobe.

Metadata is best-effort: a file that cannot be probed still gets encoded,
it just carries a duration of 0.
"""

import asyncio
import json
import logging
import math
from pathlib import Path
from typing import Any

from api.errors import ProbeError
from api.metrics import PROBE_FAILURES_TOTAL

logger = logging.getLogger(__name__)


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize a duration value reported by ffprobe.

    Raises:
        ProbeError: If the duration is missing, not numeric, negative, NaN or infinite
    """
    if duration is None:
        raise ProbeError("ffprobe reported no duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise ProbeError(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise ProbeError(f"Invalid duration value: {duration}")

    if duration < 0:
        raise ProbeError(f"Invalid duration: {duration} seconds (must not be negative)")

    return float(duration)


async def get_media_duration(input_path: Path, timeout: float = 30.0, prober: str = "ffprobe") -> float:
    """Get the container duration in seconds using ffprobe (async with timeout).

    Args:
        input_path: Path to the media file
        timeout: Maximum time to wait for ffprobe (default 30 seconds)
        prober: ffprobe executable name or path

    Returns:
        Duration in seconds as reported by the container

    Raises:
        ProbeError: If ffprobe is missing, fails, times out, or reports an invalid duration
    """
    cmd = [prober, "-v", "quiet", "-print_format", "json", "-show_format", str(input_path)]

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        raise ProbeError(f"Could not start {prober}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        raise ProbeError(f"ffprobe timed out after {timeout}s")
    finally:
        # Reached with a live process on timeout or when the caller cancels us
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    if process.returncode != 0:
        raise ProbeError(f"ffprobe exited with code {process.returncode}: {stderr.decode('utf-8', errors='ignore')}")

    try:
        data = json.loads(stdout.decode("utf-8", errors="ignore"))
    except json.JSONDecodeError as e:
        raise ProbeError(f"ffprobe returned invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProbeError("ffprobe returned unexpected output")

    return validate_duration((data.get("format") or {}).get("duration"))


async def probe_duration(input_path: Path, timeout: float = 30.0, prober: str = "ffprobe") -> int:
    """
    Return the media duration rounded to whole seconds, or 0 if it cannot be determined.

    Never raises for probe failures; they are logged and counted.
    """
    try:
        duration = await get_media_duration(input_path, timeout=timeout, prober=prober)
    except ProbeError as e:
        PROBE_FAILURES_TOTAL.inc()
        logger.warning(f"Duration probe failed for {Path(input_path).name}, using 0: {e}")
        return 0
    return int(math.floor(duration + 0.5))
