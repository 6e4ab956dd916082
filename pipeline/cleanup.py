"""
Removal of artifacts left behind by a failed upload.

Cleanup runs on the error path, so it must never replace the error that
triggered it: every failure here is logged and counted, never raised.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from api.errors import CleanupError
from api.metrics import CLEANUP_ERRORS_TOTAL

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    removed: List[Path] = field(default_factory=list)
    errors: List[CleanupError] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.errors


class CleanupCoordinator:
    """Deletes the temp upload and the partially built asset directory."""

    def cleanup(self, temp_path: Optional[Path], asset_dir: Optional[Path]) -> CleanupReport:
        report = CleanupReport()
        if temp_path is not None:
            self._remove_file(Path(temp_path), report)
        if asset_dir is not None:
            self._remove_tree(Path(asset_dir), report)
        return report

    def _remove_file(self, path: Path, report: CleanupReport) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            self._record(report, "temp_file", path, e)
            return
        report.removed.append(path)
        logger.debug(f"Removed temp upload {path}")

    def _remove_tree(self, path: Path, report: CleanupReport) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            return
        except OSError as e:
            self._record(report, "asset_dir", path, e)
            return
        report.removed.append(path)
        logger.info(f"Removed partial output {path}")

    def _record(self, report: CleanupReport, target: str, path: Path, exc: BaseException) -> None:
        error = CleanupError(f"Failed to remove {path}: {exc}")
        report.errors.append(error)
        CLEANUP_ERRORS_TOTAL.labels(target=target).inc()
        logger.error(str(error))
