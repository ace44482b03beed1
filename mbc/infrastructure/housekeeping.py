import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class HousekeepingService:
    """Removes artifacts left behind by interrupted runs."""

    def cleanup_temp_files(self, directory: Path) -> int:
        """Recursively removes .tmp files (partial ffmpeg output) under the directory."""
        removed = 0
        if not directory.exists():
            return removed
        for root, dirs, files in os.walk(directory):
            for file in files:
                if file.endswith(".tmp"):
                    try:
                        (Path(root) / file).unlink()
                        removed += 1
                    except OSError as e:
                        logger.warning(f"Could not remove stale temp file {file}: {e}")
        if removed:
            logger.info(f"Housekeeping: removed {removed} stale .tmp file(s) from {directory}")
        return removed
