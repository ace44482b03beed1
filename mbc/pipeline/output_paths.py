import os
import logging
import threading
from pathlib import Path
from typing import Optional, Set
from mbc.domain.errors import CollisionExhausted
from mbc.domain.models import CaptureInstant, MediaItem, MediaKind, OutputLayout, OutputOptions

logger = logging.getLogger(__name__)

UNKNOWN_PERIOD_DIR = "Unknown_Date"
UNKNOWN_NAME = "unknown"
MAX_COLLISION_ATTEMPTS = 1_000_000


def _normalize_extension(ext: str) -> str:
    ext = ext.lower()
    return ext if ext.startswith(".") else f".{ext}"


class OutputPathPlanner:
    """Computes collision-free destinations for one run.

    The planner owns the run's reservation set, so a single instance must be
    shared by every worker of the run.
    """

    def __init__(self, options: OutputOptions):
        self.options = options
        self._reserved: Set[str] = set()
        self._lock = threading.Lock()

    def target_extension(self, item: MediaItem, converts: bool = False) -> str:
        # Mandatory conversions always take the target format
        if self.options.preserve_extension and not converts:
            return item.source_path.suffix.lower()
        if item.kind == MediaKind.IMAGE:
            return _normalize_extension(self.options.target_image_ext)
        return _normalize_extension(self.options.target_video_ext)

    def target_directory(self, item: MediaItem, capture: Optional[CaptureInstant]) -> Path:
        root = self.options.output_root
        layout = self.options.layout
        if layout == OutputLayout.FLATTEN:
            return root
        if layout == OutputLayout.ORGANIZE_BY_PERIOD:
            if capture is None:
                return root / UNKNOWN_PERIOD_DIR
            return root / capture.local.period_token(self.options.period)
        try:
            relative = item.source_path.parent.relative_to(self.options.source_root)
        except ValueError:
            # Item outside the source root lands at the top of the output
            relative = Path()
        return root / relative

    def base_name(self, item: MediaItem, capture: Optional[CaptureInstant]) -> str:
        if self.options.rename_by_date:
            return capture.local.filename_token() if capture else UNKNOWN_NAME
        return item.source_path.stem

    def plan(self, item: MediaItem, capture: Optional[CaptureInstant], converts: bool = False) -> Path:
        """Returns a path that is neither on disk nor reserved, and reserves it.

        `converts` marks items that are transcoded even when the run keeps
        source extensions.
        """
        directory = self.target_directory(item, capture)
        stem = self.base_name(item, capture)
        ext = self.target_extension(item, converts)

        with self._lock:
            for counter in range(MAX_COLLISION_ATTEMPTS):
                name = f"{stem}{ext}" if counter == 0 else f"{stem}_{counter}{ext}"
                candidate = directory / name
                key = os.path.normcase(str(candidate))
                if key in self._reserved or candidate.exists():
                    continue
                self._reserved.add(key)
                if counter:
                    logger.debug(f"PATH_COLLISION: {item.source_path.name} -> {name}")
                return candidate

        raise CollisionExhausted(
            f"No free name for {stem}{ext} in {directory} after {MAX_COLLISION_ATTEMPTS} attempts"
        )
