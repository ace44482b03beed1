import os
from pathlib import Path
from typing import Iterable, List, Optional, Set
from mbc.domain.errors import ScanError
from mbc.domain.models import MediaItem, MediaKind

IMAGE_EXTENSIONS = [".jpg", ".jpeg", ".png", ".webp", ".avif", ".tiff", ".gif", ".heic", ".heif"]
VIDEO_EXTENSIONS = [".mp4", ".mkv", ".avi", ".mov", ".wmv", ".flv", ".webm", ".3gp", ".m4v", ".mpeg", ".mpg"]


def detect_kind(path: Path) -> Optional[MediaKind]:
    """Classifies a file by extension; None for anything that is not media."""
    suffix = path.suffix.lower()
    if suffix in IMAGE_EXTENSIONS:
        return MediaKind.IMAGE
    if suffix in VIDEO_EXTENSIONS:
        return MediaKind.VIDEO
    return None


class MediaScanner:
    """Scans a directory for image and video files."""

    def __init__(self, exclude_dirs: Optional[Iterable[Path]] = None, min_size_bytes: int = 0):
        self.exclude_dirs = [Path(p).resolve() for p in (exclude_dirs or [])]
        self.min_size_bytes = min_size_bytes

    def _is_excluded(self, directory: Path) -> bool:
        resolved = directory.resolve()
        return any(resolved == excluded for excluded in self.exclude_dirs)

    def scan(
        self,
        root_dir: Path,
        recursive: bool = True,
        kind_filter: Optional[Set[MediaKind]] = None,
    ) -> List[MediaItem]:
        """Returns media items under root_dir in deterministic (sorted) order."""
        root_dir = Path(root_dir)
        if not root_dir.exists():
            raise ScanError(f"Directory not found: {root_dir}")
        if not root_dir.is_dir():
            raise ScanError(f"Not a directory: {root_dir}")

        kinds = kind_filter or {MediaKind.IMAGE, MediaKind.VIDEO}
        items: List[MediaItem] = []

        for root, dirs, files in os.walk(str(root_dir)):
            root_path = Path(root)

            if not recursive:
                dirs[:] = []
            else:
                # Ensure deterministic traversal and never descend into our own output
                dirs[:] = sorted(d for d in dirs if not self._is_excluded(root_path / d))
            files.sort()

            for file_name in files:
                file_path = root_path / file_name
                kind = detect_kind(file_path)
                if kind is None or kind not in kinds:
                    continue

                try:
                    file_size = file_path.stat().st_size
                except OSError:
                    # Skip files we can't access
                    continue
                if file_size < self.min_size_bytes:
                    continue

                items.append(MediaItem(source_path=file_path, kind=kind, size_bytes=file_size))

        return items
