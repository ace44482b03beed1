import exiftool
import threading
from pathlib import Path
from typing import Optional, List, Dict, Any
from mbc.domain.errors import MetadataError

CAPTURE_TAGS = [
    "EXIF:DateTimeOriginal",
    "EXIF:CreateDate",
    "EXIF:ModifyDate",
    "EXIF:OffsetTimeOriginal",
    "EXIF:OffsetTime",
]


class ExifToolAdapter:
    """Wrapper around pyexiftool for embedded image metadata."""

    def __init__(self):
        self.et = exiftool.ExifTool()
        self._lock = threading.Lock()

    @staticmethod
    def get_tag(data: Dict[str, Any], tags: List[str]) -> Optional[Any]:
        """Tries to find the first available tag from a list of aliases."""
        for tag in tags:
            if tag in data:
                return data[tag]
            short = tag.split(":", 1)[-1]
            if short in data:
                return data[short]
        return None

    def read_embedded_metadata(self, file_path: Path) -> Optional[Dict[str, Any]]:
        """Returns the capture-related EXIF tags of an image, or None if it has none."""
        args = [f"-{tag}" for tag in CAPTURE_TAGS]
        try:
            # One exiftool process serves every worker thread
            with self._lock:
                if not self.et.running:
                    self.et.run()
                metadata_list = self.et.execute_json(*args, str(file_path))
        except Exception as e:
            raise MetadataError(f"ExifTool failed for {file_path}: {e}") from e

        if not metadata_list:
            return None
        data = {k: v for k, v in metadata_list[0].items() if k != "SourceFile"}
        return data or None

    def close(self):
        with self._lock:
            if self.et.running:
                self.et.terminate()
