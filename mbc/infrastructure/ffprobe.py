import subprocess
import json
from pathlib import Path
from typing import Dict, Any, Optional
from mbc.domain.errors import MetadataError

class FFprobeAdapter:
    """Wrapper around ffprobe to read container-level metadata."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout_s: float = 30.0):
        self.ffprobe_path = ffprobe_path
        self.timeout_s = timeout_s

    @staticmethod
    def _find_creation_time(data: Dict[str, Any]) -> Optional[str]:
        fmt_tags = (data.get("format") or {}).get("tags") or {}
        value = fmt_tags.get("creation_time")
        if value:
            return str(value)
        for stream in data.get("streams", []) or []:
            tags = stream.get("tags") or {}
            if tags.get("creation_time"):
                return str(tags["creation_time"])
        return None

    def read_container_metadata(self, file_path: Path) -> Optional[Dict[str, Any]]:
        """Executes ffprobe and returns the container creation time, or None if it reports nothing."""
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(file_path)
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout_s)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise MetadataError(f"ffprobe could not run for {file_path}: {e}") from e
        if result.returncode != 0:
            raise MetadataError(f"ffprobe failed for {file_path}: {result.stderr}")

        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise MetadataError(f"ffprobe returned invalid JSON for {file_path}: {e}") from e
        if not data:
            return None

        return {"creation_time": self._find_creation_time(data)}
