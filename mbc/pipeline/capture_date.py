"""Capture date resolution.

The capture instant of a file is taken from the first source that yields one:

1. Google Takeout JSON sidecar (`photoTakenTime.timestamp`, absolute UTC)
2. Embedded image metadata (EXIF DateTimeOriginal / CreateDate / ModifyDate)
3. Video container metadata (ffprobe `creation_time`, UTC)
4. Filesystem modification time

Every absolute instant is converted to local wall-clock fields with the UTC
offset in force at that instant. EXIF dates are already local and are taken
literally.
"""

import re
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from mbc.domain.errors import MetadataError
from mbc.domain.models import CaptureInstant, CaptureSource, LocalDateTime, MediaKind, to_local
from mbc.infrastructure.exif_tool import ExifToolAdapter
from mbc.infrastructure.ffprobe import FFprobeAdapter
from mbc.infrastructure.file_scanner import detect_kind

logger = logging.getLogger(__name__)

SIDECAR_SUFFIXES = (".json", ".supplemental-metadata.json")
# Takeout truncates long names; shorter prefixes match too many unrelated files
MIN_SIDECAR_BASE_LENGTH = 8

EXIF_DATE_TAGS = ["EXIF:DateTimeOriginal", "EXIF:CreateDate", "EXIF:ModifyDate"]
EXIF_OFFSET_TAGS = ["EXIF:OffsetTimeOriginal"]

_EXIF_DATE_RE = re.compile(r"^\s*(\d{4}):(\d{2}):(\d{2})[ T](\d{2}):(\d{2}):(\d{2})")
_ISO_DATE_RE = re.compile(
    r"^\s*(\d{4})-(\d{2})-(\d{2})[T ](\d{2}):(\d{2}):(\d{2})(?:\.\d+)?\s*(Z|[+-]\d{2}:?\d{2})?"
)
_OFFSET_RE = re.compile(r"^\s*([+-])(\d{2}):?(\d{2})\s*$")

OffsetProvider = Callable[[datetime], int]


def local_utc_offset_minutes(instant: datetime) -> int:
    """Host UTC offset (minutes) in force at the given instant."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    offset = instant.astimezone().utcoffset() or timedelta(0)
    return int(offset.total_seconds() // 60)


def _strip_json_suffix(name: str) -> str:
    return name[:-5] if name.lower().endswith(".json") else name


def find_sidecar(path: Path) -> Optional[Path]:
    """Locates the JSON sidecar of a media file, or None.

    Exact names win. Otherwise sidecars starting with the full file name are
    preferred over sidecars whose base name is a (long enough) prefix of the
    media base name; within each group the longest name wins.
    """
    for suffix in SIDECAR_SUFFIXES:
        candidate = path.with_name(path.name + suffix)
        if candidate.is_file():
            return candidate

    try:
        sidecars = sorted(
            entry for entry in path.parent.iterdir()
            if entry.name.lower().endswith(".json") and entry.is_file()
        )
    except OSError as e:
        logger.debug(f"Cannot list {path.parent} for sidecars: {e}")
        return None

    full_name_matches = [s for s in sidecars if s.name.startswith(path.name)]
    if full_name_matches:
        return max(full_name_matches, key=lambda s: len(s.name))

    base_matches = []
    for sidecar in sidecars:
        sidecar_base = _strip_json_suffix(sidecar.name)
        if len(sidecar_base) >= MIN_SIDECAR_BASE_LENGTH and path.stem.startswith(sidecar_base):
            base_matches.append(sidecar)
    if base_matches:
        return max(base_matches, key=lambda s: len(s.name))
    return None


def read_sidecar_timestamp(sidecar: Path) -> Optional[datetime]:
    """Returns photoTakenTime as an aware UTC datetime, or None when absent."""
    with open(sidecar, "r", encoding="utf-8") as f:
        data = json.load(f)
    taken = data.get("photoTakenTime") if isinstance(data, dict) else None
    if not isinstance(taken, dict) or taken.get("timestamp") in (None, ""):
        return None
    seconds = int(str(taken["timestamp"]).strip())
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_exif_datetime(value: Any) -> Optional[datetime]:
    """Parses `YYYY:MM:DD HH:MM:SS` into a naive datetime; None for empty or zeroed values."""
    if value is None:
        return None
    match = _EXIF_DATE_RE.match(str(value))
    if not match:
        return None
    parts = [int(p) for p in match.groups()]
    if parts[0] == 0 or parts[1] == 0 or parts[2] == 0:
        return None
    try:
        return datetime(*parts)
    except ValueError:
        return None


def parse_exif_offset(value: Any) -> Optional[int]:
    """Parses an EXIF OffsetTime value (`+02:00`) into minutes."""
    if value is None:
        return None
    match = _OFFSET_RE.match(str(value))
    if not match:
        return None
    sign, hours, minutes = match.groups()
    total = int(hours) * 60 + int(minutes)
    return -total if sign == "-" else total


def parse_container_datetime(value: Any) -> Optional[datetime]:
    """Parses an ISO-8601 container timestamp into an aware datetime (UTC when no zone)."""
    if value is None:
        return None
    match = _ISO_DATE_RE.match(str(value))
    if not match:
        return None
    *parts, zone = match.groups()
    moment = datetime(*[int(p) for p in parts])
    if not zone or zone == "Z":
        return moment.replace(tzinfo=timezone.utc)
    offset = parse_exif_offset(zone)
    return moment.replace(tzinfo=timezone(timedelta(minutes=offset or 0)))


class CaptureDateResolver:
    """Resolves the capture instant of a media file through the source chain.

    Args:
        exif_adapter: Reads embedded image metadata.
        ffprobe_adapter: Reads video container metadata.
        offset_provider: Maps an instant to the local UTC offset in minutes
            (defaults to the host time zone).
    """

    def __init__(
        self,
        exif_adapter: Optional[ExifToolAdapter],
        ffprobe_adapter: Optional[FFprobeAdapter],
        offset_provider: Optional[OffsetProvider] = None,
    ):
        self.exif_adapter = exif_adapter
        self.ffprobe_adapter = ffprobe_adapter
        self.offset_provider = offset_provider or local_utc_offset_minutes

    def _from_absolute(self, instant: datetime, source: CaptureSource) -> CaptureInstant:
        instant = instant.astimezone(timezone.utc)
        offset = self.offset_provider(instant)
        return CaptureInstant(
            instant=instant,
            local=to_local(instant, offset),
            utc_offset_minutes=offset,
            source=source,
        )

    def _from_sidecar(self, path: Path) -> Optional[CaptureInstant]:
        sidecar = find_sidecar(path)
        if sidecar is None:
            return None
        instant = read_sidecar_timestamp(sidecar)
        if instant is None:
            return None
        return self._from_absolute(instant, CaptureSource.SIDECAR)

    def _from_embedded(self, path: Path) -> Optional[CaptureInstant]:
        if self.exif_adapter is None:
            return None
        data = self.exif_adapter.read_embedded_metadata(path)
        if not data:
            return None

        local_dt = None
        for tag in EXIF_DATE_TAGS:
            local_dt = parse_exif_datetime(ExifToolAdapter.get_tag(data, [tag]))
            if local_dt:
                break
        if local_dt is None:
            return None

        offset = parse_exif_offset(ExifToolAdapter.get_tag(data, EXIF_OFFSET_TAGS))
        if offset is None:
            offset = self.offset_provider(local_dt.replace(tzinfo=timezone.utc))
        instant = (local_dt - timedelta(minutes=offset)).replace(tzinfo=timezone.utc)
        return CaptureInstant(
            instant=instant,
            local=LocalDateTime.from_naive(local_dt),
            utc_offset_minutes=offset,
            source=CaptureSource.EMBEDDED_METADATA,
        )

    def _from_container(self, path: Path) -> Optional[CaptureInstant]:
        if self.ffprobe_adapter is None:
            return None
        data = self.ffprobe_adapter.read_container_metadata(path)
        if not data:
            return None
        instant = parse_container_datetime(data.get("creation_time"))
        if instant is None:
            return None
        return self._from_absolute(instant, CaptureSource.CONTAINER_METADATA)

    def _from_mtime(self, path: Path) -> CaptureInstant:
        mtime = path.stat().st_mtime
        return self._from_absolute(
            datetime.fromtimestamp(mtime, tz=timezone.utc),
            CaptureSource.FILESYSTEM_MTIME,
        )

    def resolve(self, path: Path, kind: Optional[MediaKind] = None) -> Optional[CaptureInstant]:
        """Returns the capture instant of the file, or None if not even its mtime is readable."""
        kind = kind or detect_kind(path)

        levels = [(CaptureSource.SIDECAR, self._from_sidecar)]
        if kind == MediaKind.IMAGE:
            levels.append((CaptureSource.EMBEDDED_METADATA, self._from_embedded))
        elif kind == MediaKind.VIDEO:
            levels.append((CaptureSource.CONTAINER_METADATA, self._from_container))

        for source, reader in levels:
            try:
                capture = reader(path)
            except (MetadataError, OSError, ValueError, OverflowError) as e:
                # json.JSONDecodeError is a ValueError
                logger.debug(f"CAPTURE_DATE: {path.name} {source.value} unreadable: {e}")
                continue
            if capture is not None:
                logger.debug(f"CAPTURE_DATE: {path.name} source={source.value} local={capture.local.filename_token()}")
                return capture

        try:
            return self._from_mtime(path)
        except (OSError, ValueError, OverflowError) as e:
            logger.warning(f"CAPTURE_DATE: {path.name} has no usable date: {e}")
            return None
