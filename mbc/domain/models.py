import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional
from pydantic import BaseModel, ConfigDict, Field


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class CaptureSource(str, Enum):
    SIDECAR = "sidecar"
    EMBEDDED_METADATA = "embedded-metadata"
    CONTAINER_METADATA = "container-metadata"
    FILESYSTEM_MTIME = "filesystem-mtime"


class OutputLayout(str, Enum):
    MIRROR = "mirror"
    FLATTEN = "flatten"
    ORGANIZE_BY_PERIOD = "organize_by_period"


class PeriodGranularity(str, Enum):
    YEAR = "year"
    MONTH = "month"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class LocalDateTime:
    """Local wall-clock calendar fields of a capture instant."""

    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int

    @classmethod
    def from_naive(cls, value: datetime) -> "LocalDateTime":
        return cls(value.year, value.month, value.day, value.hour, value.minute, value.second)

    def filename_token(self) -> str:
        return (
            f"{self.year:04d}{self.month:02d}{self.day:02d}-"
            f"{self.hour:02d}{self.minute:02d}{self.second:02d}"
        )

    def period_token(self, granularity: PeriodGranularity) -> str:
        if granularity == PeriodGranularity.YEAR:
            return f"{self.year:04d}"
        return f"{self.year:04d}-{self.month:02d}"


def to_local(instant: datetime, offset_minutes: int) -> LocalDateTime:
    """Shift an absolute instant by a UTC offset and return the local fields.

    Naive datetimes are taken as UTC.
    """
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    shifted = instant.astimezone(timezone.utc) + timedelta(minutes=offset_minutes)
    return LocalDateTime.from_naive(shifted.replace(tzinfo=None))


class MediaItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_path: Path
    kind: MediaKind
    size_bytes: int = Field(ge=0)


class CaptureInstant(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    instant: datetime
    local: LocalDateTime
    utc_offset_minutes: int
    source: CaptureSource


class OutputOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_root: Path
    output_root: Path
    layout: OutputLayout = OutputLayout.MIRROR
    period: PeriodGranularity = PeriodGranularity.MONTH
    rename_by_date: bool = False
    target_image_ext: str = ".webp"
    target_video_ext: str = ".mp4"
    preserve_extension: bool = False


class QualityParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    image_quality: int = Field(default=75, ge=1, le=100)
    crf: int = Field(default=22, ge=0, le=51)
    preset: str = "veryfast"
    threads: int = Field(default=0, ge=0)


TuningFn = Callable[[int, str, int], List[str]]


@dataclass(frozen=True)
class EncoderProfile:
    id: str
    display_name: str
    codec_id: str
    tuning: TuningFn = field(repr=False, compare=False)
    hardware: bool = True
    available: bool = False

    def tune(self, quality: int, preset: str = "veryfast", threads: int = 0) -> List[str]:
        return self.tuning(quality, preset, threads)


@dataclass(frozen=True)
class TranscodeResult:
    original_size: int
    compressed_size: int


class CompressionJob(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    item: MediaItem
    output_path: Optional[Path] = None
    encoder_profile: Optional[EncoderProfile] = None
    capture: Optional[CaptureInstant] = None
    status: JobStatus = JobStatus.PENDING
    output_size_bytes: Optional[int] = None
    kept_original: bool = False
    note: Optional[str] = None
    error_message: Optional[str] = None


class SummaryReport(BaseModel):
    total: int
    processed: int
    succeeded: int
    failed: int
    total_original_bytes: int
    total_compressed_bytes: int
    elapsed_seconds: float
    cancelled: bool = False

    @property
    def saved_bytes(self) -> int:
        return self.total_original_bytes - self.total_compressed_bytes

    @property
    def savings_ratio(self) -> float:
        if self.total_original_bytes <= 0:
            return 0.0
        return self.saved_bytes / self.total_original_bytes


class RunState:
    """Counters shared by every job of one run.

    Workers run on OS threads, so every update goes through the lock.
    """

    def __init__(self, total: int = 0):
        self._lock = threading.Lock()
        self.total = total
        self.processed_count = 0
        self.succeeded_count = 0
        self.failed_count = 0
        self.total_original_bytes = 0
        self.total_compressed_bytes = 0
        self.cancel_requested = False

    def record_success(self, original_size: int, compressed_size: int) -> int:
        with self._lock:
            self.processed_count += 1
            self.succeeded_count += 1
            self.total_original_bytes += original_size
            self.total_compressed_bytes += compressed_size
            return self.processed_count

    def record_failure(self, original_size: int = 0, written_size: int = 0) -> int:
        with self._lock:
            self.processed_count += 1
            self.failed_count += 1
            self.total_original_bytes += original_size
            self.total_compressed_bytes += written_size
            return self.processed_count

    def mark_cancelled(self):
        with self._lock:
            self.cancel_requested = True

    def to_summary(self, elapsed_seconds: float) -> SummaryReport:
        with self._lock:
            return SummaryReport(
                total=self.total,
                processed=self.processed_count,
                succeeded=self.succeeded_count,
                failed=self.failed_count,
                total_original_bytes=self.total_original_bytes,
                total_compressed_bytes=self.total_compressed_bytes,
                elapsed_seconds=elapsed_seconds,
                cancelled=self.cancel_requested,
            )
