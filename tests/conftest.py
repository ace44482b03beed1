import pytest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock
from mbc.config.models import AppConfig
from mbc.domain.errors import TranscodeFailure
from mbc.domain.models import (
    CaptureInstant,
    CaptureSource,
    LocalDateTime,
    MediaItem,
    MediaKind,
    TranscodeResult,
)
from mbc.infrastructure.event_bus import EventBus
from mbc.infrastructure.ffmpeg import temp_path_for
from mbc.pipeline.encoders import ENCODER_PROFILES

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config():
    """Returns a sample AppConfig object for testing."""
    return AppConfig(
        general={
            "debug": False,
            "recursive": True,
            "preserve_timestamps": True,
        },
        output={
            "layout": "mirror",
            "rename_by_date": False,
            "image_format": "webp",
            "video_container": "mp4",
        },
        encoding={
            "encoder": "auto",
            "image_quality": 70,
            "crf": 23,
            "cpu_fallback": True,
        },
        concurrency={
            "image_jobs": 2,
            "video_jobs": 1,
        },
    )


@pytest.fixture
def event_bus():
    return EventBus()


# ============================================================================
# Domain helpers
# ============================================================================

def make_item(path: Path, kind: MediaKind = MediaKind.IMAGE) -> MediaItem:
    size = path.stat().st_size if path.exists() else 0
    return MediaItem(source_path=path, kind=kind, size_bytes=size)


def make_capture(year, month, day, hour, minute, second, offset_minutes=0) -> CaptureInstant:
    local = LocalDateTime(year, month, day, hour, minute, second)
    instant = datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
    return CaptureInstant(
        instant=instant,
        local=local,
        utc_offset_minutes=offset_minutes,
        source=CaptureSource.EMBEDDED_METADATA,
    )


def write_bytes(path: Path, size: int, fill: bytes = b"x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(fill * size)
    return path


@pytest.fixture
def cpu_profile():
    return ENCODER_PROFILES[-1]


@pytest.fixture
def nvenc_profile():
    from dataclasses import replace
    return replace(ENCODER_PROFILES[0], available=True)


@pytest.fixture
def fake_negotiator(cpu_profile):
    negotiator = MagicMock()
    negotiator.negotiate.return_value = cpu_profile
    negotiator.software_profile.return_value = cpu_profile
    return negotiator


@pytest.fixture
def quiet_resolver():
    """Resolver collaborators that never find metadata (mtime wins)."""
    from mbc.pipeline.capture_date import CaptureDateResolver
    exif = MagicMock()
    exif.read_embedded_metadata.return_value = None
    ffprobe = MagicMock()
    ffprobe.read_container_metadata.return_value = None
    return CaptureDateResolver(exif, ffprobe, offset_provider=lambda _instant: 0)


# ============================================================================
# Fake transcoders
# ============================================================================

class FakeTranscoder:
    """Writes `ratio * source size` bytes, or fails for names listed in fail_names."""

    def __init__(self, ratio: float = 0.4, fail_names=(), leave_partial: bool = False):
        self.ratio = ratio
        self.fail_names = set(fail_names)
        self.leave_partial = leave_partial
        self.calls = []

    def transcode(self, input_path, output_path, profile=None, quality=None, on_progress=None):
        self.calls.append((Path(input_path), Path(output_path), profile))
        if Path(input_path).name in self.fail_names:
            if self.leave_partial:
                temp_path_for(Path(output_path)).write_bytes(b"partial")
                Path(output_path).write_bytes(b"partial")
            raise TranscodeFailure(f"fake codec failed on {Path(input_path).name}", Path(input_path))
        original = Path(input_path).stat().st_size
        written = max(1, int(original * self.ratio))
        Path(output_path).write_bytes(b"c" * written)
        if on_progress:
            on_progress(100.0)
        return TranscodeResult(original_size=original, compressed_size=written)


@pytest.fixture
def fake_image_transcoder():
    return FakeTranscoder(ratio=0.4)


@pytest.fixture
def fake_video_transcoder():
    return FakeTranscoder(ratio=0.4)


@pytest.fixture
def item_factory():
    return make_item


@pytest.fixture
def capture_factory():
    return make_capture


@pytest.fixture
def write_file():
    return write_bytes


@pytest.fixture
def transcoder_factory():
    return FakeTranscoder
