import json
import os
import pytest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock
from mbc.domain.errors import MetadataError
from mbc.domain.models import CaptureSource, LocalDateTime, MediaKind
from mbc.pipeline.capture_date import (
    CaptureDateResolver,
    find_sidecar,
    local_utc_offset_minutes,
    parse_container_datetime,
    parse_exif_datetime,
    parse_exif_offset,
)

TAKEN = 1610549531  # 2021-01-13T13:12:11Z
UTC_MINUS_5 = lambda _instant: -300


def _sidecar(path: Path, timestamp=str(TAKEN)):
    path.write_text(json.dumps({"title": path.name, "photoTakenTime": {"timestamp": timestamp}}))
    return path


def _media(path: Path) -> Path:
    path.write_bytes(b"media")
    return path


def _resolver(exif_data=None, container_data=None, offset_provider=UTC_MINUS_5):
    exif = MagicMock()
    exif.read_embedded_metadata.return_value = exif_data
    ffprobe = MagicMock()
    ffprobe.read_container_metadata.return_value = container_data
    return CaptureDateResolver(exif, ffprobe, offset_provider=offset_provider), exif, ffprobe


def test_sidecar_timestamp_is_shifted_to_local_time(tmp_path):
    media = _media(tmp_path / "IMG_0001.jpg")
    _sidecar(tmp_path / "IMG_0001.jpg.json")
    resolver, exif, _ = _resolver(exif_data={"EXIF:DateTimeOriginal": "2000:01:01 00:00:00"})

    capture = resolver.resolve(media, MediaKind.IMAGE)

    assert capture.source == CaptureSource.SIDECAR
    assert capture.instant == datetime(2021, 1, 13, 13, 12, 11, tzinfo=timezone.utc)
    assert capture.local == LocalDateTime(2021, 1, 13, 8, 12, 11)
    assert capture.utc_offset_minutes == -300
    assert capture.local.filename_token() == "20210113-081211"
    exif.read_embedded_metadata.assert_not_called()


def test_sidecar_integer_timestamp(tmp_path):
    media = _media(tmp_path / "clip.mp4")
    _sidecar(tmp_path / "clip.mp4.json", timestamp=TAKEN)
    resolver, _, ffprobe = _resolver()

    capture = resolver.resolve(media, MediaKind.VIDEO)

    assert capture.source == CaptureSource.SIDECAR
    assert capture.local == LocalDateTime(2021, 1, 13, 8, 12, 11)
    ffprobe.read_container_metadata.assert_not_called()


def test_supplemental_metadata_sidecar(tmp_path):
    media = _media(tmp_path / "IMG_0002.jpg")
    sidecar = _sidecar(tmp_path / "IMG_0002.jpg.supplemental-metadata.json")

    assert find_sidecar(media) == sidecar


def test_truncated_sidecar_name_matches_by_base_prefix(tmp_path):
    media = _media(tmp_path / "PXL_20210113_131211123.jpg")
    sidecar = _sidecar(tmp_path / "PXL_20210113_1312.json")

    assert find_sidecar(media) == sidecar


def test_short_base_prefix_is_not_a_match(tmp_path):
    media = _media(tmp_path / "IMG_1234.jpg")
    _sidecar(tmp_path / "IMG.json")

    assert find_sidecar(media) is None


def test_full_name_prefix_beats_base_prefix(tmp_path):
    media = _media(tmp_path / "IMG_20210113_abcdef.jpg")
    full = _sidecar(tmp_path / "IMG_20210113_abcdef.jpg.supplemental-meta.json")
    _sidecar(tmp_path / "IMG_20210113_abc.json")

    assert find_sidecar(media) == full


def test_longest_base_prefix_wins(tmp_path):
    media = _media(tmp_path / "VACATION_PHOTO_0001.jpg")
    _sidecar(tmp_path / "VACATION.json")
    longer = _sidecar(tmp_path / "VACATION_PHOTO_00.json")

    assert find_sidecar(media) == longer


def test_broken_sidecar_falls_through_to_exif(tmp_path):
    media = _media(tmp_path / "IMG_0003.jpg")
    (tmp_path / "IMG_0003.jpg.json").write_text("{not json")
    resolver, _, _ = _resolver(exif_data={"EXIF:DateTimeOriginal": "2020:05:06 07:08:09"})

    capture = resolver.resolve(media, MediaKind.IMAGE)

    assert capture.source == CaptureSource.EMBEDDED_METADATA
    assert capture.local == LocalDateTime(2020, 5, 6, 7, 8, 9)
    # Host offset -300: local 07:08:09 is 12:08:09 UTC
    assert capture.instant == datetime(2020, 5, 6, 12, 8, 9, tzinfo=timezone.utc)


def test_sidecar_without_taken_time_falls_through(tmp_path):
    media = _media(tmp_path / "IMG_0004.jpg")
    (tmp_path / "IMG_0004.jpg.json").write_text(json.dumps({"title": "IMG_0004.jpg"}))
    resolver, _, _ = _resolver(exif_data={"EXIF:CreateDate": "2019:12:31 23:59:58"})

    capture = resolver.resolve(media, MediaKind.IMAGE)

    assert capture.source == CaptureSource.EMBEDDED_METADATA
    assert capture.local.filename_token() == "20191231-235958"


def test_exif_offset_tag_defines_absolute_instant(tmp_path):
    media = _media(tmp_path / "IMG_0005.jpg")
    resolver, _, _ = _resolver(exif_data={
        "EXIF:DateTimeOriginal": "2020:05:06 07:08:09",
        "EXIF:OffsetTimeOriginal": "+02:00",
    })

    capture = resolver.resolve(media, MediaKind.IMAGE)

    assert capture.local == LocalDateTime(2020, 5, 6, 7, 8, 9)
    assert capture.utc_offset_minutes == 120
    assert capture.instant == datetime(2020, 5, 6, 5, 8, 9, tzinfo=timezone.utc)


def test_zeroed_exif_date_is_skipped(tmp_path):
    media = _media(tmp_path / "IMG_0006.jpg")
    resolver, _, _ = _resolver(exif_data={
        "EXIF:DateTimeOriginal": "0000:00:00 00:00:00",
        "EXIF:CreateDate": "2018:02:03 04:05:06",
    })

    capture = resolver.resolve(media, MediaKind.IMAGE)

    assert capture.local == LocalDateTime(2018, 2, 3, 4, 5, 6)


def test_metadata_error_falls_back_to_mtime(tmp_path):
    media = _media(tmp_path / "IMG_0007.jpg")
    os.utime(media, (TAKEN, TAKEN))
    resolver, exif, _ = _resolver()
    exif.read_embedded_metadata.side_effect = MetadataError("exiftool crashed")

    capture = resolver.resolve(media, MediaKind.IMAGE)

    assert capture.source == CaptureSource.FILESYSTEM_MTIME
    assert capture.local == LocalDateTime(2021, 1, 13, 8, 12, 11)


def test_video_container_creation_time(tmp_path):
    media = _media(tmp_path / "clip.mp4")
    resolver, exif, ffprobe = _resolver(container_data={"creation_time": "2021-01-13T13:12:11.000000Z"})

    capture = resolver.resolve(media, MediaKind.VIDEO)

    assert capture.source == CaptureSource.CONTAINER_METADATA
    assert capture.local == LocalDateTime(2021, 1, 13, 8, 12, 11)
    exif.read_embedded_metadata.assert_not_called()


def test_video_without_creation_time_uses_mtime(tmp_path):
    media = _media(tmp_path / "clip.mov")
    os.utime(media, (TAKEN, TAKEN))
    resolver, _, _ = _resolver(container_data={"creation_time": None, "format_name": "mov"})

    capture = resolver.resolve(media)

    assert capture.source == CaptureSource.FILESYSTEM_MTIME


def test_kind_is_detected_from_extension(tmp_path):
    media = _media(tmp_path / "clip.mp4")
    resolver, exif, ffprobe = _resolver(container_data={"creation_time": "2021-01-13T13:12:11Z"})

    resolver.resolve(media)

    ffprobe.read_container_metadata.assert_called_once_with(media)
    exif.read_embedded_metadata.assert_not_called()


def test_missing_file_resolves_to_none(tmp_path):
    resolver, _, _ = _resolver()

    assert resolver.resolve(tmp_path / "gone.jpg", MediaKind.IMAGE) is None


def test_resolution_is_deterministic(tmp_path):
    media = _media(tmp_path / "IMG_0008.jpg")
    os.utime(media, (TAKEN, TAKEN))
    resolver, _, _ = _resolver()

    assert resolver.resolve(media) == resolver.resolve(media)


def test_parse_exif_datetime():
    assert parse_exif_datetime("2021:03:13 14:32:11") == datetime(2021, 3, 13, 14, 32, 11)
    assert parse_exif_datetime("2021:03:13 14:32:11+01:00") == datetime(2021, 3, 13, 14, 32, 11)
    assert parse_exif_datetime("0000:00:00 00:00:00") is None
    assert parse_exif_datetime("garbage") is None
    assert parse_exif_datetime(None) is None
    assert parse_exif_datetime("2021:02:30 10:00:00") is None


def test_parse_exif_offset():
    assert parse_exif_offset("+02:00") == 120
    assert parse_exif_offset("-05:30") == -330
    assert parse_exif_offset("0530") is None
    assert parse_exif_offset(None) is None


def test_parse_container_datetime():
    assert parse_container_datetime("2021-01-13T13:12:11Z") == datetime(2021, 1, 13, 13, 12, 11, tzinfo=timezone.utc)
    assert parse_container_datetime("2021-01-13 13:12:11") == datetime(2021, 1, 13, 13, 12, 11, tzinfo=timezone.utc)
    with_offset = parse_container_datetime("2021-01-13T15:12:11+0200")
    assert with_offset.astimezone(timezone.utc) == datetime(2021, 1, 13, 13, 12, 11, tzinfo=timezone.utc)
    assert parse_container_datetime("") is None


def test_local_utc_offset_minutes_is_whole_minutes():
    offset = local_utc_offset_minutes(datetime(2021, 1, 13, 13, 12, 11, tzinfo=timezone.utc))
    assert isinstance(offset, int)
    assert -14 * 60 <= offset <= 14 * 60
