import os
import re
import logging
import subprocess
import time
from collections import deque
from pathlib import Path
from typing import Callable, List, Optional
from mbc.domain.errors import EncoderUnavailable, TranscodeFailure
from mbc.domain.models import EncoderProfile, QualityParams, TranscodeResult

# Output extension -> ffmpeg muxer name (the .tmp file needs an explicit format)
CONTAINER_FORMATS = {
    ".mp4": "mp4",
    ".m4v": "mp4",
    ".mov": "mov",
    ".mkv": "matroska",
    ".webm": "webm",
}

HW_CAPABILITY_MARKERS = (
    "Hardware is lacking required capabilities",
    "No NVENC capable devices found",
    "No capable devices found",
    "Cannot load nvcuda",
    "Cannot load libnvidia-encode",
    "Failed to initialise VAAPI connection",
    "Error creating a MFX session",
    "DLL amfrt64.dll failed to open",
)

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
_TIME_RE = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")


def temp_path_for(output_path: Path) -> Path:
    """In-progress name of an output; unique per planned output path."""
    return output_path.with_name(output_path.name + ".tmp")


def optimal_threads() -> int:
    """Codec threads for software encoding: all cores but one."""
    return max(1, (os.cpu_count() or 1) - 1)


def _to_seconds(h: str, m: str, s: str) -> float:
    return float(h) * 3600 + float(m) * 60 + float(s)


class FFmpegAdapter:
    """Wrapper around ffmpeg: encoder listing, smoke tests and video transcoding."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        audio_codec: str = "aac",
        audio_bitrate: str = "128k",
        listing_timeout_s: float = 10.0,
        debug: bool = False,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.audio_codec = audio_codec
        self.audio_bitrate = audio_bitrate
        self.listing_timeout_s = listing_timeout_s
        self.debug = debug
        self.logger = logging.getLogger(__name__)

    def list_encoders(self) -> str:
        """Returns the raw `ffmpeg -encoders` listing."""
        cmd = [self.ffmpeg_path, "-hide_banner", "-encoders"]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.listing_timeout_s)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise EncoderUnavailable("*", f"encoder listing failed: {e}") from e
        # Older builds print the listing on stderr
        return (result.stdout or "") + (result.stderr or "")

    def smoke_test(self, codec_id: str, timeout_s: float = 15.0) -> bool:
        """Encodes a tiny synthetic clip to prove the encoder actually works."""
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-f", "lavfi",
            "-i", "nullsrc=s=256x256:d=0.1",
            "-c:v", codec_id,
            "-f", "null", "-",
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout_s)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"SMOKE_TEST: {codec_id} timed out after {timeout_s}s")
            return False
        except OSError as e:
            self.logger.warning(f"SMOKE_TEST: {codec_id} could not start ffmpeg: {e}")
            return False
        return result.returncode == 0

    def _build_command(
        self,
        input_path: Path,
        output_path: Path,
        profile: EncoderProfile,
        quality: QualityParams,
    ) -> List[str]:
        """Constructs the ffmpeg command line arguments."""
        suffix = output_path.suffix.lower()
        container = CONTAINER_FORMATS.get(suffix, "mp4")
        threads = quality.threads or optimal_threads()

        cmd = [
            self.ffmpeg_path,
            "-y",  # Overwrite output files
            "-hide_banner",
            "-i", str(input_path),
            # Only first video and first audio stream; some phone files carry invalid extra streams
            "-map", "0:v:0",
            "-map", "0:a:0?",
            "-c:v", profile.codec_id,
        ]
        cmd.extend(profile.tune(quality.crf, quality.preset, threads))
        cmd.extend([
            "-c:a", self.audio_codec,
            "-b:a", self.audio_bitrate,
            "-map_metadata", "0",
        ])
        if container == "mp4":
            cmd.extend(["-movflags", "+faststart"])

        # Write to .tmp during compression (renamed on success)
        tmp_path = temp_path_for(output_path)
        cmd.extend(["-f", container, str(tmp_path)])
        return cmd

    def transcode(
        self,
        input_path: Path,
        output_path: Path,
        profile: EncoderProfile,
        quality: QualityParams,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> TranscodeResult:
        """Executes the video compression process."""
        filename = input_path.name
        start_time = time.monotonic()
        cmd = self._build_command(input_path, output_path, profile, quality)
        tmp_path = temp_path_for(output_path)

        if self.debug:
            self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                bufsize=1
            )
        except OSError as e:
            raise TranscodeFailure(f"Could not start ffmpeg: {e}", input_path) from e

        total_duration = 0.0
        hw_cap_error = False
        tail: deque = deque(maxlen=20)

        for line in process.stdout or []:
            tail.append(line.rstrip())
            if any(marker in line for marker in HW_CAPABILITY_MARKERS):
                hw_cap_error = True

            if total_duration <= 0:
                duration_match = _DURATION_RE.search(line)
                if duration_match:
                    total_duration = _to_seconds(*duration_match.groups())
                    continue

            match = _TIME_RE.search(line)
            if match and total_duration > 0 and on_progress:
                current_seconds = _to_seconds(*match.groups())
                on_progress(min(100.0, (current_seconds / total_duration) * 100.0))

        process.wait()
        elapsed = time.monotonic() - start_time

        if hw_cap_error or process.returncode == 187:
            if tmp_path.exists():
                tmp_path.unlink()
            self.logger.info(f"FFMPEG_END: {filename} status=hw_cap_limit encoder={profile.id} elapsed={elapsed:.2f}s")
            raise EncoderUnavailable(profile.id, "Hardware is lacking required capabilities")

        if process.returncode != 0:
            if tmp_path.exists():
                tmp_path.unlink()
            detail = tail[-1] if tail else ""
            self.logger.info(f"FFMPEG_END: {filename} status=failed code={process.returncode} elapsed={elapsed:.2f}s")
            raise TranscodeFailure(f"ffmpeg exited with code {process.returncode}: {detail}", input_path)

        if not tmp_path.exists():
            raise TranscodeFailure("ffmpeg reported success but produced no output", input_path)

        tmp_path.replace(output_path)
        if on_progress:
            on_progress(100.0)
        self.logger.info(f"FFMPEG_END: {filename} status=completed encoder={profile.id} elapsed={elapsed:.2f}s")

        return TranscodeResult(
            original_size=input_path.stat().st_size,
            compressed_size=output_path.stat().st_size,
        )
