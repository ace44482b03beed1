"""Video encoder detection and fallback negotiation."""

import re
import logging
import threading
from dataclasses import replace
from typing import Dict, List, Optional, Sequence
from mbc.domain.errors import EncoderUnavailable
from mbc.domain.events import EncoderFallback, EncoderSelected
from mbc.domain.models import EncoderProfile
from mbc.infrastructure.event_bus import EventBus
from mbc.infrastructure.ffmpeg import FFmpegAdapter

logger = logging.getLogger(__name__)


def nvenc_tuning(quality: int, preset: str, threads: int) -> List[str]:
    return [
        "-preset", "p4",
        "-rc", "vbr",
        "-cq", str(quality),
        "-profile:v", "high",
        "-spatial-aq", "1",
        "-temporal-aq", "1",
    ]


def amf_tuning(quality: int, preset: str, threads: int) -> List[str]:
    return [
        "-quality", "quality",
        "-qp_i", str(quality),
        "-qp_p", str(quality),
        "-profile:v", "high",
    ]


def qsv_tuning(quality: int, preset: str, threads: int) -> List[str]:
    return [
        "-preset", "medium",
        "-global_quality", str(quality),
        "-profile:v", "high",
    ]


def cpu_tuning(quality: int, preset: str, threads: int) -> List[str]:
    return [
        "-crf", str(quality),
        "-preset", preset,
        "-threads", str(threads),
    ]


# Fixed priority order; software is last and always available
ENCODER_PROFILES = (
    EncoderProfile(id="nvenc", display_name="NVIDIA NVENC", codec_id="h264_nvenc", tuning=nvenc_tuning),
    EncoderProfile(id="amf", display_name="AMD AMF", codec_id="h264_amf", tuning=amf_tuning),
    EncoderProfile(id="qsv", display_name="Intel Quick Sync", codec_id="h264_qsv", tuning=qsv_tuning),
    EncoderProfile(
        id="cpu",
        display_name="CPU (libx264)",
        codec_id="libx264",
        tuning=cpu_tuning,
        hardware=False,
        available=True,
    ),
)

DEFAULT_PRIORITY = [profile.id for profile in ENCODER_PROFILES]


class EncoderAvailabilityCache:
    """Holds the last detection result until invalidated."""

    def __init__(self):
        self._lock = threading.Lock()
        self._results: Optional[Dict[str, bool]] = None

    def get(self) -> Optional[Dict[str, bool]]:
        with self._lock:
            return dict(self._results) if self._results is not None else None

    def store(self, results: Dict[str, bool]):
        with self._lock:
            self._results = dict(results)

    def invalidate(self):
        with self._lock:
            self._results = None


class EncoderNegotiator:
    """Detects usable encoders and picks one along the fallback chain.

    A hardware encoder counts as available only when ffmpeg lists it and a
    smoke-test encode with it succeeds.
    """

    def __init__(
        self,
        codec_tool: FFmpegAdapter,
        cache: Optional[EncoderAvailabilityCache] = None,
        event_bus: Optional[EventBus] = None,
        smoke_test_timeout_s: float = 15.0,
        profiles: Sequence[EncoderProfile] = ENCODER_PROFILES,
    ):
        self.codec_tool = codec_tool
        self.cache = cache or EncoderAvailabilityCache()
        self.event_bus = event_bus
        self.smoke_test_timeout_s = smoke_test_timeout_s
        self.profiles = list(profiles)
        self._detect_lock = threading.Lock()

    def _probe(self) -> Dict[str, bool]:
        try:
            listing = self.codec_tool.list_encoders()
        except EncoderUnavailable as e:
            logger.warning(f"ENCODER_DETECT: {e}")
            listing = ""

        results: Dict[str, bool] = {}
        for profile in self.profiles:
            if not profile.hardware:
                results[profile.id] = True
                continue
            if not re.search(rf"\s{re.escape(profile.codec_id)}\s", listing):
                logger.info(f"ENCODER_DETECT: {profile.id} ({profile.codec_id}) not listed")
                results[profile.id] = False
                continue
            passed = self.codec_tool.smoke_test(profile.codec_id, self.smoke_test_timeout_s)
            if not passed:
                logger.info(f"ENCODER_DETECT: {profile.id} ({profile.codec_id}) listed but smoke test failed")
            results[profile.id] = passed
        return results

    def detect(self, force_refresh: bool = False) -> Dict[str, bool]:
        """Returns {encoder_id: available}, probing only when the cache is empty or refresh is forced."""
        with self._detect_lock:
            if not force_refresh:
                cached = self.cache.get()
                if cached is not None:
                    return cached
            results = self._probe()
            self.cache.store(results)
        summary = ", ".join(f"{k}={'yes' if v else 'no'}" for k, v in results.items())
        logger.info(f"ENCODER_DETECT: {summary}")
        return dict(results)

    def available_profiles(self) -> List[EncoderProfile]:
        """All known profiles with their detected availability."""
        availability = self.detect()
        return [replace(p, available=availability.get(p.id, False)) for p in self.profiles]

    def software_profile(self) -> EncoderProfile:
        for profile in self.profiles:
            if not profile.hardware:
                return replace(profile, available=True)
        raise EncoderUnavailable("cpu", "no software encoder profile configured")

    def negotiate(self, requested_id: str = "auto") -> EncoderProfile:
        """Returns the first available profile, starting at the requested one."""
        requested = (requested_id or "auto").strip().lower()
        ids = [p.id for p in self.profiles]
        if requested == "auto":
            start = 0
        elif requested in ids:
            start = ids.index(requested)
        else:
            raise ValueError(f"Unknown encoder: {requested_id}. Use one of {['auto'] + ids}")

        availability = self.detect()
        for profile in self.profiles[start:]:
            if availability.get(profile.id, False):
                selected = replace(profile, available=True)
                logger.info(f"ENCODER_SELECTED: {selected.id} ({selected.codec_id}) requested={requested}")
                if self.event_bus:
                    self.event_bus.publish(EncoderSelected(
                        encoder_id=selected.id,
                        display_name=selected.display_name,
                        codec_id=selected.codec_id,
                    ))
                return selected

            reason = f"{profile.codec_id} is not usable on this host"
            logger.warning(f"ENCODER_FALLBACK: skipping {profile.id} ({reason})")
            if self.event_bus:
                self.event_bus.publish(EncoderFallback(requested=requested, skipped=profile.id, reason=reason))

        return self.software_profile()

    def override_tool_path(self, path: str):
        """Points detection at another ffmpeg binary and drops the cached result."""
        self.codec_tool.ffmpeg_path = str(path)
        self.cache.invalidate()
