"""Domain events for the media compression pipeline.

Events flow through the EventBus and decouple the orchestrator from whatever
renders progress (the rich console reporter, or any other subscriber).

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from typing import Optional
from pydantic import BaseModel
from .models import CompressionJob, SummaryReport


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class JobEvent(Event):
    """Base class for events related to a single media item."""

    job: CompressionJob


class ItemStarted(JobEvent):
    """Emitted when an item is picked up by a worker."""

    pass


class ItemProgress(JobEvent):
    """Emitted as the codec reports progress for the item."""

    progress_percent: float


class ItemCompleted(JobEvent):
    """Emitted when an item has been written to its planned path."""

    original_size: int
    compressed_size: int


class ItemFailed(JobEvent):
    """Emitted when transcoding failed; the original was copied instead when possible."""

    error_message: str
    fallback_copied: bool = False


class OverallProgress(Event):
    """Emitted once per settled item."""

    processed: int
    total: int

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 100.0
        return self.processed / self.total * 100.0


class PhaseStarted(Event):
    """Emitted before a media kind's pool starts."""

    kind: str
    count: int
    concurrency: int


class EncoderFallback(Event):
    """Emitted for every skipped encoder candidate during negotiation."""

    requested: str
    skipped: str
    reason: str


class EncoderSelected(Event):
    """Emitted once negotiation settles on a profile."""

    encoder_id: str
    display_name: str
    codec_id: str


class RunCompleted(Event):
    """Emitted after both pools finished (or the run was cancelled)."""

    summary: SummaryReport
    output_root: Optional[Path] = None
