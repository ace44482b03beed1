"""Pipeline orchestrator for a media compression run.

Splits the scanned items by kind and runs the image pool to completion before
the video pool starts. Each item goes through: capture date -> output path ->
transcode (or copy) -> never-worse check -> timestamp preservation. Progress
and outcomes are published on the EventBus; byte totals land in RunState.

Key responsibilities:
- Negotiate the video encoder once per run, only when videos need encoding
- Retry a video on the software encoder when the hardware one hits its limits
- Keep the original bytes at the planned path whenever transcoding fails
- Honor cancellation between launches (in-flight items finish)
"""

import os
import time
import shutil
import logging
import threading
from functools import partial
from pathlib import Path
from typing import Iterable, List, Optional
from mbc.config.models import AppConfig
from mbc.domain.errors import EncoderUnavailable, MbcError, TranscodeFailure
from mbc.domain.events import (
    EncoderFallback,
    ItemCompleted,
    ItemFailed,
    ItemProgress,
    ItemStarted,
    OverallProgress,
    PhaseStarted,
    RunCompleted,
)
from mbc.domain.models import (
    CompressionJob,
    EncoderProfile,
    JobStatus,
    MediaItem,
    MediaKind,
    OutputOptions,
    QualityParams,
    RunState,
    SummaryReport,
    TranscodeResult,
)
from mbc.infrastructure.event_bus import EventBus
from mbc.infrastructure.ffmpeg import FFmpegAdapter, temp_path_for
from mbc.infrastructure.image_codec import PillowImageTranscoder
from mbc.pipeline.capture_date import CaptureDateResolver
from mbc.pipeline.encoders import EncoderNegotiator
from mbc.pipeline.output_paths import OutputPathPlanner
from mbc.pipeline.worker_pool import (
    CancellationToken,
    TaskOutcome,
    WorkerPool,
    default_image_concurrency,
    default_video_concurrency,
)


class CompressionOrchestrator:
    """Media compression run coordinator.

    Args:
        config: AppConfig with general, output, encoding and concurrency settings.
        event_bus: EventBus for publishing item and run events.
        date_resolver: CaptureDateResolver for naming and period folders.
        negotiator: EncoderNegotiator picking the video encoder profile.
        image_transcoder: Image codec collaborator (PillowImageTranscoder).
        video_transcoder: Video codec collaborator (FFmpegAdapter).
        cancel_token: Shared CancellationToken; a private one is created if omitted.
        cpu_count: Overrides os.cpu_count() for the default pool bounds.
    """

    def __init__(
        self,
        config: AppConfig,
        event_bus: EventBus,
        date_resolver: CaptureDateResolver,
        negotiator: EncoderNegotiator,
        image_transcoder: PillowImageTranscoder,
        video_transcoder: FFmpegAdapter,
        cancel_token: Optional[CancellationToken] = None,
        cpu_count: Optional[int] = None,
    ):
        self.config = config
        self.event_bus = event_bus
        self.date_resolver = date_resolver
        self.negotiator = negotiator
        self.image_transcoder = image_transcoder
        self.video_transcoder = video_transcoder
        self.cancel_token = cancel_token or CancellationToken()
        self.cpu_count = cpu_count
        self.logger = logging.getLogger(__name__)
        self._mandatory_exts = set(config.general.mandatory_conversion_extensions)

    def image_concurrency(self) -> int:
        return self.config.concurrency.image_jobs or default_image_concurrency(self.cpu_count)

    def video_concurrency(self) -> int:
        return self.config.concurrency.video_jobs or default_video_concurrency(self.cpu_count)

    def request_cancel(self):
        """Stops launching new items; items already running finish."""
        if not self.cancel_token.is_cancelled:
            self.logger.info("Cancellation requested - finishing in-flight items")
        self.cancel_token.cancel()

    def _quality(self) -> QualityParams:
        enc = self.config.encoding
        return QualityParams(
            image_quality=enc.image_quality,
            crf=enc.crf,
            preset=enc.preset,
            threads=enc.threads,
        )

    def _requires_conversion(self, item: MediaItem) -> bool:
        return item.source_path.suffix.lower() in self._mandatory_exts

    def _copies_only(self, item: MediaItem) -> bool:
        return self.config.output.rename_only and not self._requires_conversion(item)

    def _preserve_timestamps(self, source: Path, target: Path):
        if not self.config.general.preserve_timestamps:
            return
        try:
            st = source.stat()
            os.utime(target, (st.st_atime, st.st_mtime))
        except OSError as e:
            self.logger.warning(f"Could not copy timestamps to {target.name}: {e}")

    def _copy_original(self, item: MediaItem, output_path: Path) -> TranscodeResult:
        shutil.copy2(item.source_path, output_path)
        size = output_path.stat().st_size
        return TranscodeResult(original_size=size, compressed_size=size)

    def _transcode(self, job: CompressionJob, quality: QualityParams) -> TranscodeResult:
        item = job.item
        transcoder = self.image_transcoder if item.kind == MediaKind.IMAGE else self.video_transcoder

        def on_progress(percent: float):
            self.event_bus.publish(ItemProgress(job=job, progress_percent=percent))

        try:
            return transcoder.transcode(
                item.source_path, job.output_path, job.encoder_profile, quality, on_progress=on_progress
            )
        except EncoderUnavailable as e:
            profile = job.encoder_profile
            if (
                item.kind != MediaKind.VIDEO
                or profile is None
                or not profile.hardware
                or not self.config.encoding.cpu_fallback
            ):
                raise TranscodeFailure(str(e), item.source_path) from e

            self.logger.info(f"FFMPEG_FALLBACK: {item.source_path.name} ({profile.id} hw_cap -> cpu)")
            self.event_bus.publish(EncoderFallback(requested=profile.id, skipped=profile.id, reason=e.reason))
            job.encoder_profile = self.negotiator.software_profile()
            return transcoder.transcode(
                item.source_path, job.output_path, job.encoder_profile, quality, on_progress=on_progress
            )

    def _handle_failure(self, job: CompressionJob, failure: TranscodeFailure):
        """Replaces whatever the codec left behind with the original bytes."""
        item = job.item
        output_path = job.output_path
        filename = item.source_path.name

        if item.kind == MediaKind.VIDEO:
            for leftover in (output_path, temp_path_for(output_path)):
                try:
                    leftover.unlink(missing_ok=True)
                except OSError as e:
                    self.logger.warning(f"Could not remove partial output {leftover.name}: {e}")

        try:
            shutil.copy2(item.source_path, output_path)
            self._preserve_timestamps(item.source_path, output_path)
            failure.fallback_path = output_path
            failure.original_size = output_path.stat().st_size
            self.logger.info(f"FALLBACK_COPY: {filename} -> {output_path}")
        except OSError as e:
            self.logger.error(f"FALLBACK_COPY: {filename} could not be copied to {output_path}: {e}")

        job.status = JobStatus.FAILED
        job.error_message = str(failure)
        self.event_bus.publish(ItemFailed(
            job=job,
            error_message=job.error_message,
            fallback_copied=failure.fallback_path is not None,
        ))

    def _apply_never_worse(self, job: CompressionJob, result: TranscodeResult) -> TranscodeResult:
        item = job.item
        if result.compressed_size < result.original_size or self._requires_conversion(item):
            return result
        shutil.copy2(item.source_path, job.output_path)
        job.kept_original = True
        self.logger.info(
            f"KEPT_ORIGINAL: {item.source_path.name} compressed={result.compressed_size} "
            f"original={result.original_size}"
        )
        size = job.output_path.stat().st_size
        return TranscodeResult(original_size=result.original_size, compressed_size=size)

    def _process_item(
        self,
        item: MediaItem,
        planner: OutputPathPlanner,
        profile: Optional[EncoderProfile],
        quality: QualityParams,
    ) -> TranscodeResult:
        filename = item.source_path.name
        thread_id = threading.get_ident()
        start_time = time.monotonic()
        self.logger.info(f"PROCESS_START: {filename} (thread {thread_id})")

        job = CompressionJob(item=item, encoder_profile=profile if item.kind == MediaKind.VIDEO else None)
        try:
            job.capture = self.date_resolver.resolve(item.source_path, item.kind)
            job.output_path = planner.plan(item, job.capture, converts=self._requires_conversion(item))
            job.output_path.parent.mkdir(parents=True, exist_ok=True)
        except (MbcError, OSError) as e:
            job.status = JobStatus.FAILED
            job.error_message = str(e)
            self.logger.error(f"PROCESS_END: {filename} status=failed reason=planning error={e}")
            self.event_bus.publish(ItemFailed(job=job, error_message=job.error_message))
            raise

        self.event_bus.publish(ItemStarted(job=job))
        job.status = JobStatus.PROCESSING

        copy_only = self._copies_only(item)
        try:
            if copy_only:
                result = self._copy_original(item, job.output_path)
                job.note = "renamed"
            else:
                result = self._transcode(job, quality)
        except Exception as e:
            failure = e if isinstance(e, TranscodeFailure) else TranscodeFailure(str(e), item.source_path)
            self.logger.error(f"Exception processing {filename}: {e}")
            self._handle_failure(job, failure)
            elapsed = time.monotonic() - start_time
            self.logger.info(f"PROCESS_END: {filename} status=failed elapsed={elapsed:.2f}s")
            if failure is e:
                raise
            raise failure from e

        if not copy_only:
            result = self._apply_never_worse(job, result)
        self._preserve_timestamps(item.source_path, job.output_path)

        job.status = JobStatus.COMPLETED
        job.output_size_bytes = result.compressed_size
        self.event_bus.publish(ItemCompleted(
            job=job,
            original_size=result.original_size,
            compressed_size=result.compressed_size,
        ))
        elapsed = time.monotonic() - start_time
        self.logger.info(f"PROCESS_END: {filename} status=completed elapsed={elapsed:.2f}s")
        return result

    def _on_settled(self, state: RunState, outcome: TaskOutcome, _pool_processed: int):
        if outcome.ok:
            result: TranscodeResult = outcome.value
            processed = state.record_success(result.original_size, result.compressed_size)
        elif isinstance(outcome.error, TranscodeFailure) and outcome.error.fallback_path is not None:
            # The copied original counts on both sides of the byte totals
            size = outcome.error.original_size
            processed = state.record_failure(size, size)
        else:
            processed = state.record_failure()
        self.event_bus.publish(OverallProgress(processed=processed, total=state.total))

    def _negotiate_if_needed(self, videos: List[MediaItem]) -> Optional[EncoderProfile]:
        if not any(not self._copies_only(item) for item in videos):
            return None
        return self.negotiator.negotiate(self.config.encoding.encoder)

    def run_batch(self, items: Iterable[MediaItem], options: OutputOptions) -> SummaryReport:
        """Processes every item and returns the run summary."""
        start_time = time.monotonic()
        items = list(items)
        state = RunState(total=len(items))
        planner = OutputPathPlanner(options)
        quality = self._quality()

        images = [item for item in items if item.kind == MediaKind.IMAGE]
        videos = [item for item in items if item.kind == MediaKind.VIDEO]
        self.logger.info(f"Run started: images={len(images)} videos={len(videos)} output={options.output_root}")

        phases = [
            (MediaKind.IMAGE, images, self.image_concurrency()),
            (MediaKind.VIDEO, videos, self.video_concurrency()),
        ]
        for kind, batch, concurrency in phases:
            if not batch:
                continue
            if self.cancel_token.is_cancelled:
                break

            profile = self._negotiate_if_needed(batch) if kind == MediaKind.VIDEO else None
            self.event_bus.publish(PhaseStarted(kind=kind.value, count=len(batch), concurrency=concurrency))
            self.logger.info(f"Phase {kind.value}: {len(batch)} item(s), concurrency={concurrency}")

            pool = WorkerPool(
                concurrency,
                cancel_token=self.cancel_token,
                on_settled=partial(self._on_settled, state),
            )
            pool.run([partial(self._process_item, item, planner, profile, quality) for item in batch])

        if self.cancel_token.is_cancelled:
            state.mark_cancelled()

        summary = state.to_summary(time.monotonic() - start_time)
        self.logger.info(
            f"Run finished: processed={summary.processed}/{summary.total} succeeded={summary.succeeded} "
            f"failed={summary.failed} saved={summary.saved_bytes} cancelled={summary.cancelled}"
        )
        self.event_bus.publish(RunCompleted(summary=summary, output_root=options.output_root))
        return summary
