import threading
from typing import Iterable, Optional
from rich.console import Console
from rich.table import Table
from rich.markup import escape
from mbc.infrastructure.event_bus import EventBus
from mbc.domain.events import (
    EncoderFallback,
    EncoderSelected,
    ItemCompleted,
    ItemFailed,
    OverallProgress,
    PhaseStarted,
    RunCompleted,
)
from mbc.domain.models import EncoderProfile, SummaryReport
from mbc.ui.formatting import format_ratio, format_size, format_time


class ConsoleReporter:
    """Subscribes to EventBus and prints progress lines and the final summary."""

    def __init__(self, bus: EventBus, console: Optional[Console] = None, show_items: bool = True):
        self.bus = bus
        self.console = console or Console()
        self.show_items = show_items
        self.last_summary: Optional[SummaryReport] = None
        self._lock = threading.Lock()
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(PhaseStarted, self.on_phase_started)
        self.bus.subscribe(EncoderSelected, self.on_encoder_selected)
        self.bus.subscribe(EncoderFallback, self.on_encoder_fallback)
        self.bus.subscribe(ItemCompleted, self.on_item_completed)
        self.bus.subscribe(ItemFailed, self.on_item_failed)
        self.bus.subscribe(OverallProgress, self.on_overall_progress)
        self.bus.subscribe(RunCompleted, self.on_run_completed)

    def _print(self, message: str):
        # Events arrive from worker threads
        with self._lock:
            self.console.print(message)

    def on_phase_started(self, event: PhaseStarted):
        self._print(f"[bold]{event.kind.capitalize()}s[/]: {event.count} file(s), {event.concurrency} at a time")

    def on_encoder_selected(self, event: EncoderSelected):
        self._print(f"Video encoder: [cyan]{escape(event.display_name)}[/] ({event.codec_id})")

    def on_encoder_fallback(self, event: EncoderFallback):
        self._print(f"[yellow]⚠ Encoder {event.skipped} skipped:[/] {escape(event.reason)}")

    def on_item_completed(self, event: ItemCompleted):
        if not self.show_items:
            return
        job = event.job
        name = escape(job.item.source_path.name)
        target = escape(job.output_path.name) if job.output_path else "?"
        if job.kept_original:
            self._print(f"[dim]= {name} -> {target} (kept original, {format_size(event.original_size)})[/]")
            return
        self._print(
            f"[green]✓[/] {name} -> {target} "
            f"{format_size(event.original_size)} → {format_size(event.compressed_size)}"
        )

    def on_item_failed(self, event: ItemFailed):
        name = escape(event.job.item.source_path.name)
        suffix = " (original copied)" if event.fallback_copied else ""
        self._print(f"[red]✗ {name}[/]: {escape(event.error_message)}{suffix}")

    def on_overall_progress(self, event: OverallProgress):
        if self.show_items:
            return
        self._print(f"{event.processed}/{event.total} ({event.percent:.0f}%)")

    def on_run_completed(self, event: RunCompleted):
        self.last_summary = event.summary
        with self._lock:
            self.console.print(self.render_summary(event.summary))
            if event.output_root:
                self.console.print(f"Output: {escape(str(event.output_root))}")

    def render_summary(self, summary: SummaryReport) -> Table:
        title = "Compression summary (cancelled)" if summary.cancelled else "Compression summary"
        table = Table(title=title, show_header=False)
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")
        table.add_row("Processed", f"{summary.processed}/{summary.total}")
        table.add_row("Succeeded", f"[green]{summary.succeeded}[/]")
        table.add_row("Failed", f"[red]{summary.failed}[/]" if summary.failed else "0")
        table.add_row("Original size", format_size(summary.total_original_bytes))
        table.add_row("Compressed size", format_size(summary.total_compressed_bytes))
        table.add_row("Saved", f"{format_size(summary.saved_bytes)} ({format_ratio(summary.savings_ratio)})")
        table.add_row("Elapsed", format_time(summary.elapsed_seconds))
        return table


def render_encoder_report(profiles: Iterable[EncoderProfile]) -> Table:
    """Detection results of the `encoders` command."""
    table = Table(title="Video encoders")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Codec")
    table.add_column("Type")
    table.add_column("Available", justify="center")
    for profile in profiles:
        table.add_row(
            profile.id,
            profile.display_name,
            profile.codec_id,
            "hardware" if profile.hardware else "software",
            "[green]yes[/]" if profile.available else "[red]no[/]",
        )
    return table
