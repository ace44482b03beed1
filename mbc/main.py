import signal
import warnings
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console

# pyexiftool warns about exiftool versions on stderr; keep the console clean
warnings.filterwarnings("ignore")
from mbc.config.loader import load_config
from mbc.config.models import AppConfig
from mbc.domain.errors import ScanError
from mbc.domain.models import OutputLayout, OutputOptions, PeriodGranularity
from mbc.infrastructure.logging import setup_logging
from mbc.infrastructure.event_bus import EventBus
from mbc.infrastructure.file_scanner import MediaScanner
from mbc.infrastructure.exif_tool import ExifToolAdapter
from mbc.infrastructure.ffprobe import FFprobeAdapter
from mbc.infrastructure.ffmpeg import FFmpegAdapter
from mbc.infrastructure.image_codec import PillowImageTranscoder
from mbc.infrastructure.housekeeping import HousekeepingService
from mbc.pipeline.capture_date import CaptureDateResolver
from mbc.pipeline.encoders import EncoderNegotiator
from mbc.pipeline.orchestrator import CompressionOrchestrator
from mbc.pipeline.worker_pool import CancellationToken
from mbc.ui.console import ConsoleReporter, render_encoder_report

app = typer.Typer(help="MBC (Media Batch Compression) - rename, normalize and compress photos and videos")

DEFAULT_CONFIG_PATH = Path("conf/mbc.yaml")
EXIT_CANCELLED = 130


def _read_config(config_path: Optional[Path]) -> AppConfig:
    if config_path is not None:
        return load_config(config_path)
    if DEFAULT_CONFIG_PATH.exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return AppConfig()


def _apply_overrides(config: AppConfig, overrides: dict) -> AppConfig:
    """Re-validates the config with CLI values layered on top (None = not given)."""
    data = config.model_dump()
    for section, values in overrides.items():
        for key, value in values.items():
            if value is not None:
                data[section][key] = value
    return AppConfig(**data)


def _image_extension(image_format: str) -> str:
    return ".jpg" if image_format in ("jpeg", "jpg") else f".{image_format}"


@app.command()
def compress(
    input_dir: Path = typer.Argument(..., help="Directory with photos and videos to compress"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output directory (default: INPUT_DIR/compressed)"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config (default: conf/mbc.yaml if present)"),
    recursive: Optional[bool] = typer.Option(None, "--recursive/--no-recursive", "-r", help="Descend into subdirectories"),
    layout: Optional[OutputLayout] = typer.Option(None, "--layout", help="Output layout"),
    period: Optional[PeriodGranularity] = typer.Option(None, "--period", help="Period folder granularity for organize_by_period"),
    rename: Optional[bool] = typer.Option(None, "--rename/--no-rename", help="Rename files to YYYYMMDD-HHMMSS by capture date"),
    rename_only: Optional[bool] = typer.Option(None, "--rename-only", help="Copy files without compressing (HEIC and legacy containers are still converted)"),
    image_format: Optional[str] = typer.Option(None, "--image-format", help="Image output format (webp, jpeg, png, avif, tiff, gif)"),
    video_container: Optional[str] = typer.Option(None, "--video-container", help="Video output container (mp4, mkv, mov, webm)"),
    quality: Optional[int] = typer.Option(None, "--quality", "-q", help="Image quality (1-100)"),
    crf: Optional[int] = typer.Option(None, "--crf", help="Video quality value (0-51, lower is better)"),
    preset: Optional[str] = typer.Option(None, "--preset", help="libx264 preset for CPU encoding"),
    encoder: Optional[str] = typer.Option(None, "--encoder", help="Video encoder (auto, nvenc, amf, qsv, cpu)"),
    ffmpeg_path: Optional[str] = typer.Option(None, "--ffmpeg-path", help="Path to the ffmpeg binary"),
    image_jobs: Optional[int] = typer.Option(None, "--image-jobs", help="Concurrent image jobs"),
    video_jobs: Optional[int] = typer.Option(None, "--video-jobs", help="Concurrent video jobs"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (overrides config)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Rename, normalize and compress every photo and video in INPUT_DIR."""
    console = Console()

    try:
        config = _apply_overrides(_read_config(config_path), {
            "general": {
                "recursive": recursive,
                "log_path": str(log_path) if log_path else None,
                "debug": True if debug else None,
            },
            "output": {
                "layout": layout,
                "period": period,
                "rename_by_date": rename,
                "rename_only": rename_only,
                "image_format": image_format,
                "video_container": video_container,
            },
            "encoding": {
                "image_quality": quality,
                "crf": crf,
                "preset": preset,
                "encoder": encoder,
                "ffmpeg_path": ffmpeg_path,
            },
            "concurrency": {
                "image_jobs": image_jobs,
                "video_jobs": video_jobs,
            },
        })
    except (FileNotFoundError, ValidationError, ValueError) as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    if not input_dir.is_dir():
        typer.secho(f"Error: Input directory not found: {input_dir}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    output_dir = output or (input_dir / "compressed")
    log_path_value = Path(config.general.log_path) if config.general.log_path else None
    logger = setup_logging(output_dir, debug=config.general.debug, log_path=log_path_value)
    logger.info(f"MBC started: input={input_dir} output={output_dir}")
    logger.info(
        f"Config: layout={config.output.layout.value}, rename={config.output.rename_by_date}, "
        f"rename_only={config.output.rename_only}, image={config.output.image_format}, "
        f"video={config.output.video_container}, encoder={config.encoding.encoder}, debug={config.general.debug}"
    )

    HousekeepingService().cleanup_temp_files(output_dir)

    try:
        scanner = MediaScanner(exclude_dirs=[output_dir])
        items = scanner.scan(input_dir, recursive=config.general.recursive)
    except ScanError as e:
        logger.error(f"Scan failed: {e}")
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    if not items:
        console.print("No media files found.")
        return

    bus = EventBus()
    ConsoleReporter(bus, console)

    enc = config.encoding
    exif = ExifToolAdapter()
    ffmpeg = FFmpegAdapter(
        ffmpeg_path=enc.ffmpeg_path,
        audio_codec=enc.audio_codec,
        audio_bitrate=enc.audio_bitrate,
        listing_timeout_s=enc.listing_timeout_s,
        debug=config.general.debug,
    )
    cancel_token = CancellationToken()
    orchestrator = CompressionOrchestrator(
        config=config,
        event_bus=bus,
        date_resolver=CaptureDateResolver(exif, FFprobeAdapter(ffprobe_path=enc.ffprobe_path)),
        negotiator=EncoderNegotiator(ffmpeg, event_bus=bus, smoke_test_timeout_s=enc.smoke_test_timeout_s),
        image_transcoder=PillowImageTranscoder(),
        video_transcoder=ffmpeg,
        cancel_token=cancel_token,
    )
    options = OutputOptions(
        source_root=input_dir,
        output_root=output_dir,
        layout=config.output.layout,
        period=config.output.period,
        rename_by_date=config.output.rename_by_date,
        target_image_ext=_image_extension(config.output.image_format),
        target_video_ext=f".{config.output.video_container}",
        preserve_extension=config.output.rename_only,
    )

    def on_sigint(signum, frame):
        if cancel_token.is_cancelled:
            # Second Ctrl+C: stop waiting for in-flight items
            raise KeyboardInterrupt
        console.print("[yellow]Stopping after in-flight items finish (Ctrl+C again to abort)[/]")
        orchestrator.request_cancel()

    previous_handler = signal.signal(signal.SIGINT, on_sigint)
    try:
        summary = orchestrator.run_batch(items, options)
    except KeyboardInterrupt:
        logger.info("Aborted by user (second Ctrl+C)")
        typer.secho("\nCompression aborted by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=EXIT_CANCELLED)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        exif.close()

    if summary.cancelled:
        typer.secho("Compression stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=EXIT_CANCELLED)


@app.command()
def encoders(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    ffmpeg_path: Optional[str] = typer.Option(None, "--ffmpeg-path", help="Path to the ffmpeg binary"),
):
    """Detect which video encoders work on this machine."""
    try:
        config = _read_config(config_path)
    except (FileNotFoundError, ValidationError, ValueError) as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    enc = config.encoding
    negotiator = EncoderNegotiator(
        FFmpegAdapter(ffmpeg_path=enc.ffmpeg_path, listing_timeout_s=enc.listing_timeout_s),
        smoke_test_timeout_s=enc.smoke_test_timeout_s,
    )
    if ffmpeg_path:
        negotiator.override_tool_path(ffmpeg_path)
    Console().print(render_encoder_report(negotiator.available_profiles()))


if __name__ == "__main__":
    app()
