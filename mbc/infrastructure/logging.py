import logging
from pathlib import Path
from typing import Optional

# Libraries that flood compression.log with per-chunk DEBUG records
NOISY_LOGGERS = ("PIL", "exiftool")


def setup_logging(output_dir: Path, debug: bool = False, log_path: Optional[Path] = None) -> logging.Logger:
    """
    Setup logging configuration for MBC.

    Writes to `<output_dir>/compression.log` unless log_path is given; the
    parent directory of the log file is created either way. Debug mode turns
    on per-item timings and codec command lines for MBC modules only.

    Args:
        output_dir: Directory where compressed media is written
        debug: If True, enable DEBUG level logging
        log_path: Optional path to log file (overrides output_dir)
    """
    log_file = Path(log_path) if log_path else (Path(output_dir) / "compression.log")
    log_file.parent.mkdir(parents=True, exist_ok=True)

    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
        handlers=[logging.FileHandler(log_file, encoding="utf-8")],
        force=True  # Override any existing configuration
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger("mbc")
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger
