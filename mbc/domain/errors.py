"""Error taxonomy for the media compression pipeline.

Only ScanError aborts a run. Everything else is raised and handled per item.
"""

from pathlib import Path
from typing import Optional


class MbcError(Exception):
    """Base class for all pipeline errors."""


class ScanError(MbcError):
    """Input root is missing or not a directory."""


class MetadataError(MbcError):
    """Embedded or container metadata could not be read."""


class EncoderUnavailable(MbcError):
    """Encoder cannot be used on this host (not listed, smoke test failed, hw limits)."""

    def __init__(self, encoder_id: str, reason: str = ""):
        self.encoder_id = encoder_id
        self.reason = reason
        message = f"Encoder '{encoder_id}' unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class TranscodeFailure(MbcError):
    """The codec collaborator could not produce an output for one item."""

    def __init__(self, message: str, source_path: Optional[Path] = None):
        super().__init__(message)
        self.source_path = source_path
        self.fallback_path: Optional[Path] = None
        self.original_size = 0


class CollisionExhausted(MbcError):
    """No free collision counter was found for an output name."""
