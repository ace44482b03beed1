import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional
import pillow_heif
from PIL import Image, ImageOps, UnidentifiedImageError
from mbc.domain.errors import TranscodeFailure
from mbc.domain.models import EncoderProfile, QualityParams, TranscodeResult

pillow_heif.register_heif_opener()

# Output extension -> Pillow format name
PILLOW_FORMATS = {
    ".jpg": "JPEG",
    ".jpeg": "JPEG",
    ".png": "PNG",
    ".webp": "WEBP",
    ".avif": "AVIF",
    ".tiff": "TIFF",
    ".gif": "GIF",
    ".heic": "HEIF",
    ".heif": "HEIF",
}

# Formats without an alpha channel
_RGB_ONLY = {"JPEG"}


def save_options(pillow_format: str, quality: int) -> Dict[str, Any]:
    """Per-format encoder settings."""
    if pillow_format == "JPEG":
        return {"quality": quality, "optimize": True, "progressive": True}
    if pillow_format == "PNG":
        return {"optimize": True, "compress_level": 9}
    if pillow_format == "WEBP":
        return {"quality": quality, "method": 6}
    if pillow_format == "AVIF":
        return {"quality": quality}
    if pillow_format == "TIFF":
        return {"compression": "tiff_lzw"}
    if pillow_format == "GIF":
        return {"optimize": True}
    if pillow_format == "HEIF":
        return {"quality": quality}
    return {}


class PillowImageTranscoder:
    """Re-encodes still images with Pillow.

    Applies the EXIF orientation to the pixels and carries the EXIF block over
    to formats that can hold it.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def transcode(
        self,
        input_path: Path,
        output_path: Path,
        profile: Optional[EncoderProfile] = None,
        quality: Optional[QualityParams] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> TranscodeResult:
        quality = quality or QualityParams()
        pillow_format = PILLOW_FORMATS.get(output_path.suffix.lower())
        if pillow_format is None:
            raise TranscodeFailure(f"Unsupported image output: {output_path.suffix}", input_path)

        try:
            with Image.open(input_path) as im:
                exif = im.getexif()
                image = ImageOps.exif_transpose(im)
                if pillow_format in _RGB_ONLY and image.mode not in ("RGB", "L"):
                    image = image.convert("RGB")

                options = save_options(pillow_format, quality.image_quality)
                if exif and pillow_format not in ("GIF", "PNG"):
                    # Orientation is baked into the pixels now
                    exif[0x0112] = 1
                    options["exif"] = exif.tobytes()
                image.save(output_path, format=pillow_format, **options)
        except (OSError, ValueError, UnidentifiedImageError, Image.DecompressionBombError) as e:
            if output_path.exists():
                output_path.unlink()
            raise TranscodeFailure(f"Pillow could not convert {input_path.name}: {e}", input_path) from e

        if on_progress:
            on_progress(100.0)
        self.logger.debug(f"IMAGE_END: {input_path.name} -> {output_path.name} format={pillow_format}")

        return TranscodeResult(
            original_size=input_path.stat().st_size,
            compressed_size=output_path.stat().st_size,
        )
