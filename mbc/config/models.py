from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from mbc.domain.models import OutputLayout, PeriodGranularity

IMAGE_FORMATS = {"webp", "jpeg", "jpg", "png", "avif", "tiff", "gif"}
VIDEO_CONTAINERS = {"mp4", "m4v", "mkv", "mov", "webm"}
ENCODER_CHOICES = {"auto", "nvenc", "amf", "qsv", "cpu"}


def _normalize_extensions(values: List[str]) -> List[str]:
    return [(v if v.startswith(".") else f".{v}").lower() for v in values]


class GeneralConfig(BaseModel):
    debug: bool = False
    log_path: Optional[str] = None
    recursive: bool = True
    preserve_timestamps: bool = True
    # Sources with these extensions keep their converted output even when it is larger.
    mandatory_conversion_extensions: List[str] = Field(
        default_factory=lambda: [".heic", ".heif", ".mov", ".avi", ".wmv", ".flv", ".3gp", ".mpeg", ".mpg"]
    )

    @field_validator("mandatory_conversion_extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return _normalize_extensions(v)


class OutputConfig(BaseModel):
    layout: OutputLayout = OutputLayout.MIRROR
    period: PeriodGranularity = PeriodGranularity.MONTH
    rename_by_date: bool = False
    rename_only: bool = False
    image_format: str = "webp"
    video_container: str = "mp4"

    @field_validator("image_format")
    @classmethod
    def validate_image_format(cls, v: str) -> str:
        value = v.lower().lstrip(".")
        if value not in IMAGE_FORMATS:
            raise ValueError(f"Unsupported image format: {v}. Use one of {sorted(IMAGE_FORMATS)}")
        return value

    @field_validator("video_container")
    @classmethod
    def validate_video_container(cls, v: str) -> str:
        value = v.lower().lstrip(".")
        if value not in VIDEO_CONTAINERS:
            raise ValueError(f"Unsupported video container: {v}. Use one of {sorted(VIDEO_CONTAINERS)}")
        return value

    @model_validator(mode="after")
    def rename_only_renames(self) -> "OutputConfig":
        # Rename-only means copy under the capture-date name
        if self.rename_only:
            self.rename_by_date = True
        return self


class EncodingConfig(BaseModel):
    encoder: str = "auto"
    image_quality: int = Field(default=75, ge=1, le=100)
    crf: int = Field(default=22, ge=0, le=51)
    preset: str = "veryfast"
    threads: int = Field(default=0, ge=0)  # 0 = derive from CPU count
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    smoke_test_timeout_s: float = Field(default=15.0, gt=0)
    listing_timeout_s: float = Field(default=10.0, gt=0)
    cpu_fallback: bool = True
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"

    @field_validator("encoder")
    @classmethod
    def validate_encoder(cls, v: str) -> str:
        value = v.strip().lower()
        if value not in ENCODER_CHOICES:
            raise ValueError(f"Unknown encoder: {v}. Use one of {sorted(ENCODER_CHOICES)}")
        return value


class ConcurrencyConfig(BaseModel):
    image_jobs: Optional[int] = Field(default=None, ge=1)
    video_jobs: Optional[int] = Field(default=None, ge=1)


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    encoding: EncodingConfig = Field(default_factory=EncodingConfig)
    concurrency: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)
