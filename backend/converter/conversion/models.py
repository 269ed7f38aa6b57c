"""Conversion request/response models."""
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import ClassVar, Optional, Union

from converter.conversion.errors import BufferTransferredError


class SourceFormat(str, Enum):
    JPEG = "image/jpeg"
    PNG = "image/png"

    @property
    def label(self) -> str:
        return SOURCE_LABELS[self]

    @classmethod
    def from_mime(cls, mime: str) -> Optional["SourceFormat"]:
        mime = (mime or "").split(";", 1)[0].strip().lower()
        if mime == "image/jpg":
            mime = cls.JPEG.value
        try:
            return cls(mime)
        except ValueError:
            return None

    @classmethod
    def from_filename(cls, filename: str) -> Optional["SourceFormat"]:
        ext = Path(filename or "").suffix.lower()
        if ext in (".jpg", ".jpeg"):
            return cls.JPEG
        if ext == ".png":
            return cls.PNG
        return None


class TargetFormat(str, Enum):
    AVIF = "image/avif"
    WEBP = "image/webp"
    JPEG = "image/jpeg"
    PNG = "image/png"
    TIFF = "image/tiff"

    @property
    def info(self) -> "FormatInfo":
        return FORMATS[self]


class ColorProfile(str, Enum):
    SRGB = "srgb"
    ADOBE_RGB = "adobe-rgb"
    UNKNOWN = "unknown"

    @property
    def label(self) -> str:
        return PROFILE_LABELS[self]


WORKING_PROFILES = (ColorProfile.SRGB, ColorProfile.ADOBE_RGB)


def resolve_working_profile(profile: ColorProfile) -> ColorProfile:
    """Map a detection outcome onto a profile we can compute in. Unknown means sRGB."""
    return ColorProfile.ADOBE_RGB if profile == ColorProfile.ADOBE_RGB else ColorProfile.SRGB


@dataclass(frozen=True)
class FormatInfo:
    label: str
    extension: str
    supports_quality: bool


FORMATS: dict[TargetFormat, FormatInfo] = {
    TargetFormat.AVIF: FormatInfo("AVIF", "avif", True),
    TargetFormat.WEBP: FormatInfo("WebP", "webp", True),
    TargetFormat.JPEG: FormatInfo("JPEG", "jpg", True),
    TargetFormat.PNG: FormatInfo("PNG", "png", False),
    TargetFormat.TIFF: FormatInfo("TIFF", "tiff", False),
}

SOURCE_LABELS = {SourceFormat.JPEG: "JPEG", SourceFormat.PNG: "PNG"}

PROFILE_LABELS = {
    ColorProfile.SRGB: "sRGB",
    ColorProfile.ADOBE_RGB: "Adobe RGB",
    ColorProfile.UNKNOWN: "Unknown",
}


@dataclass
class PixelBuffer:
    """Decoded image: interleaved 8-bit RGBA, row-major."""

    width: int
    height: int
    data: bytearray

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid dimensions {self.width}x{self.height}")
        if not isinstance(self.data, bytearray):
            self.data = bytearray(self.data)
        expected = self.width * self.height * 4
        if len(self.data) != expected:
            raise ValueError(f"RGBA buffer has {len(self.data)} bytes, expected {expected}")


class ConversionTask:
    """One conversion job. The buffer is owned by the task until it is handed to a worker."""

    def __init__(
        self,
        task_id: str,
        source_format: Union[SourceFormat, str],
        target_format: Union[TargetFormat, str],
        target_color_profile: Union[ColorProfile, str],
        target_quality: int,
        buffer: bytes,
        short_edge: Optional[int] = None,
        filename: Optional[str] = None,
    ):
        if not task_id:
            raise ValueError("task_id is required")
        self.task_id = task_id
        self.source_format = SourceFormat(source_format)
        self.target_format = TargetFormat(target_format)
        self.target_color_profile = ColorProfile(target_color_profile)
        if self.target_color_profile not in WORKING_PROFILES:
            raise ValueError(f"Target color profile must be one of {[p.value for p in WORKING_PROFILES]}")
        if not 0 <= int(target_quality) <= 100:
            raise ValueError(f"target_quality must be within 0-100, got {target_quality}")
        self.target_quality = int(target_quality)
        self.short_edge = int(short_edge) if short_edge and short_edge > 0 else None
        self.filename = filename
        self._buffer: Optional[bytes] = bytes(buffer)
        self._transferred = False

    @property
    def buffer(self) -> bytes:
        if self._transferred:
            raise BufferTransferredError(f"Buffer of task {self.task_id} was handed off to a worker")
        return self._buffer

    @property
    def transferred(self) -> bool:
        return self._transferred

    def handoff(self) -> "ConversionTask":
        """Move the buffer into a fresh task for the worker; this task can no longer read it."""
        payload = self.buffer
        moved = ConversionTask(
            self.task_id,
            self.source_format,
            self.target_format,
            self.target_color_profile,
            self.target_quality,
            b"",
            short_edge=self.short_edge,
            filename=self.filename,
        )
        moved._buffer = payload
        self._buffer = None
        self._transferred = True
        return moved

    def __repr__(self) -> str:
        return (
            f"ConversionTask(task_id={self.task_id!r}, {self.source_format.value} -> {self.target_format.value}, "
            f"profile={self.target_color_profile.value}, quality={self.target_quality}, short_edge={self.short_edge})"
        )


@dataclass(frozen=True)
class ProgressEvent:
    kind: ClassVar[str] = "progress"
    task_id: str
    progress: int

    def to_dict(self) -> dict:
        return {"kind": self.kind, "id": self.task_id, "progress": self.progress}


@dataclass(frozen=True)
class DoneEvent:
    kind: ClassVar[str] = "done"
    task_id: str
    buffer: bytes
    mime: TargetFormat
    source_profile: ColorProfile

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "id": self.task_id,
            "buffer": self.buffer,
            "mime": self.mime.value,
            "sourceProfile": self.source_profile.value,
        }


@dataclass(frozen=True)
class ErrorEvent:
    kind: ClassVar[str] = "error"
    task_id: str
    message: str

    def to_dict(self) -> dict:
        return {"kind": self.kind, "id": self.task_id, "message": self.message}


WorkerEvent = Union[ProgressEvent, DoneEvent, ErrorEvent]
