from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from fractions import Fraction
from pathlib import Path
from typing import Optional, Tuple, Union


class MediaClass(Enum):
    """Coarse processing category; governs extraction and decoding strategy."""
    IMAGE = "image"
    RAW_IMAGE = "raw_image"
    VIDEO = "video"


class FormatKind(Enum):
    JPEG = "jpeg"
    PNG = "png"
    CR2 = "cr2"
    NEF = "nef"
    DNG = "dng"
    MP4 = "mp4"
    MOV = "mov"

    @property
    def media_class(self) -> MediaClass:
        if self in (FormatKind.MP4, FormatKind.MOV):
            return MediaClass.VIDEO
        if self in (FormatKind.CR2, FormatKind.NEF, FormatKind.DNG):
            return MediaClass.RAW_IMAGE
        return MediaClass.IMAGE


class Rotation(Enum):
    """Clockwise correction needed to display the stored pixels upright."""
    NONE = 0
    CW90 = 90
    CW180 = 180
    CW270 = 270  # same as 90 counter-clockwise

    @property
    def swaps_axes(self) -> bool:
        return self in (Rotation.CW90, Rotation.CW270)


class IngestStage(Enum):
    CLASSIFY = "classify"
    HASH = "hash"
    DEDUP_CHECK = "dedup_check"
    DECODE = "decode"
    DETECT = "detect"
    RENDER = "render"
    EXTRACT_METADATA = "extract_metadata"
    EMIT = "emit"


@dataclass(frozen=True)
class ContentHash:
    """
    SHA3-256 digest of a file's full byte stream.
    Used as the deduplication identity key by the catalog.
    """
    digest: bytes

    def __post_init__(self):
        if len(self.digest) != 32:
            raise ValueError(f"ContentHash must be 32 bytes, got {len(self.digest)}")

    @property
    def hex(self) -> str:
        return self.digest.hex()

    def __str__(self) -> str:
        return self.hex


@dataclass(frozen=True)
class GpsLocation:
    latitude: float
    longitude: float
    place: Optional[str] = None


@dataclass(frozen=True)
class ImageFields:
    exposure_time: Optional[Fraction] = None
    aperture: Optional[float] = None
    iso: Optional[int] = None
    flash: Optional[bool] = None


@dataclass(frozen=True)
class VideoFields:
    duration: float
    framerate: Optional[float] = None


@dataclass(frozen=True)
class CaptureMetadata:
    """
    Descriptive data about a capture, independent of rendering.
    Any optional field may be absent; partial metadata is a normal outcome.
    """
    width: int
    height: int
    type_specific: Union[ImageFields, VideoFields] = field(default_factory=ImageFields)
    captured_at: Optional[datetime] = None
    rotation: Optional[Rotation] = None
    gps: Optional[GpsLocation] = None


@dataclass(frozen=True)
class BoundingBox:
    """Detected face rectangle in pixel coordinates of the upright image."""
    x1: float
    y1: float
    x2: float
    y2: float
    confidence: float

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def area(self) -> int:
        return int(self.width * self.height)

    @property
    def midpoint(self) -> Tuple[int, int]:
        return int(self.x1 + self.width / 2), int(self.y1 + self.height / 2)


@dataclass(frozen=True)
class CropRegion:
    x: int
    y: int
    width: int
    height: int

    @property
    def box(self) -> Tuple[int, int, int, int]:
        """(left, upper, right, lower) as Pillow expects."""
        return self.x, self.y, self.x + self.width, self.y + self.height


@dataclass(frozen=True)
class ArtifactSet:
    original_path: Path
    thumbnail_path: Path
    preview_path: Path


# --- Catalog contract ---

@dataclass(frozen=True)
class NewEntry:
    """Everything the catalog needs to persist one imported file."""
    media_class: MediaClass
    original_path: Path
    thumbnail_path: Path
    preview_path: Path
    size_bytes: int
    content_hash: ContentHash
    captured_at: Optional[datetime] = None
    gps: Optional[GpsLocation] = None


@dataclass(frozen=True)
class CatalogEntry:
    id: int
    media_class: MediaClass
    original_path: Path
    content_hash: ContentHash


# --- Per-file outcomes ---

@dataclass(frozen=True)
class Imported:
    path: Path
    artifacts: ArtifactSet
    content_hash: ContentHash
    size_bytes: int
    metadata: Optional[CaptureMetadata] = None
    entry_id: Optional[int] = None


@dataclass(frozen=True)
class AlreadyPresent:
    path: Path
    content_hash: ContentHash
    existing_path: Optional[Path] = None
    existing_id: Optional[int] = None


@dataclass(frozen=True)
class Skipped:
    path: Path
    reason: str


@dataclass(frozen=True)
class Failed:
    path: Path
    stage: IngestStage
    reason: str


IngestResult = Union[Imported, AlreadyPresent, Skipped, Failed]
