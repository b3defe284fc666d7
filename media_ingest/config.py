"""
Configuration constants for the media ingestion pipeline.
"""
from .models import FormatKind

# --- File Type Definitions ---
# Extension to Format Mapping (keys are lower-case, with the leading dot)
EXT_TO_FORMAT = {
    '.jpg': FormatKind.JPEG,
    '.jpeg': FormatKind.JPEG,
    '.png': FormatKind.PNG,
    '.cr2': FormatKind.CR2,
    '.nef': FormatKind.NEF,
    '.dng': FormatKind.DNG,
    '.mp4': FormatKind.MP4,
    '.mov': FormatKind.MOV,
}

# --- Hashing ---
HASH_CHUNK_SIZE = 64 * 1024  # 64 KB chunks for reading

# --- Metadata Parsing ---
DATE_TAGS = [
    'EXIF DateTimeOriginal',
    'EXIF DateTimeDigitized',
    'Image DateTime',
]

# (width tag, height tag) pairs, tried in order
DIMENSION_TAGS = [
    ('Image ImageWidth', 'Image ImageLength'),
    ('EXIF ExifImageWidth', 'EXIF ExifImageLength'),
]

# EXIF Flash values whose "fired" bit is set
FLASH_FIRED_VALUES = {
    0x01, 0x05, 0x07, 0x09, 0x0d, 0x0f, 0x19, 0x1d, 0x1f,
    0x41, 0x45, 0x47, 0x49, 0x4d, 0x4f, 0x59, 0x5d, 0x5f,
}

# Fast raw-header parsing under-reports dimensions for some formats
RAW_MIN_WIDTH = 600
RAW_MIN_HEIGHT = 400

# Vendor GPS keys in container tags, highest priority first
VIDEO_GPS_TAGS = [
    'location',
    'com.apple.quicktime.location.ISO6709',
    'location-eng',
]
VIDEO_FRAMERATE_TAG = 'com.android.capture.fps'

# --- External Tools ---
FFPROBE_BIN = "ffprobe"
FFMPEG_BIN = "ffmpeg"

# --- Face Detection ---
FACE_MIN_SIZE = 150.0
FACE_THRESHOLDS = (0.6, 0.7, 0.7)
FACE_SCALE_FACTOR = 0.709
FACE_MAX_CONCURRENT = 1

# --- Renditions ---
THUMBNAIL_SIZE = (300, 200)
THUMBNAIL_ASPECT = (3, 2)
PREVIEW_MAX_WIDTH = 4096
PREVIEW_MAX_HEIGHT = 2160
JPEG_QUALITY = 85
THUMBNAIL_SUFFIX = "_thumbnail"
PREVIEW_SUFFIX = "_preview"
RENDITION_EXT = ".jpg"

# --- Orchestration ---
DEFAULT_MAX_WORKERS = 3
FILE_TIMEOUT_SEC = 300.0
LOG_FILE_NAME = "ingest.log"
DB_FILE_NAME = "media_catalog.db"
