"""
Custom exception hierarchy for the media ingestion pipeline.

Lower layers raise these; only the orchestrator converts them into
per-file outcomes, so one bad file never aborts a batch.
"""


class MediaIngestError(Exception):
    """Base exception for all media ingestion errors."""
    pass


class UnknownFormatError(MediaIngestError):
    """Raised when a file extension maps to no supported format."""
    pass


class IoFailure(MediaIngestError):
    """Raised when stat/read/write on the file system fails."""
    pass


class FileHashError(IoFailure):
    """Raised when file hashing fails."""
    pass


class FileOperationError(IoFailure):
    """Raised when copying the original or writing a rendition fails."""
    pass


class DecodeError(MediaIngestError):
    """Raised when a payload is corrupt or cannot be decoded."""
    pass


class MetadataExtractionError(MediaIngestError):
    """Raised when metadata cannot be extracted from a file."""
    pass


class ExternalToolError(MediaIngestError):
    """Raised when ffprobe/ffmpeg is missing, exits non-zero or emits garbage."""
    pass


class DetectionError(MediaIngestError):
    """Raised when the face-detection backend fails."""
    pass


class StageTimeoutError(MediaIngestError):
    """Raised when a file exceeds its processing deadline."""
    pass


class DatabaseError(MediaIngestError):
    """Raised when catalog operations fail."""
    pass


class DuplicateEntryError(DatabaseError):
    """Raised when the catalog already holds an entry with the same content hash."""
    pass
