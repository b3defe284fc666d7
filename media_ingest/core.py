import logging
import shutil
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from tqdm import tqdm

from . import config
from .database.ops import CatalogStore
from .exceptions import (
    DuplicateEntryError,
    FileOperationError,
    IoFailure,
    MediaIngestError,
    MetadataExtractionError,
    StageTimeoutError,
)
from .imaging.crop import CropPlanner
from .imaging.decode import DecodedMedia, VideoFrameExtractor, decode_image, decode_raw
from .imaging.faces import FaceDetector
from .imaging.render import PreviewRenderer, ThumbnailRenderer, rendition_path
from .metadata.extract import MetadataExtractor
from .metadata.probe import VideoProbe, VideoProber
from .models import (
    AlreadyPresent,
    ArtifactSet,
    BoundingBox,
    CaptureMetadata,
    ContentHash,
    Failed,
    FormatKind,
    Imported,
    IngestResult,
    IngestStage,
    MediaClass,
    NewEntry,
    Rotation,
    Skipped,
)
from .scanning.classify import classify
from .scanning.filesystem import iter_candidates
from .scanning.hasher import ContentHasher


class Deadline:
    """Per-file time budget, checked between stages and handed to subprocesses."""

    def __init__(self, seconds: Optional[float]):
        self.expires_at = time.monotonic() + seconds if seconds else None

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def check(self, stage: IngestStage):
        if self.expires_at is not None and time.monotonic() >= self.expires_at:
            raise StageTimeoutError(f"Deadline exceeded during {stage.value}")


class IngestionOrchestrator:
    """
    Runs each candidate file through the ingestion pipeline:
    1. Classify (unknown formats are skipped)
    2. Hash & Dedup (identical content short-circuits to AlreadyPresent)
    3. Decode & Normalize (video: midpoint frame via ffmpeg)
    4. Detect faces, plan the crop, render thumbnail and preview
    5. Extract metadata (failure only means fewer fields)
    6. Emit to the catalog

    Every failure is caught here and turned into a per-file result;
    a batch never aborts because of one file.
    """

    def __init__(self,
                 store: CatalogStore,
                 dest_root: Path,
                 detector: Optional[FaceDetector] = None,
                 extractor: Optional[MetadataExtractor] = None,
                 prober: Optional[VideoProber] = None,
                 frame_extractor: Optional[VideoFrameExtractor] = None,
                 hasher: Optional[ContentHasher] = None,
                 planner: Optional[CropPlanner] = None,
                 thumbnails: Optional[ThumbnailRenderer] = None,
                 previews: Optional[PreviewRenderer] = None,
                 max_workers: int = config.DEFAULT_MAX_WORKERS,
                 timeout: Optional[float] = config.FILE_TIMEOUT_SEC,
                 show_progress: bool = False):
        self.store = store
        self.dest_root = Path(dest_root)
        self.detector = detector or FaceDetector()
        self.prober = prober or VideoProber()
        self.extractor = extractor or MetadataExtractor(prober=self.prober)
        self.frame_extractor = frame_extractor or VideoFrameExtractor()
        self.hasher = hasher or ContentHasher()
        self.planner = planner or CropPlanner()
        self.thumbnails = thumbnails or ThumbnailRenderer()
        self.previews = previews or PreviewRenderer()
        self.max_workers = max_workers
        self.timeout = timeout
        self.show_progress = show_progress

        # Content claimed by files of this run that are still in flight
        self._claims: Dict[ContentHash, threading.Event] = {}
        self._claims_lock = threading.Lock()
        # Destination stems handed out during this run
        self._used_stems: Set[str] = set()
        self._names_lock = threading.Lock()

    # --- Batch Entry Points ---

    def ingest_tree(self, roots: Iterable[Path], skip_dirs: Optional[Set[Path]] = None) -> List[IngestResult]:
        paths = list(iter_candidates(roots, skip_dirs))
        logging.info(f"Found {len(paths)} candidate files")
        return self.ingest_batch(paths)

    def ingest_batch(self, paths: Iterable[Path]) -> List[IngestResult]:
        """
        One independent task per file; results come back in input order.
        Concurrency is capped by max_workers regardless of batch size, which
        bounds peak memory and the number of external processes.
        """
        paths = [Path(p) for p in paths]
        progress = dict(total=len(paths), desc="Ingesting", disable=not self.show_progress)

        if self.max_workers <= 1:
            return [self.ingest_file(p) for p in tqdm(paths, **progress)]

        logging.info(f"Parallel ingest: {len(paths)} files, {self.max_workers} workers")
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            return list(tqdm(executor.map(self.ingest_file, paths), **progress))

    # --- Per-file Pipeline ---

    def ingest_file(self, path: Path) -> IngestResult:
        path = Path(path)
        stage = IngestStage.CLASSIFY
        written: List[Path] = []
        content_hash: Optional[ContentHash] = None
        claimed = False

        try:
            kind = classify(path.name)
            if kind is None:
                logging.info(f"Ignoring {path}")
                return Skipped(path, "unknown format")

            stage = IngestStage.HASH
            size_bytes = self._file_size(path)
            content_hash = self.hasher.hash_file(path)

            stage = IngestStage.DEDUP_CHECK
            duplicate = self._check_duplicate(path, content_hash)
            if duplicate is not None:
                return duplicate
            claimed = True

            deadline = Deadline(self.timeout)

            stage = IngestStage.DECODE
            probe, decoded = self._decode(path, kind, deadline)
            deadline.check(stage)

            stage = IngestStage.DETECT
            boxes = self.detector.detect(decoded.image)
            logging.debug(f"Detected {len(boxes)} faces in {path}")
            deadline.check(stage)

            stage = IngestStage.RENDER
            artifacts = self._write_artifacts(path, kind, decoded, boxes, written)
            deadline.check(stage)

            stage = IngestStage.EXTRACT_METADATA
            metadata = self._extract_metadata(path, kind, probe, deadline)
            deadline.check(stage)

            stage = IngestStage.EMIT
            entry = self.store.insert(NewEntry(
                media_class=kind.media_class,
                original_path=artifacts.original_path,
                thumbnail_path=artifacts.thumbnail_path,
                preview_path=artifacts.preview_path,
                size_bytes=size_bytes,
                content_hash=content_hash,
                captured_at=metadata.captured_at if metadata else None,
                gps=metadata.gps if metadata else None,
            ))
            logging.info(f"Imported {path} (id {entry.id})")
            return Imported(
                path=path,
                artifacts=artifacts,
                content_hash=content_hash,
                size_bytes=size_bytes,
                metadata=metadata,
                entry_id=entry.id,
            )

        except DuplicateEntryError:
            # Lost a race against another writer of the same content
            self._cleanup(written)
            return self._already_catalogued(path, content_hash)
        except MediaIngestError as e:
            self._cleanup(written)
            logging.error(f"Failed to ingest {path} ({stage.value}): {e}")
            return Failed(path, stage, str(e))
        except Exception as e:
            self._cleanup(written)
            logging.exception(f"Unexpected error ingesting {path} ({stage.value})")
            return Failed(path, stage, f"{type(e).__name__}: {e}")
        finally:
            if claimed:
                self._release(content_hash)

    # --- Stages ---

    def _file_size(self, path: Path) -> int:
        try:
            return path.stat().st_size
        except OSError as e:
            raise IoFailure(f"Failed to stat {path}: {e}") from e

    def _check_duplicate(self, path: Path, content_hash: ContentHash) -> Optional[AlreadyPresent]:
        """
        Returns AlreadyPresent only once the content is in the catalog.
        While another file of this run holds the claim, waits for it to
        finish and looks again; if that import failed, this file takes over.
        """
        while True:
            existing = self.store.find_by_hash(content_hash)
            if existing is not None:
                logging.info(f"{path} is already imported (id {existing.id})")
                return AlreadyPresent(path, content_hash, existing.original_path, existing.id)

            with self._claims_lock:
                in_flight = self._claims.get(content_hash)
                if in_flight is None:
                    self._claims[content_hash] = threading.Event()
                    return None
            logging.debug(f"{path} waits for an in-flight import of the same content")
            in_flight.wait()

    def _release(self, content_hash: Optional[ContentHash]):
        if content_hash is None:
            return
        with self._claims_lock:
            done = self._claims.pop(content_hash, None)
        if done is not None:
            done.set()

    def _already_catalogued(self, path: Path, content_hash: ContentHash) -> AlreadyPresent:
        existing = self.store.find_by_hash(content_hash)
        logging.info(f"{path} was catalogued concurrently by another import")
        if existing is None:
            return AlreadyPresent(path, content_hash)
        return AlreadyPresent(path, content_hash, existing.original_path, existing.id)

    def _decode(self,
                path: Path,
                kind: FormatKind,
                deadline: Deadline) -> Tuple[Optional[VideoProbe], DecodedMedia]:
        media_class = kind.media_class
        if media_class is MediaClass.VIDEO:
            # An expired budget must not reach subprocess as timeout=0
            deadline.check(IngestStage.DECODE)
            probe = self.prober.probe(path, timeout=deadline.remaining())
            deadline.check(IngestStage.DECODE)
            logging.debug(f"Snapshot of {path} at {probe.snapshot_time:.2f}s")
            return probe, self.frame_extractor.extract(path, probe, timeout=deadline.remaining())
        if media_class is MediaClass.RAW_IMAGE:
            return None, decode_raw(path)
        return None, decode_image(path)

    def _write_artifacts(self,
                         path: Path,
                         kind: FormatKind,
                         decoded: DecodedMedia,
                         boxes: List[BoundingBox],
                         written: List[Path]) -> ArtifactSet:
        original = self._reserve_destination(path)
        thumbnail = rendition_path(original, config.THUMBNAIL_SUFFIX)
        preview = rendition_path(original, config.PREVIEW_SUFFIX)

        written.append(original)
        try:
            shutil.copy2(path, original)
        except OSError as e:
            raise FileOperationError(f"Failed to copy {path} -> {original}: {e}") from e

        width, height = decoded.image.size
        region = self.planner.plan(width, height, boxes)
        written.append(thumbnail)
        self.thumbnails.write(decoded.image, region, thumbnail)

        verbatim = path if kind is FormatKind.JPEG and decoded.rotation is Rotation.NONE else None
        written.append(preview)
        self.previews.write(decoded.image, preview, source=verbatim)

        return ArtifactSet(original_path=original, thumbnail_path=thumbnail, preview_path=preview)

    def _extract_metadata(self,
                          path: Path,
                          kind: FormatKind,
                          probe: Optional[VideoProbe],
                          deadline: Deadline) -> Optional[CaptureMetadata]:
        deadline.check(IngestStage.EXTRACT_METADATA)
        try:
            return self.extractor.extract(path, kind, probe=probe, timeout=deadline.remaining())
        except MetadataExtractionError as e:
            logging.warning(f"Metadata unavailable for {path}: {e}")
            return None

    # --- Helpers ---

    def _reserve_destination(self, path: Path) -> Path:
        """Picks a destination name whose stem is unused, so renditions never collide."""
        try:
            self.dest_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileOperationError(f"Cannot create {self.dest_root}: {e}") from e

        stem, ext = path.stem, path.suffix
        candidate = stem
        counter = 1
        with self._names_lock:
            while self._stem_taken(candidate, ext):
                candidate = f"{stem}_{counter}"
                counter += 1
            self._used_stems.add(candidate.lower())
        return self.dest_root / f"{candidate}{ext}"

    def _stem_taken(self, stem: str, ext: str) -> bool:
        if stem.lower() in self._used_stems:
            return True
        original = self.dest_root / f"{stem}{ext}"
        return any(p.exists() for p in (
            original,
            rendition_path(original, config.THUMBNAIL_SUFFIX),
            rendition_path(original, config.PREVIEW_SUFFIX),
        ))

    def _cleanup(self, written: List[Path]):
        for p in written:
            try:
                p.unlink(missing_ok=True)
            except OSError as e:
                logging.warning(f"Could not remove partial file {p}: {e}")
