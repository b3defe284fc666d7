import threading
import time
from pathlib import Path

import piexif
import pytest
from PIL import Image

from media_ingest import core
from media_ingest.core import Deadline, IngestionOrchestrator
from media_ingest.exceptions import DuplicateEntryError, FileOperationError, MetadataExtractionError, StageTimeoutError
from media_ingest.imaging.decode import DecodedMedia
from media_ingest.imaging.faces import FaceDetector, NullBackend
from media_ingest.imaging.render import PreviewRenderer
from media_ingest.metadata.extract import MetadataExtractor
from media_ingest.metadata.probe import VideoProbe
from media_ingest.models import (
    AlreadyPresent,
    CatalogEntry,
    Failed,
    Imported,
    IngestStage,
    MediaClass,
    Rotation,
    Skipped,
    VideoFields,
)

from conftest import FixedBackend


def no_geocoder(lat, lon):
    return None


@pytest.fixture
def dest(tmp_path):
    return tmp_path / "library"


@pytest.fixture
def make_orchestrator(db_ops, dest):
    def _make(**overrides):
        kwargs = dict(
            store=db_ops,
            dest_root=dest,
            detector=FaceDetector(NullBackend()),
            extractor=MetadataExtractor(geocoder=no_geocoder),
            max_workers=1,
        )
        kwargs.update(overrides)
        return IngestionOrchestrator(**kwargs)
    return _make


def rendition_names(dest):
    return sorted(p.name for p in dest.iterdir()) if dest.exists() else []


# --- Happy paths ---

def test_import_jpeg_with_face(make_orchestrator, make_image, db_ops, dest):
    src = make_image("src/IMG_0001.jpg", size=(600, 400))
    detector = FaceDetector(FixedBackend(boxes=[[100, 200, 200, 300]]))

    result = make_orchestrator(detector=detector).ingest_file(src)

    assert isinstance(result, Imported)
    artifacts = result.artifacts
    assert artifacts.original_path == dest / "IMG_0001.jpg"
    assert artifacts.original_path.read_bytes() == src.read_bytes()

    with Image.open(artifacts.thumbnail_path) as thumb:
        assert thumb.size == (300, 200)
    # Small unrotated JPEG: the preview is the original bytes
    assert artifacts.preview_path.read_bytes() == src.read_bytes()

    assert result.metadata.width == 600
    assert result.size_bytes == src.stat().st_size
    assert db_ops.count() == 1
    assert db_ops.find_by_hash(result.content_hash).id == result.entry_id


def test_import_rotated_jpeg_with_gps(make_orchestrator, make_image, dest):
    exif = piexif.dump({
        "0th": {
            piexif.ImageIFD.Orientation: 6,
            piexif.ImageIFD.ImageWidth: 400,
            piexif.ImageIFD.ImageLength: 300,
        },
        "GPS": {
            piexif.GPSIFD.GPSLatitudeRef: b"N",
            piexif.GPSIFD.GPSLatitude: ((59, 1), (0, 1), (0, 1)),
            piexif.GPSIFD.GPSLongitudeRef: b"E",
            piexif.GPSIFD.GPSLongitude: ((18, 1), (0, 1), (0, 1)),
        },
    })
    src = make_image("src/phone.jpg", size=(400, 300), exif=exif)
    backend = FixedBackend()

    result = make_orchestrator(detector=FaceDetector(backend)).ingest_file(src)

    assert isinstance(result, Imported)
    # Detection sees the upright 300x400 frame
    assert backend.calls == [(400, 300, 3)]
    with Image.open(result.artifacts.thumbnail_path) as thumb:
        assert thumb.size == (300, 200)
    # Rotated source: the preview is re-encoded upright, not copied
    with Image.open(result.artifacts.preview_path) as preview:
        assert preview.size == (300, 400)
    assert result.metadata.rotation is Rotation.CW90
    assert result.metadata.gps.latitude == pytest.approx(59.0)


def test_import_png_without_faces(make_orchestrator, make_image, dest):
    src = make_image("src/screen.png", size=(800, 300))

    result = make_orchestrator().ingest_file(src)

    assert isinstance(result, Imported)
    with Image.open(result.artifacts.thumbnail_path) as thumb:
        assert thumb.size == (300, 200)
    with Image.open(result.artifacts.preview_path) as preview:
        assert preview.format == "JPEG"
        assert preview.size == (800, 300)
    assert rendition_names(dest) == ["screen.png", "screen_preview.jpg", "screen_thumbnail.jpg"]


class FakeProber:
    def __init__(self, probe):
        self.probe_result = probe
        self.calls = 0

    def probe(self, path, timeout=None):
        self.calls += 1
        return self.probe_result


class FakeFrameExtractor:
    def __init__(self):
        self.snapshots = []

    def extract(self, path, probe, timeout=None):
        self.snapshots.append(probe.snapshot_time)
        width, height = (probe.height, probe.width) if probe.rotation.swaps_axes else (probe.width, probe.height)
        return DecodedMedia(Image.new("RGB", (width, height), (40, 40, 40)))


def test_import_rotated_video(make_orchestrator, tmp_path, db_ops):
    src = tmp_path / "src" / "clip.mp4"
    src.parent.mkdir()
    src.write_bytes(b"not really a movie")

    prober = FakeProber(VideoProbe(width=1920, height=1080, duration=10.0, rotation=Rotation.CW90))
    frames = FakeFrameExtractor()
    orchestrator = make_orchestrator(
        prober=prober,
        frame_extractor=frames,
        extractor=MetadataExtractor(geocoder=no_geocoder, prober=prober),
    )

    result = orchestrator.ingest_file(src)

    assert isinstance(result, Imported)
    assert frames.snapshots == [5.0]
    # The probe is reused for metadata
    assert prober.calls == 1
    assert result.metadata.type_specific == VideoFields(duration=10.0)
    assert result.metadata.rotation is Rotation.CW90

    with Image.open(result.artifacts.thumbnail_path) as thumb:
        assert thumb.size == (300, 200)
    with Image.open(result.artifacts.preview_path) as preview:
        assert preview.size == (1080, 1920)

    entry = db_ops.find_by_hash(result.content_hash)
    assert entry.media_class is MediaClass.VIDEO


# --- Deduplication ---

def test_reimport_is_already_present(make_orchestrator, make_image, db_ops, dest):
    src = make_image("src/a.jpg")
    first = make_orchestrator().ingest_file(src)
    names_after_first = rendition_names(dest)

    second = make_orchestrator().ingest_file(src)

    assert isinstance(second, AlreadyPresent)
    assert second.existing_id == first.entry_id
    assert second.existing_path == first.artifacts.original_path
    assert db_ops.count() == 1
    assert rendition_names(dest) == names_after_first


def test_duplicate_content_in_one_batch(make_orchestrator, make_image, tmp_path, db_ops):
    a = make_image("src/one/photo.jpg")
    b = tmp_path / "src" / "two" / "copy.jpg"
    b.parent.mkdir(parents=True)
    b.write_bytes(a.read_bytes())

    results = make_orchestrator().ingest_batch([a, b])

    assert isinstance(results[0], Imported)
    assert isinstance(results[1], AlreadyPresent)
    assert results[1].existing_id == results[0].entry_id
    assert db_ops.count() == 1


def test_duplicate_content_concurrent(make_orchestrator, make_image, tmp_path, db_ops):
    original = make_image("src/photo.jpg")
    paths = [original]
    for i in range(5):
        p = tmp_path / "src" / f"dup{i}.jpg"
        p.write_bytes(original.read_bytes())
        paths.append(p)

    results = make_orchestrator(max_workers=4).ingest_batch(paths)

    assert [r.path for r in results] == paths
    assert sum(isinstance(r, Imported) for r in results) == 1
    assert sum(isinstance(r, AlreadyPresent) for r in results) == 5
    assert db_ops.count() == 1


def test_duplicate_takes_over_when_first_copy_fails(make_orchestrator, make_image, tmp_path, db_ops):
    class FailsOnce(NullBackend):
        def __init__(self):
            self.calls = 0
            self.lock = threading.Lock()

        def run(self, bgr, min_size, thresholds, factor):
            with self.lock:
                self.calls += 1
                first = self.calls == 1
            if first:
                time.sleep(0.3)
                raise RuntimeError("model session lost")
            return super().run(bgr, min_size, thresholds, factor)

    a = make_image("src/a.jpg")
    b = tmp_path / "src" / "b.jpg"
    b.write_bytes(a.read_bytes())

    results = make_orchestrator(detector=FaceDetector(FailsOnce()), max_workers=2).ingest_batch([a, b])

    assert sorted(type(r).__name__ for r in results) == ["Failed", "Imported"]
    assert db_ops.count() == 1
    imported = next(r for r in results if isinstance(r, Imported))
    assert db_ops.find_by_hash(imported.content_hash).id == imported.entry_id


class RacingStore:
    """Looks empty on the first lookup, then loses the insert to another writer."""

    def __init__(self):
        self.lookups = 0

    def find_by_hash(self, content_hash):
        self.lookups += 1
        if self.lookups == 1:
            return None
        return CatalogEntry(id=42, media_class=MediaClass.IMAGE,
                            original_path=Path("/library/winner.jpg"), content_hash=content_hash)

    def insert(self, entry):
        raise DuplicateEntryError("already catalogued")


def test_lost_insert_race_cleans_up(make_orchestrator, make_image, dest):
    src = make_image("src/a.jpg")

    result = make_orchestrator(store=RacingStore()).ingest_file(src)

    assert isinstance(result, AlreadyPresent)
    assert result.existing_id == 42
    assert rendition_names(dest) == []


# --- Failures ---

def test_failures_are_isolated(make_orchestrator, make_image, tmp_path, db_ops, dest):
    good = make_image("src/good.jpg")
    corrupt = tmp_path / "src" / "corrupt.jpg"
    corrupt.write_bytes(b"garbage bytes")
    notes = tmp_path / "src" / "notes.txt"
    notes.write_text("not media")

    results = make_orchestrator().ingest_batch([corrupt, notes, good])

    assert isinstance(results[0], Failed)
    assert results[0].stage is IngestStage.DECODE
    assert isinstance(results[1], Skipped)
    assert isinstance(results[2], Imported)
    assert db_ops.count() == 1
    assert not (dest / "corrupt.jpg").exists()


def test_missing_file_fails_at_hash(make_orchestrator, tmp_path):
    result = make_orchestrator().ingest_file(tmp_path / "gone.jpg")
    assert isinstance(result, Failed)
    assert result.stage is IngestStage.HASH


def test_detection_failure(make_orchestrator, make_image, db_ops):
    class Broken(NullBackend):
        def run(self, bgr, min_size, thresholds, factor):
            raise RuntimeError("model session lost")

    src = make_image("src/a.jpg")
    result = make_orchestrator(detector=FaceDetector(Broken())).ingest_file(src)

    assert isinstance(result, Failed)
    assert result.stage is IngestStage.DETECT
    assert db_ops.count() == 0


def test_render_failure_removes_partial_artifacts(make_orchestrator, make_image, dest, db_ops):
    class FailingPreview(PreviewRenderer):
        def write(self, img, dest, source=None):
            dest.write_bytes(b"partial")
            raise FileOperationError("disk full")

    src = make_image("src/a.jpg")
    result = make_orchestrator(previews=FailingPreview()).ingest_file(src)

    assert isinstance(result, Failed)
    assert result.stage is IngestStage.RENDER
    assert rendition_names(dest) == []
    assert db_ops.count() == 0

    # A later retry of the same content is not blocked
    retry = make_orchestrator().ingest_file(src)
    assert isinstance(retry, Imported)


def test_metadata_failure_does_not_block_import(make_orchestrator, make_image, db_ops):
    class NoMetadata(MetadataExtractor):
        def extract(self, path, kind=None, probe=None, timeout=None):
            raise MetadataExtractionError("unreadable")

    src = make_image("src/a.jpg")
    result = make_orchestrator(extractor=NoMetadata(geocoder=no_geocoder)).ingest_file(src)

    assert isinstance(result, Imported)
    assert result.metadata is None
    assert db_ops.count() == 1


def test_deadline_exceeded(make_orchestrator, make_image, dest):
    class Slow(NullBackend):
        def run(self, bgr, min_size, thresholds, factor):
            time.sleep(0.6)
            return super().run(bgr, min_size, thresholds, factor)

    src = make_image("src/a.jpg")
    result = make_orchestrator(detector=FaceDetector(Slow()), timeout=0.3).ingest_file(src)

    assert isinstance(result, Failed)
    assert result.stage is IngestStage.DETECT
    assert rendition_names(dest) == []


def test_deadline():
    assert Deadline(None).remaining() is None
    Deadline(None).check(IngestStage.DECODE)

    d = Deadline(60)
    assert 0 < d.remaining() <= 60
    d.expires_at = time.monotonic() - 1
    assert d.remaining() == 0.0
    with pytest.raises(StageTimeoutError):
        d.check(IngestStage.RENDER)


def test_expired_deadline_never_launches_prober(make_orchestrator, tmp_path, dest, monkeypatch):
    class Expired(Deadline):
        def __init__(self, seconds):
            self.expires_at = time.monotonic() - 1

    monkeypatch.setattr(core, "Deadline", Expired)
    src = tmp_path / "src" / "clip.mp4"
    src.parent.mkdir()
    src.write_bytes(b"not really a movie")
    prober = FakeProber(VideoProbe(width=1920, height=1080, duration=10.0))

    result = make_orchestrator(prober=prober, frame_extractor=FakeFrameExtractor()).ingest_file(src)

    assert isinstance(result, Failed)
    assert result.stage is IngestStage.DECODE
    assert "Deadline exceeded" in result.reason
    assert prober.calls == 0
    assert rendition_names(dest) == []


# --- Naming ---

def test_name_collisions_get_suffix(make_orchestrator, make_image, dest):
    a = make_image("src/one/photo.jpg", color=(10, 10, 10))
    b = make_image("src/two/photo.jpg", color=(200, 200, 200))
    c = make_image("src/three/photo.png", color=(90, 90, 90))

    results = make_orchestrator().ingest_batch([a, b, c])

    originals = [r.artifacts.original_path.name for r in results]
    assert originals == ["photo.jpg", "photo_1.jpg", "photo_2.png"]
    thumbnails = {r.artifacts.thumbnail_path for r in results}
    assert len(thumbnails) == 3


def test_ingest_tree(make_orchestrator, make_image, tmp_path, db_ops):
    make_image("src/a.jpg")
    make_image("src/nested/b.png")
    (tmp_path / "src" / "nested" / "readme.txt").write_text("x")
    make_image("src/skip/c.jpg")

    results = make_orchestrator().ingest_tree([tmp_path / "src"], skip_dirs={tmp_path / "src" / "skip"})

    assert sum(isinstance(r, Imported) for r in results) == 2
    assert sum(isinstance(r, Skipped) for r in results) == 1
    assert db_ops.count() == 2
