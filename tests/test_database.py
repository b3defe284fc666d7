from datetime import datetime, timezone
from pathlib import Path

import pytest

from media_ingest.database.db import DBManager
from media_ingest.database.schema import init_schema
from media_ingest.exceptions import DuplicateEntryError
from media_ingest.models import ContentHash, GpsLocation, MediaClass, NewEntry


def new_entry(digest_byte=1, media_class=MediaClass.IMAGE, name="a.jpg", **kwargs):
    return NewEntry(
        media_class=media_class,
        original_path=Path("/library") / name,
        thumbnail_path=Path("/library") / f"{Path(name).stem}_thumbnail.jpg",
        preview_path=Path("/library") / f"{Path(name).stem}_preview.jpg",
        size_bytes=1234,
        content_hash=ContentHash(bytes([digest_byte]) * 32),
        **kwargs,
    )


def test_insert_and_find(db_ops, conn):
    entry = new_entry(
        captured_at=datetime(2021, 6, 1, 10, 20, 30, tzinfo=timezone.utc),
        gps=GpsLocation(59.33, 18.07, "Stockholm, Sweden"),
    )
    stored = db_ops.insert(entry)

    found = db_ops.find_by_hash(entry.content_hash)
    assert found == stored
    assert found.original_path == Path("/library/a.jpg")

    row = conn.execute("SELECT created, latitude, place, size_bytes FROM entities").fetchone()
    assert row == ("2021-06-01T10:20:30+00:00", 59.33, "Stockholm, Sweden", 1234)


def test_find_missing_hash(db_ops):
    assert db_ops.find_by_hash(ContentHash(bytes(32))) is None


def test_duplicate_hash_is_rejected(db_ops, conn):
    db_ops.insert(new_entry(name="a.jpg"))
    with pytest.raises(DuplicateEntryError):
        db_ops.insert(new_entry(name="b.jpg"))
    assert db_ops.count() == 1
    paths = [row[0] for row in conn.execute("SELECT path FROM entities")]
    assert paths == [str(Path("/library/a.jpg"))]


def test_raw_images_are_stored_as_images(db_ops):
    stored = db_ops.insert(new_entry(media_class=MediaClass.RAW_IMAGE, name="a.cr2"))
    assert stored.media_class is MediaClass.IMAGE
    assert db_ops.find_by_hash(stored.content_hash).media_class is MediaClass.IMAGE


def test_optional_fields_may_be_absent(db_ops, conn):
    db_ops.insert(new_entry(media_class=MediaClass.VIDEO, name="clip.mp4"))
    row = conn.execute("SELECT media_class, created, latitude, longitude, place FROM entities").fetchone()
    assert row == ("video", None, None, None, None)


def test_schema_is_idempotent(conn):
    init_schema(conn)
    init_schema(conn)
    assert conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0] == 1


def test_db_manager_file_database(tmp_path):
    db_path = tmp_path / "catalog.db"
    with DBManager(db_path) as db:
        db.store().insert(new_entry())
    with DBManager(db_path) as db:
        assert db.store().count() == 1
