import sqlite3
import threading
from datetime import datetime, UTC
from pathlib import Path
from typing import Optional, Protocol

from ..exceptions import DatabaseError, DuplicateEntryError
from ..models import CatalogEntry, ContentHash, MediaClass, NewEntry


class CatalogStore(Protocol):
    """
    The storage collaborator the ingestion pipeline talks to.

    insert() must enforce content-hash uniqueness and raise
    DuplicateEntryError when it is violated; the pipeline relies on that to
    stay correct when identical files are ingested concurrently.
    """

    def find_by_hash(self, content_hash: ContentHash) -> Optional[CatalogEntry]:
        ...

    def insert(self, entry: NewEntry) -> CatalogEntry:
        ...


class DBOperations:
    """SQLite-backed CatalogStore."""

    def __init__(self, conn: sqlite3.Connection, lock: Optional[threading.Lock] = None):
        self.conn = conn
        self.lock = lock or threading.Lock()

    def find_by_hash(self, content_hash: ContentHash) -> Optional[CatalogEntry]:
        with self.lock:
            cur = self.conn.cursor()
            cur.execute(
                "SELECT id, media_class, path, sha3 FROM entities WHERE sha3 = ?",
                (content_hash.digest,),
            )
            row = cur.fetchone()
        return self._row_to_entry(row) if row else None

    def insert(self, entry: NewEntry) -> CatalogEntry:
        now_iso = datetime.now(UTC).isoformat()
        gps = entry.gps
        params = (
            self._stored_class(entry.media_class).value,
            str(entry.original_path),
            str(entry.thumbnail_path),
            str(entry.preview_path),
            entry.size_bytes,
            entry.content_hash.digest,
            entry.captured_at.isoformat() if entry.captured_at else None,
            gps.latitude if gps else None,
            gps.longitude if gps else None,
            gps.place if gps else None,
            now_iso,
        )

        with self.lock:
            try:
                with self.conn:
                    cur = self.conn.execute("""
                        INSERT INTO entities (
                            media_class, path, thumbnail_path, preview_path, size_bytes,
                            sha3, created, latitude, longitude, place, uploaded
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, params)
            except sqlite3.IntegrityError as e:
                raise DuplicateEntryError(f"Content {entry.content_hash} is already catalogued") from e
            except sqlite3.Error as e:
                raise DatabaseError(f"Insert failed for {entry.original_path}: {e}") from e

        if cur.lastrowid is None:
            raise DatabaseError("Database INSERT failed to return a row ID.")

        return CatalogEntry(
            id=cur.lastrowid,
            media_class=self._stored_class(entry.media_class),
            original_path=entry.original_path,
            content_hash=entry.content_hash,
        )

    def count(self) -> int:
        with self.lock:
            cur = self.conn.cursor()
            cur.execute("SELECT COUNT(*) FROM entities")
            return cur.fetchone()[0]

    def _stored_class(self, media_class: MediaClass) -> MediaClass:
        # The catalog only distinguishes stills from video
        return MediaClass.IMAGE if media_class is MediaClass.RAW_IMAGE else media_class

    def _row_to_entry(self, row) -> CatalogEntry:
        entry_id, media_class, path, sha3 = row
        return CatalogEntry(
            id=entry_id,
            media_class=MediaClass(media_class),
            original_path=Path(path),
            content_hash=ContentHash(bytes(sha3)),
        )
