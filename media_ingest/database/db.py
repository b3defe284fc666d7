"""
Catalog database lifecycle.

One connection per ingest run, shared by the worker threads. sqlite3 objects
are not thread-safe on their own, so every statement issued through the
store goes through the manager's lock.
"""
import sqlite3
import logging
import threading
from pathlib import Path
from typing import Optional, Union

from ..exceptions import DatabaseError
from .ops import DBOperations
from .schema import init_schema

BUSY_TIMEOUT_MS = 5000


class DBManager:
    def __init__(self, db_path: Union[Path, str]):
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def connect(self) -> sqlite3.Connection:
        """Opens (creating if needed) the catalog and applies the schema."""
        if self._conn:
            return self._conn

        logging.info(f"Opening catalog: {self.db_path}")
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS};")
            init_schema(conn)
        except (OSError, sqlite3.Error) as e:
            raise DatabaseError(f"Cannot open catalog {self.db_path}: {e}") from e

        self._conn = conn
        return conn

    def store(self) -> DBOperations:
        """A catalog store bound to this connection and its lock."""
        return DBOperations(self.connect(), self._lock)

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "DBManager":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
