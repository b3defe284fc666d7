"""
Database schema definitions.
"""
import sqlite3
import logging

CURRENT_SCHEMA_VERSION = 1

def init_schema(conn: sqlite3.Connection):
    """
    Applies the catalog schema to the database.
    Idempotent: safe to run on every startup.
    """
    with conn:
        # 1. Version Tracking (For future migrations)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_version")
        if not cur.fetchone():
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

        # 2. Catalog Entities
        # The UNIQUE sha3 column is what makes concurrent duplicate imports safe
        conn.execute("""
        CREATE TABLE IF NOT EXISTS entities (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            media_class     TEXT NOT NULL,
            path            TEXT NOT NULL,
            thumbnail_path  TEXT NOT NULL,
            preview_path    TEXT NOT NULL,
            size_bytes      INTEGER NOT NULL,
            sha3            BLOB NOT NULL UNIQUE,
            created         TEXT,
            latitude        REAL,
            longitude       REAL,
            place           TEXT,
            uploaded        TEXT NOT NULL
        );
        """)

        # 3. Indices for Performance
        conn.execute("CREATE INDEX IF NOT EXISTS idx_entities_created ON entities(created);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_entities_path ON entities(path);")

    logging.debug("Database schema initialized.")
