import sqlite3
from pathlib import Path

from .errors import StoreError
from .utils import now_iso

SCHEMA_VERSION = "1"

SCHEMA = """
CREATE TABLE IF NOT EXISTS items (
    item_id TEXT PRIMARY KEY,
    channel_id TEXT NOT NULL,
    author_id TEXT NOT NULL,
    attachment_id TEXT NOT NULL,
    attachment_url TEXT NOT NULL,
    attachment_filename TEXT,
    content_type TEXT,
    message_text TEXT,
    audio_path TEXT,
    transcript_path TEXT,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    next_retry_at TEXT,
    last_error TEXT,
    journal_path TEXT,
    jump_url TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_items_status_next ON items(status, next_retry_at);

CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    command TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    processed_count INTEGER NOT NULL DEFAULT 0,
    success_count INTEGER NOT NULL DEFAULT 0,
    failed_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def connect_db(path) -> sqlite3.Connection:
    """Open the state DB (creating parent dirs and schema). One connection per invocation."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        with conn:
            conn.executescript(SCHEMA)
            conn.execute(
                "INSERT INTO kv(key, value, updated_at) VALUES('schema_version', ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at",
                (SCHEMA_VERSION, now_iso()),
            )
    except (sqlite3.Error, OSError) as e:
        raise StoreError(f"open state db {path}: {e}")
    return conn
