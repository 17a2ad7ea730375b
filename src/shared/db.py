"""
SQLite store for the archive: schema bootstrap, additive migrations,
and the single async connection every component writes through.

Uses ``aiosqlite`` with ``isolation_level=None`` so transactions are
explicit.  All queries use ``?`` placeholders, **never** string
interpolation of caller data.

Writers serialise on one ``asyncio.Lock``: the job drain loop and the
realtime event handlers share the connection, and a transaction opened by
one must not see statements from the other.  Reads do not take the lock.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

import aiosqlite

from shared.search_index import ensure_search_index

logger = logging.getLogger("shared.db")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS channels (
    channel_id TEXT PRIMARY KEY,
    peer_title TEXT,
    peer_type TEXT,
    chat_type TEXT,
    is_forum INTEGER,
    username TEXT,
    sync_enabled INTEGER NOT NULL DEFAULT 1,
    last_message_id INTEGER DEFAULT 0,
    last_message_date TEXT,
    oldest_message_id INTEGER,
    oldest_message_date TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS channel_metadata (
    channel_id TEXT PRIMARY KEY,
    about TEXT,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS channel_tags (
    channel_id TEXT NOT NULL,
    tag TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'manual',
    confidence REAL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (channel_id, tag, source)
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'pending',
    target_message_count INTEGER DEFAULT 1000,
    message_count INTEGER DEFAULT 0,
    cursor_message_id INTEGER,
    cursor_message_date TEXT,
    backfill_min_date TEXT,
    last_synced_at TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    error TEXT
);

CREATE TABLE IF NOT EXISTS users (
    user_id TEXT PRIMARY KEY,
    peer_type TEXT,
    username TEXT,
    display_name TEXT,
    phone TEXT,
    is_contact INTEGER,
    is_bot INTEGER,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS contacts (
    user_id TEXT PRIMARY KEY,
    alias TEXT,
    notes TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS contact_tags (
    user_id TEXT NOT NULL,
    tag TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (user_id, tag)
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id TEXT NOT NULL,
    message_id INTEGER NOT NULL,
    topic_id INTEGER,
    date INTEGER,
    from_id TEXT,
    text TEXT,
    links TEXT,
    files TEXT,
    sender TEXT,
    topic TEXT,
    raw_json TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(channel_id, message_id)
);

CREATE TABLE IF NOT EXISTS message_links (
    channel_id TEXT NOT NULL,
    message_id INTEGER NOT NULL,
    url TEXT NOT NULL,
    domain TEXT,
    UNIQUE(channel_id, message_id, url)
);

CREATE TABLE IF NOT EXISTS message_media (
    channel_id TEXT NOT NULL,
    message_id INTEGER NOT NULL,
    media_type TEXT,
    file_id TEXT,
    unique_file_id TEXT,
    file_name TEXT,
    mime_type TEXT,
    file_size INTEGER,
    width INTEGER,
    height INTEGER,
    duration REAL,
    extra_json TEXT,
    PRIMARY KEY (channel_id, message_id)
);

CREATE TABLE IF NOT EXISTS topics (
    channel_id TEXT NOT NULL,
    topic_id INTEGER NOT NULL,
    title TEXT,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (channel_id, topic_id)
);

CREATE TABLE IF NOT EXISTS search_meta (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER,
    channel_id TEXT,
    action TEXT NOT NULL,
    details TEXT,
    success INTEGER NOT NULL DEFAULT 1,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs (status, updated_at);
CREATE INDEX IF NOT EXISTS idx_messages_channel_date ON messages (channel_id, date);
CREATE INDEX IF NOT EXISTS idx_messages_channel_topic ON messages (channel_id, topic_id);
CREATE INDEX IF NOT EXISTS idx_message_links_domain ON message_links (domain);
CREATE INDEX IF NOT EXISTS idx_message_media_type ON message_media (media_type);
CREATE INDEX IF NOT EXISTS idx_channel_tags_tag ON channel_tags (tag, source);
CREATE INDEX IF NOT EXISTS idx_contact_tags_tag ON contact_tags (tag);
"""

# Columns added after the first release.  Checked one by one so that an
# installation created by any earlier version upgrades in place.
_COLUMN_MIGRATIONS: Sequence[tuple[str, str, str]] = (
    ("channels", "peer_type", "TEXT"),
    ("channels", "chat_type", "TEXT"),
    ("channels", "is_forum", "INTEGER"),
    ("channels", "username", "TEXT"),
    ("channels", "sync_enabled", "INTEGER NOT NULL DEFAULT 1"),
    ("channels", "last_message_date", "TEXT"),
    ("channels", "oldest_message_id", "INTEGER"),
    ("channels", "oldest_message_date", "TEXT"),
    ("channel_tags", "confidence", "REAL"),
    ("jobs", "cursor_message_id", "INTEGER"),
    ("jobs", "cursor_message_date", "TEXT"),
    ("jobs", "backfill_min_date", "TEXT"),
    ("jobs", "last_synced_at", "TEXT"),
    ("jobs", "error", "TEXT"),
    ("users", "phone", "TEXT"),
    ("users", "is_contact", "INTEGER"),
    ("users", "is_bot", "INTEGER"),
    ("messages", "topic_id", "INTEGER"),
    ("messages", "links", "TEXT"),
    ("messages", "files", "TEXT"),
    ("messages", "sender", "TEXT"),
    ("messages", "topic", "TEXT"),
    ("messages", "raw_json", "TEXT"),
    ("audit_log", "job_id", "INTEGER"),
    ("audit_log", "channel_id", "TEXT"),
)


class Store:
    """Owner of the archive's SQLite connection.

    Construct with :meth:`open`; every other component receives the
    instance by constructor injection.

    Args:
        conn: An open ``aiosqlite`` connection in autocommit mode.
        path: Database file path (for logging and diagnostics).
    """

    def __init__(self, conn: aiosqlite.Connection, path: Path) -> None:
        self._conn = conn
        self._path = path
        self._write_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def open(cls, path: Path | str) -> "Store":
        """Open (creating if needed) the database file at ``path``."""
        db_path = Path(path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(db_path, isolation_level=None)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA busy_timeout=5000")
        logger.info("Opened archive store at %s", db_path)
        return cls(conn, db_path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Close the connection.  Safe to call twice."""
        if self._closed:
            return
        async with self._write_lock:
            self._closed = True
            await self._conn.close()
        logger.info("Closed archive store at %s", self._path)

    async def __aenter__(self) -> "Store":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block of statements atomically.

        Yields the raw connection; statements inside the block must use it
        directly (calling :meth:`execute` here would deadlock on the write
        lock).
        """
        async with self._write_lock:
            await self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                await self._conn.execute("ROLLBACK")
                raise
            else:
                await self._conn.execute("COMMIT")

    async def execute(
        self, sql: str, params: Sequence[Any] | Dict[str, Any] = ()
    ) -> int:
        """Execute a single write statement and return its rowcount."""
        async with self._write_lock:
            cursor = await self._conn.execute(sql, params)
            rowcount = cursor.rowcount
            await cursor.close()
            return rowcount

    async def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> None:
        async with self.transaction() as conn:
            await conn.executemany(sql, rows)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        async with self._conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        async with self._conn.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def fetchval(self, sql: str, params: Sequence[Any] = ()) -> Any:
        async with self._conn.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return row[0] if row is not None else None


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


async def _table_columns(conn: aiosqlite.Connection, table: str) -> set[str]:
    async with conn.execute(f"PRAGMA table_info({table})") as cursor:
        rows = await cursor.fetchall()
    return {row["name"] for row in rows}


async def ensure_column(
    conn: aiosqlite.Connection, table: str, column: str, definition: str
) -> bool:
    """Add ``column`` to ``table`` unless it already exists.

    Returns:
        True if the column was added.
    """
    if column in await _table_columns(conn, table):
        return False
    await conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
    logger.info("Migrated %s: added column %s", table, column)
    return True


async def init_database(store: Store) -> None:
    """Create or upgrade the schema and the full-text index.

    Idempotent; runs on every start.
    """
    async with store.transaction() as conn:
        # executescript() would commit the open transaction, so run the
        # statements one at a time.
        for statement in _split_statements(SCHEMA_SQL):
            await conn.execute(statement)
        for table, column, definition in _COLUMN_MIGRATIONS:
            await ensure_column(conn, table, column, definition)
        await conn.execute(
            "INSERT OR IGNORE INTO channels (channel_id) SELECT channel_id FROM jobs"
        )

    await ensure_search_index(store)


def _split_statements(script: str) -> List[str]:
    return [part.strip() for part in script.split(";") if part.strip()]


async def health_check(store: Store) -> bool:
    """Return True if the store answers a trivial query."""
    try:
        return await store.fetchval("SELECT 1") == 1
    except Exception:
        logger.exception("Store health check failed")
        return False
