"""
Full-text search index over archived messages.

``message_search`` is an FTS5 external-content table shadowing the
``messages`` columns ``text``, ``links``, ``files``, ``sender`` and
``topic``.  Three triggers keep it in step with every insert, update and
delete on ``messages``, inside the same transaction as the base row write,
so the index cannot drift from the rows it covers.

The index definition is versioned.  When the stored version (or the
table's DDL) does not match what this module expects, the table and
triggers are dropped, the derived columns are recomputed for every
message from its stored payload, and the index is rebuilt from scratch.

This module also owns the derivation of those search-support fields, so
the ingestion paths and the rebuild path produce identical values.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from urllib.parse import urlsplit

import aiosqlite

if TYPE_CHECKING:
    from shared.db import Store

logger = logging.getLogger("shared.search_index")

SEARCH_INDEX_VERSION = 2
MEDIA_INDEX_VERSION = 1

_SEARCH_VERSION_KEY = "search_index_version"
_MEDIA_VERSION_KEY = "media_index_version"
_REBUILD_BATCH_SIZE = 500

URL_PATTERN = re.compile(r"https?://[^\s<>\"')]+", re.IGNORECASE)
_TRAILING_PUNCTUATION = re.compile(r"[),.!?;:]+$")
FILE_NAME_PATTERN = re.compile(r"\b[\w.\-]+\.[a-z0-9]{2,7}\b", re.IGNORECASE)
MAX_FILENAME_SCAN_DEPTH = 5

_FTS_COLUMNS = "text, links, files, sender, topic"
_NEW_VALUES = (
    "COALESCE(new.text, ''), COALESCE(new.links, ''), COALESCE(new.files, ''), "
    "COALESCE(new.sender, ''), COALESCE(new.topic, '')"
)
_OLD_VALUES = _NEW_VALUES.replace("new.", "old.")

_CREATE_INDEX_STATEMENTS = (
    f"""
    CREATE VIRTUAL TABLE IF NOT EXISTS message_search USING fts5(
        {_FTS_COLUMNS},
        content='messages',
        content_rowid='id',
        tokenize='unicode61'
    )
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS messages_ai AFTER INSERT ON messages BEGIN
        INSERT INTO message_search(rowid, {_FTS_COLUMNS})
        VALUES (new.id, {_NEW_VALUES});
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS messages_ad AFTER DELETE ON messages BEGIN
        INSERT INTO message_search(message_search, rowid, {_FTS_COLUMNS})
        VALUES ('delete', old.id, {_OLD_VALUES});
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS messages_au AFTER UPDATE ON messages BEGIN
        INSERT INTO message_search(message_search, rowid, {_FTS_COLUMNS})
        VALUES ('delete', old.id, {_OLD_VALUES});
        INSERT INTO message_search(rowid, {_FTS_COLUMNS})
        VALUES (new.id, {_NEW_VALUES});
    END
    """,
)

_DROP_INDEX_STATEMENTS = (
    "DROP TRIGGER IF EXISTS messages_ai",
    "DROP TRIGGER IF EXISTS messages_ad",
    "DROP TRIGGER IF EXISTS messages_au",
    "DROP TABLE IF EXISTS message_search",
)


# ---------------------------------------------------------------------------
# Derived search fields
# ---------------------------------------------------------------------------


@dataclass
class SearchFields:
    """Search-support columns derived from one message payload."""

    links: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    sender: str = ""
    topic: str = ""

    @property
    def links_text(self) -> str:
        return " ".join(self.links)

    @property
    def files_text(self) -> str:
        return " ".join(self.files)


def _dedupe(values: List[str]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


def extract_links(text: Optional[str], media: Optional[Dict[str, Any]] = None) -> List[str]:
    """Return every distinct URL in ``text`` and in the media extras."""
    candidates: List[str] = []
    sources = [text or ""]
    if media:
        extras = media.get("extras") or {}
        sources.extend(str(value) for value in extras.values() if isinstance(value, str))
    for source in sources:
        for match in URL_PATTERN.findall(source):
            url = _TRAILING_PUNCTUATION.sub("", match)
            if url:
                candidates.append(url)
    return _dedupe(candidates)


def link_domain(url: str) -> Optional[str]:
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def _scan_file_names(value: Any, depth: int, out: List[str]) -> None:
    if depth > MAX_FILENAME_SCAN_DEPTH:
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if key in ("file_name", "fileName") and isinstance(item, str):
                out.append(item)
            elif isinstance(item, (dict, list)):
                _scan_file_names(item, depth + 1, out)
    elif isinstance(value, list):
        for item in value:
            _scan_file_names(item, depth + 1, out)


def extract_file_names(
    text: Optional[str],
    media: Optional[Dict[str, Any]] = None,
    raw: Any = None,
) -> List[str]:
    """Collect file names from the media summary, the raw payload and the text."""
    names: List[str] = []
    if media and media.get("file_name"):
        names.append(str(media["file_name"]))
    if raw is not None:
        _scan_file_names(raw, 0, names)
    # URLs end in things that look like file names (example.com); skip them.
    stripped = URL_PATTERN.sub(" ", text or "")
    names.extend(FILE_NAME_PATTERN.findall(stripped))
    return _dedupe(names)


def build_sender_text(payload: Dict[str, Any]) -> str:
    username = payload.get("from_username")
    parts = [
        username,
        f"@{username}" if username else None,
        payload.get("from_display_name"),
        payload.get("from_id"),
    ]
    return " ".join(str(part) for part in parts if part)


def derive_search_fields(
    text: Optional[str],
    payload: Dict[str, Any],
    topic_title: Optional[str] = None,
) -> SearchFields:
    """Compute the search-support columns for a message.

    Args:
        text: Message text as stored.
        payload: The serialized message (see ``RemoteMessage.to_dict``).
        topic_title: Stored forum topic title, used when the payload has none.
    """
    media = payload.get("media") or None
    return SearchFields(
        links=extract_links(text, media),
        files=extract_file_names(text, media, payload.get("raw")),
        sender=build_sender_text(payload),
        topic=payload.get("topic_title") or topic_title or "",
    )


def load_payload(raw_json: Optional[str]) -> Dict[str, Any]:
    if not raw_json:
        return {}
    try:
        payload = json.loads(raw_json)
    except ValueError:
        logger.debug("Unparseable raw_json payload; treating as empty")
        return {}
    return payload if isinstance(payload, dict) else {}


# ---------------------------------------------------------------------------
# Link / media side tables
# ---------------------------------------------------------------------------


async def replace_links(
    conn: aiosqlite.Connection, channel_id: str, message_id: int, links: List[str]
) -> None:
    await conn.execute(
        "DELETE FROM message_links WHERE channel_id = ? AND message_id = ?",
        (channel_id, message_id),
    )
    if links:
        await conn.executemany(
            "INSERT OR IGNORE INTO message_links (channel_id, message_id, url, domain) "
            "VALUES (?, ?, ?, ?)",
            [(channel_id, message_id, url, link_domain(url)) for url in links],
        )


async def replace_media(
    conn: aiosqlite.Connection,
    channel_id: str,
    message_id: int,
    media: Optional[Dict[str, Any]],
) -> None:
    """Write the media row for a message, or delete it when there is no media."""
    if not media:
        await conn.execute(
            "DELETE FROM message_media WHERE channel_id = ? AND message_id = ?",
            (channel_id, message_id),
        )
        return
    extras = media.get("extras") or None
    await conn.execute(
        """
        INSERT OR REPLACE INTO message_media (
            channel_id, message_id, media_type, file_id, unique_file_id,
            file_name, mime_type, file_size, width, height, duration, extra_json
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            channel_id,
            message_id,
            media.get("type"),
            media.get("file_id"),
            media.get("unique_file_id"),
            media.get("file_name"),
            media.get("mime_type"),
            media.get("file_size"),
            media.get("width"),
            media.get("height"),
            media.get("duration"),
            json.dumps(extras) if extras else None,
        ),
    )


# ---------------------------------------------------------------------------
# Versioned setup / rebuild
# ---------------------------------------------------------------------------


async def _get_meta(store: "Store", key: str) -> Optional[str]:
    return await store.fetchval("SELECT value FROM search_meta WHERE key = ?", (key,))


async def _set_meta(conn: aiosqlite.Connection, key: str, value: Any) -> None:
    await conn.execute(
        "INSERT INTO search_meta (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, str(value)),
    )


async def _index_table_sql(store: "Store") -> Optional[str]:
    return await store.fetchval(
        "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = 'message_search'"
    )


async def backfill_search_fields(store: "Store", include_media: bool = False) -> int:
    """Recompute derived columns (and link rows) for every stored message.

    Args:
        store: The archive store.
        include_media: Also rewrite ``message_media`` rows from the payload.

    Returns:
        Number of messages rewritten.
    """
    last_id = 0
    total = 0
    while True:
        rows = await store.fetchall(
            """
            SELECT m.id, m.channel_id, m.message_id, m.text, m.raw_json,
                   t.title AS topic_title
            FROM messages m
            LEFT JOIN topics t
              ON t.channel_id = m.channel_id AND t.topic_id = m.topic_id
            WHERE m.id > ?
            ORDER BY m.id
            LIMIT ?
            """,
            (last_id, _REBUILD_BATCH_SIZE),
        )
        if not rows:
            break
        async with store.transaction() as conn:
            for row in rows:
                payload = load_payload(row["raw_json"])
                fields = derive_search_fields(row["text"], payload, row["topic_title"])
                await conn.execute(
                    "UPDATE messages SET links = ?, files = ?, sender = ?, topic = ? "
                    "WHERE id = ?",
                    (
                        fields.links_text,
                        fields.files_text,
                        fields.sender,
                        fields.topic,
                        row["id"],
                    ),
                )
                await replace_links(conn, row["channel_id"], row["message_id"], fields.links)
                if include_media:
                    await replace_media(
                        conn, row["channel_id"], row["message_id"], payload.get("media")
                    )
        total += len(rows)
        last_id = rows[-1]["id"]
        logger.debug("Search field backfill: %d messages rewritten", total)
    return total


async def ensure_search_index(store: "Store") -> bool:
    """Create the index, rebuilding it when its version or shape is stale.

    Returns:
        True if a full rebuild ran.
    """
    table_sql = await _index_table_sql(store)
    stored_version = await _get_meta(store, _SEARCH_VERSION_KEY)
    stored_media_version = await _get_meta(store, _MEDIA_VERSION_KEY)

    shape_ok = (
        table_sql is not None
        and "unicode61" in table_sql
        and "links" in table_sql
    )
    needs_rebuild = not shape_ok or stored_version != str(SEARCH_INDEX_VERSION)
    needs_media = stored_media_version != str(MEDIA_INDEX_VERSION)

    if needs_rebuild:
        logger.info(
            "Rebuilding search index (stored version=%s, expected=%d, shape_ok=%s)",
            stored_version,
            SEARCH_INDEX_VERSION,
            shape_ok,
        )
        async with store.transaction() as conn:
            for statement in _DROP_INDEX_STATEMENTS:
                await conn.execute(statement)

    if needs_rebuild or needs_media:
        rewritten = await backfill_search_fields(store, include_media=needs_media)
        logger.info("Recomputed search fields for %d messages", rewritten)

    async with store.transaction() as conn:
        for statement in _CREATE_INDEX_STATEMENTS:
            await conn.execute(statement)
        if needs_rebuild:
            await conn.execute(
                "INSERT INTO message_search(message_search) VALUES('rebuild')"
            )
            await _set_meta(conn, _SEARCH_VERSION_KEY, SEARCH_INDEX_VERSION)
        if needs_media:
            await _set_meta(conn, _MEDIA_VERSION_KEY, MEDIA_INDEX_VERSION)

    return needs_rebuild


async def get_search_status(store: "Store") -> Dict[str, Any]:
    table_sql = await _index_table_sql(store)
    stored = await _get_meta(store, _SEARCH_VERSION_KEY)
    version = int(stored) if stored and stored.isdigit() else None
    enabled = table_sql is not None
    return {
        "enabled": enabled,
        "version": version,
        "expected_version": SEARCH_INDEX_VERSION,
        "ready": enabled and version == SEARCH_INDEX_VERSION,
    }
