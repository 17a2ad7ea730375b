"""
Archive reads and search.

Full-text queries go through the ``message_search`` FTS5 index (phrase
and keyword semantics).  Regex filters are applied in Python afterwards;
when both are given, the index is over-fetched so the regex pass has
enough candidates to fill the requested limit.

Filters (channel ids, topic, date range, channel tags) are composed into
one parameterised query by ``_append_filter_conditions``.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Pattern, Sequence

from archive.tags import normalize_tag, normalize_tags
from shared.db import Store
from shared.search_index import load_payload
from syncer.backfill import parse_iso_datetime
from syncer.message_store import iso_from_seconds

logger = logging.getLogger("archive.search")

DEFAULT_SEARCH_LIMIT = 100
REGEX_PREFETCH_FACTOR = 5
REGEX_PREFETCH_CAP = 1000
_SCAN_PAGE_SIZE = 500
_FTS_ERROR_MARKERS = ("fts5", "syntax error", "unterminated", "no such column")

_SELECT_COLUMNS = """
    m.id AS row_id, m.channel_id, m.message_id, m.topic_id, m.date, m.from_id,
    m.text, m.links, m.topic, m.raw_json,
    c.peer_title, c.username,
    mm.media_type, mm.file_name, mm.mime_type, mm.file_size
"""

_BASE_JOINS = """
    LEFT JOIN channels c ON c.channel_id = m.channel_id
    LEFT JOIN message_media mm
      ON mm.channel_id = m.channel_id AND mm.message_id = m.message_id
"""


@dataclass
class ArchivedMessage:
    """One archived message as returned to front ends."""

    channel_id: str
    peer_title: Optional[str]
    username: Optional[str]
    message_id: int
    date: Optional[str]
    from_id: Optional[str]
    from_username: Optional[str]
    from_display_name: Optional[str]
    from_peer_type: Optional[str]
    from_is_bot: Optional[bool]
    text: str
    topic_id: Optional[int] = None
    topic: Optional[str] = None
    media: Optional[Dict[str, Any]] = None
    links: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compile_regex(pattern: str, case_insensitive: bool = True) -> Pattern[str]:
    """Compile a user-supplied pattern.

    Raises:
        ValueError: If the pattern is not a valid regular expression.
    """
    try:
        return re.compile(pattern, re.IGNORECASE if case_insensitive else 0)
    except re.error as exc:
        raise ValueError(f"Invalid regex: {exc}") from None


def _to_seconds(value: Any, name: str) -> Optional[int]:
    parsed = parse_iso_datetime(value, name)
    return int(parsed.timestamp()) if parsed is not None else None


def _row_to_message(row: Dict[str, Any]) -> ArchivedMessage:
    payload = load_payload(row.get("raw_json"))
    media = None
    if row.get("media_type"):
        media = {
            "type": row["media_type"],
            "file_name": row.get("file_name"),
            "mime_type": row.get("mime_type"),
            "file_size": row.get("file_size"),
        }
    from_is_bot = payload.get("from_is_bot")
    return ArchivedMessage(
        channel_id=row["channel_id"],
        peer_title=row.get("peer_title"),
        username=row.get("username"),
        message_id=row["message_id"],
        date=iso_from_seconds(row.get("date")),
        from_id=row.get("from_id"),
        from_username=payload.get("from_username"),
        from_display_name=payload.get("from_display_name"),
        from_peer_type=payload.get("from_peer_type"),
        from_is_bot=None if from_is_bot is None else bool(from_is_bot),
        text=row.get("text") or "",
        topic_id=row.get("topic_id"),
        topic=row.get("topic") or None,
        media=media,
        links=(row.get("links") or "").split() or None,
    )


class ArchiveSearch:
    """Read-side queries over the archive.

    Args:
        store: Archive store.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    async def _select(self, sql: str, params: Sequence[Any]) -> List[ArchivedMessage]:
        rows = await self._store.fetchall(sql, params)
        return [_row_to_message(row) for row in rows]

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_archived_messages(
        self,
        channel_ids: Optional[Sequence[str]] = None,
        topic_id: Optional[int] = None,
        from_date: Any = None,
        to_date: Any = None,
        limit: int = 50,
    ) -> List[ArchivedMessage]:
        """Newest archived messages, across every channel unless narrowed.

        Args:
            channel_ids: Only these channels.
            topic_id: Only this forum topic.
            from_date: ISO-8601 lower bound (inclusive).
            to_date: ISO-8601 upper bound (inclusive).
            limit: Maximum results; non-positive values fall back to 50.

        Raises:
            ValueError: If a date is not ISO-8601.
        """
        params: List[Any] = []
        conditions: List[str] = []
        joins: List[str] = []
        self._append_filter_conditions(
            params,
            conditions,
            joins,
            tags=None,
            tag_source=None,
            channel_ids=channel_ids,
            topic_id=topic_id,
            from_date=from_date,
            to_date=to_date,
        )
        sql = f"SELECT {_SELECT_COLUMNS} FROM messages m {_BASE_JOINS}"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY m.date DESC, m.message_id DESC LIMIT ?"
        params.append(int(limit) if limit and int(limit) > 0 else 50)
        return await self._select(sql, params)

    # ------------------------------------------------------------------
    # Single channel
    # ------------------------------------------------------------------

    async def get_archived_message(
        self, channel_id: str, message_id: int
    ) -> Optional[ArchivedMessage]:
        results = await self._select(
            f"SELECT {_SELECT_COLUMNS} FROM messages m {_BASE_JOINS} "
            "WHERE m.channel_id = ? AND m.message_id = ?",
            (channel_id, int(message_id)),
        )
        return results[0] if results else None

    async def get_archived_message_context(
        self,
        channel_id: str,
        message_id: int,
        before: int = 20,
        after: int = 20,
    ) -> Dict[str, Any]:
        """A message with its neighbours, in chronological order.

        Returns:
            ``{"target", "before", "after"}``; ``target`` is None (and both
            lists empty) when the message is not archived.
        """
        target = await self.get_archived_message(channel_id, message_id)
        if target is None:
            return {"target": None, "before": [], "after": []}
        older = await self._select(
            f"SELECT {_SELECT_COLUMNS} FROM messages m {_BASE_JOINS} "
            "WHERE m.channel_id = ? AND m.message_id < ? "
            "ORDER BY m.message_id DESC LIMIT ?",
            (channel_id, int(message_id), max(0, int(before))),
        )
        newer = await self._select(
            f"SELECT {_SELECT_COLUMNS} FROM messages m {_BASE_JOINS} "
            "WHERE m.channel_id = ? AND m.message_id > ? "
            "ORDER BY m.message_id ASC LIMIT ?",
            (channel_id, int(message_id), max(0, int(after))),
        )
        return {"target": target, "before": list(reversed(older)), "after": newer}

    async def get_archived_messages(
        self,
        channel_id: str,
        from_date: Any = None,
        to_date: Any = None,
        limit: Optional[int] = None,
    ) -> List[ArchivedMessage]:
        """Messages of one channel in chronological order, optionally bounded."""
        conditions = ["m.channel_id = ?"]
        params: List[Any] = [channel_id]
        self._append_date_conditions(params, conditions, from_date, to_date)
        sql = (
            f"SELECT {_SELECT_COLUMNS} FROM messages m {_BASE_JOINS} "
            f"WHERE {' AND '.join(conditions)} ORDER BY m.date ASC, m.message_id ASC"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return await self._select(sql, params)

    async def get_message_stats(self, channel_id: str) -> Dict[str, Any]:
        row = await self._store.fetchone(
            "SELECT COUNT(*) AS total, MIN(date) AS oldest, MAX(date) AS newest "
            "FROM messages WHERE channel_id = ?",
            (channel_id,),
        )
        row = row or {}
        return {
            "channel_id": channel_id,
            "total": int(row.get("total") or 0),
            "oldest_date": iso_from_seconds(row.get("oldest")),
            "newest_date": iso_from_seconds(row.get("newest")),
        }

    async def search_messages(
        self,
        channel_id: str,
        pattern: str,
        limit: int = 50,
        case_insensitive: bool = True,
        topic_id: Optional[int] = None,
    ) -> List[ArchivedMessage]:
        """Regex search over one channel's archived text, newest first."""
        regex = compile_regex(pattern, case_insensitive)
        conditions = ["m.channel_id = ?"]
        params: List[Any] = [channel_id]
        if topic_id is not None:
            conditions.append("m.topic_id = ?")
            params.append(int(topic_id))
        return await self._scan(conditions, params, regex, limit)

    # ------------------------------------------------------------------
    # Cross-channel search
    # ------------------------------------------------------------------

    @staticmethod
    def _append_date_conditions(
        params: List[Any], conditions: List[str], from_date: Any, to_date: Any
    ) -> None:
        start = _to_seconds(from_date, "from_date")
        end = _to_seconds(to_date, "to_date")
        if start is not None:
            conditions.append("m.date >= ?")
            params.append(start)
        if end is not None:
            conditions.append("m.date <= ?")
            params.append(end)

    def _append_filter_conditions(
        self,
        params: List[Any],
        conditions: List[str],
        joins: List[str],
        *,
        tags: Optional[Sequence[str]],
        tag_source: Optional[str],
        channel_ids: Optional[Sequence[str]],
        topic_id: Optional[int],
        from_date: Any,
        to_date: Any,
    ) -> None:
        """Append dynamic filter clauses with bound params."""
        normalized = normalize_tags(tags or [])
        if normalized:
            joins.append("JOIN channel_tags ct ON ct.channel_id = m.channel_id")
            conditions.append(f"ct.tag IN ({', '.join('?' for _ in normalized)})")
            params.extend(normalized)
            if tag_source:
                conditions.append("ct.source = ?")
                params.append(tag_source)
        if isinstance(channel_ids, str):
            channel_ids = [channel_ids]
        if channel_ids:
            ids = [str(cid) for cid in channel_ids]
            conditions.append(f"m.channel_id IN ({', '.join('?' for _ in ids)})")
            params.extend(ids)
        if topic_id is not None:
            conditions.append("m.topic_id = ?")
            params.append(int(topic_id))
        self._append_date_conditions(params, conditions, from_date, to_date)

    async def search_archive_messages(
        self,
        query: Optional[str] = None,
        regex: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        tag_source: Optional[str] = None,
        channel_ids: Optional[Sequence[str]] = None,
        topic_id: Optional[int] = None,
        from_date: Any = None,
        to_date: Any = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
        case_insensitive: bool = True,
    ) -> List[ArchivedMessage]:
        """Search across the archive.

        Args:
            query: FTS5 query (words, ``"exact phrase"``, ``prefix*``).  A blank
                query is treated as absent.
            regex: Pattern the message text must match.
            tags: Only channels carrying one of these tags.  Blank tags are dropped.
            tag_source: Restrict the tag match to one source partition.
            channel_ids: Only these channels.
            topic_id: Only this forum topic.
            from_date: ISO-8601 lower bound (inclusive).
            to_date: ISO-8601 upper bound (inclusive).
            limit: Maximum results.
            case_insensitive: Regex case handling.

        Returns:
            Matches, newest first.

        Raises:
            ValueError: If no criterion is given, or the regex, query or a
                date is invalid.
        """
        query = (query or "").strip() or None
        tags = normalize_tags(tags or [])
        if not any((query, regex, tags, channel_ids, topic_id is not None, from_date, to_date)):
            raise ValueError("Provide a query, regex, tags, channel_ids, topic_id or date range")
        limit = max(1, int(limit))
        pattern = compile_regex(regex, case_insensitive) if regex else None

        params: List[Any] = []
        conditions: List[str] = []
        joins: List[str] = []
        if query:
            joins.append("JOIN message_search ON message_search.rowid = m.id")
            conditions.append("message_search MATCH ?")
            params.append(query)
        self._append_filter_conditions(
            params,
            conditions,
            joins,
            tags=tags,
            tag_source=tag_source,
            channel_ids=channel_ids,
            topic_id=topic_id,
            from_date=from_date,
            to_date=to_date,
        )

        fetch_limit = (
            min(limit * REGEX_PREFETCH_FACTOR, REGEX_PREFETCH_CAP) if pattern else limit
        )
        sql = (
            f"SELECT DISTINCT {_SELECT_COLUMNS} FROM messages m "
            f"{' '.join(joins)} {_BASE_JOINS}"
        )
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY m.date DESC, m.message_id DESC LIMIT ?"
        params.append(fetch_limit)

        try:
            results = await self._select(sql, params)
        except sqlite3.OperationalError as exc:
            if query and any(marker in str(exc).lower() for marker in _FTS_ERROR_MARKERS):
                raise ValueError(f"Invalid search query: {exc}") from None
            raise

        if pattern is not None:
            results = [r for r in results if pattern.search(r.text)]
        return results[:limit]

    async def search_tagged_messages(
        self,
        tag: str,
        source: Optional[str] = None,
        query: Optional[str] = None,
        regex: Optional[str] = None,
        from_date: Any = None,
        to_date: Any = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
        case_insensitive: bool = True,
    ) -> List[ArchivedMessage]:
        """Search messages of channels tagged ``tag`` (newest first).

        A blank tag matches nothing and returns an empty list.
        """
        normalized = normalize_tag(tag)
        if normalized is None:
            return []
        return await self.search_archive_messages(
            query=query,
            regex=regex,
            tags=[normalized],
            tag_source=source,
            from_date=from_date,
            to_date=to_date,
            limit=limit,
            case_insensitive=case_insensitive,
        )

    async def _scan(
        self,
        conditions: List[str],
        params: List[Any],
        regex: Pattern[str],
        limit: int,
    ) -> List[ArchivedMessage]:
        """Page through matching rows newest first until ``limit`` regex hits."""
        limit = max(1, int(limit))
        matches: List[ArchivedMessage] = []
        last_id: Optional[int] = None
        while len(matches) < limit:
            page_conditions = list(conditions) + ["m.text IS NOT NULL"]
            page_params = list(params)
            if last_id is not None:
                page_conditions.append("m.message_id < ?")
                page_params.append(last_id)
            rows = await self._store.fetchall(
                f"SELECT {_SELECT_COLUMNS} FROM messages m {_BASE_JOINS} "
                f"WHERE {' AND '.join(page_conditions)} ORDER BY m.message_id DESC LIMIT ?",
                (*page_params, _SCAN_PAGE_SIZE),
            )
            if not rows:
                break
            last_id = rows[-1]["message_id"]
            for row in rows:
                if regex.search(row.get("text") or ""):
                    matches.append(_row_to_message(row))
                    if len(matches) >= limit:
                        break
        return matches
