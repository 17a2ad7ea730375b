"""
Message and channel persistence for the syncer.

Every path that writes fetched data goes through ``MessageStore``: the
backfill engine (insert-or-ignore batches), the realtime ingester (edit
upserts and deletes), and the facade (channel identity and topics).
Multi-row writes run inside one ``Store.transaction()`` so a crash mid-batch
never leaves messages without their link/media rows or index entries.

All queries use ``?`` / ``:name`` placeholders, **never** string
interpolation of caller data.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiosqlite

from shared.db import Store
from shared.search_index import derive_search_fields, replace_links, replace_media
from syncer.remote import PEER_USER, RemoteMessage, RemotePeer

logger = logging.getLogger("syncer.message_store")

_MESSAGE_COLUMNS = (
    "channel_id, message_id, topic_id, date, from_id, text, "
    "links, files, sender, topic, raw_json"
)

_INSERT_SQL = f"""
    INSERT OR IGNORE INTO messages ({_MESSAGE_COLUMNS})
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_UPSERT_SQL = f"""
    INSERT INTO messages ({_MESSAGE_COLUMNS})
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(channel_id, message_id) DO UPDATE SET
        topic_id = excluded.topic_id,
        date = excluded.date,
        from_id = excluded.from_id,
        text = excluded.text,
        links = excluded.links,
        files = excluded.files,
        sender = excluded.sender,
        topic = excluded.topic,
        raw_json = excluded.raw_json
"""

_UPSERT_CHANNEL_SQL = """
    INSERT INTO channels (
        channel_id, peer_title, peer_type, chat_type, is_forum, username, updated_at
    )
    VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
    ON CONFLICT(channel_id) DO UPDATE SET
        peer_title = COALESCE(excluded.peer_title, channels.peer_title),
        peer_type = COALESCE(excluded.peer_type, channels.peer_type),
        chat_type = COALESCE(excluded.chat_type, channels.chat_type),
        is_forum = COALESCE(excluded.is_forum, channels.is_forum),
        username = COALESCE(excluded.username, channels.username),
        updated_at = CURRENT_TIMESTAMP
"""

_UPSERT_USER_SQL = """
    INSERT INTO users (
        user_id, peer_type, username, display_name, phone, is_contact, is_bot, updated_at
    )
    VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
    ON CONFLICT(user_id) DO UPDATE SET
        peer_type = COALESCE(excluded.peer_type, users.peer_type),
        username = COALESCE(excluded.username, users.username),
        display_name = COALESCE(excluded.display_name, users.display_name),
        phone = COALESCE(excluded.phone, users.phone),
        is_contact = COALESCE(excluded.is_contact, users.is_contact),
        is_bot = COALESCE(excluded.is_bot, users.is_bot),
        updated_at = CURRENT_TIMESTAMP
"""

# Cursors only ever move outward: newest up, oldest down.
_ADVANCE_CURSORS_SQL = """
    UPDATE channels SET
        last_message_id = CASE
            WHEN :newest_id IS NOT NULL
                 AND (last_message_id IS NULL OR :newest_id > last_message_id)
            THEN :newest_id ELSE last_message_id END,
        last_message_date = CASE
            WHEN :newest_id IS NOT NULL
                 AND (last_message_id IS NULL OR :newest_id > last_message_id)
            THEN :newest_date ELSE last_message_date END,
        oldest_message_id = CASE
            WHEN :oldest_id IS NOT NULL
                 AND (oldest_message_id IS NULL OR :oldest_id < oldest_message_id)
            THEN :oldest_id ELSE oldest_message_id END,
        oldest_message_date = CASE
            WHEN :oldest_id IS NOT NULL
                 AND (oldest_message_id IS NULL OR :oldest_id < oldest_message_id)
            THEN :oldest_date ELSE oldest_message_date END,
        updated_at = CURRENT_TIMESTAMP
    WHERE channel_id = :channel_id
"""


def iso_from_seconds(seconds: Optional[int]) -> Optional[str]:
    if seconds is None:
        return None
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc).isoformat()


def _bool_or_none(value: Optional[bool]) -> Optional[int]:
    return None if value is None else int(bool(value))


def _user_params(peer: RemotePeer) -> tuple:
    return (
        peer.id,
        peer.peer_type,
        peer.username,
        peer.title,
        peer.phone,
        _bool_or_none(peer.is_contact),
        _bool_or_none(peer.is_bot),
    )


def _cursor_params(channel_id: str, messages: Sequence[RemoteMessage]) -> Dict[str, Any]:
    newest = max(messages, key=lambda m: m.id)
    oldest = min(messages, key=lambda m: m.id)
    return {
        "channel_id": channel_id,
        "newest_id": newest.id,
        "newest_date": iso_from_seconds(newest.date),
        "oldest_id": oldest.id,
        "oldest_date": iso_from_seconds(oldest.date),
    }


def sender_peer(message: RemoteMessage) -> Optional[RemotePeer]:
    """Identity record for a message's sender, when the sender is a user."""
    if not message.from_id or message.from_peer_type != PEER_USER:
        return None
    return RemotePeer(
        id=str(message.from_id),
        peer_type=PEER_USER,
        title=message.from_display_name,
        username=message.from_username,
        is_bot=message.from_is_bot,
    )


class MessageStore:
    """Writes messages, channels, users and topics into the archive.

    Args:
        store: The archive :class:`~shared.db.Store`.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    @property
    def store(self) -> Store:
        return self._store

    # ------------------------------------------------------------------
    # Row building
    # ------------------------------------------------------------------

    @staticmethod
    def _message_params(
        channel_id: str,
        message: RemoteMessage,
        topic_titles: Dict[int, str],
    ) -> tuple[tuple, List[str], Optional[Dict[str, Any]]]:
        """Return ``(row params, links, media dict)`` for a message."""
        payload = message.to_dict()
        stored_title = (
            topic_titles.get(message.topic_id) if message.topic_id is not None else None
        )
        fields = derive_search_fields(message.text, payload, stored_title)
        params = (
            channel_id,
            message.id,
            message.topic_id,
            message.date,
            message.from_id,
            message.text,
            fields.links_text,
            fields.files_text,
            fields.sender,
            fields.topic,
            json.dumps(payload, default=str, ensure_ascii=False),
        )
        return params, fields.links, payload["media"]

    @staticmethod
    async def _topic_titles(conn: aiosqlite.Connection, channel_id: str) -> Dict[int, str]:
        async with conn.execute(
            "SELECT topic_id, title FROM topics WHERE channel_id = ? AND title IS NOT NULL",
            (channel_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return {row["topic_id"]: row["title"] for row in rows}

    # ------------------------------------------------------------------
    # Message writes
    # ------------------------------------------------------------------

    async def insert_messages(
        self,
        channel_id: str,
        messages: Sequence[RemoteMessage],
        update_cursors: bool = False,
    ) -> int:
        """Insert a batch of messages, ignoring ones already archived.

        Senders are upserted into ``users`` in the same transaction.  With
        ``update_cursors`` the channel cursors are advanced there too, so a
        batch and the cursors covering it commit together.

        Returns:
            Number of rows actually inserted (excluding duplicates).
        """
        if not messages:
            return 0
        inserted = 0
        async with self._store.transaction() as conn:
            titles = await self._topic_titles(conn, channel_id)
            for message in messages:
                params, links, media = self._message_params(channel_id, message, titles)
                cursor = await conn.execute(_INSERT_SQL, params)
                if cursor.rowcount:
                    inserted += 1
                    await replace_links(conn, channel_id, message.id, links)
                    await replace_media(conn, channel_id, message.id, media)
                await cursor.close()
            await self._upsert_users(conn, _senders(messages))
            if update_cursors:
                await conn.execute(_ADVANCE_CURSORS_SQL, _cursor_params(channel_id, messages))
        logger.debug(
            "Batch insert channel=%s: %d/%d new rows", channel_id, inserted, len(messages)
        )
        return inserted

    async def upsert_message(
        self, channel_id: str, message: RemoteMessage, update_cursors: bool = False
    ) -> None:
        """Insert or overwrite one message (edit path)."""
        async with self._store.transaction() as conn:
            titles = await self._topic_titles(conn, channel_id)
            params, links, media = self._message_params(channel_id, message, titles)
            await conn.execute(_UPSERT_SQL, params)
            await replace_links(conn, channel_id, message.id, links)
            await replace_media(conn, channel_id, message.id, media)
            await self._upsert_users(conn, _senders([message]))
            if update_cursors:
                await conn.execute(_ADVANCE_CURSORS_SQL, _cursor_params(channel_id, [message]))

    async def delete_messages(
        self, channel_id: Optional[str], message_ids: Iterable[int]
    ) -> int:
        """Delete messages by id.

        With ``channel_id=None`` the delete is limited to direct-message and
        basic-group channels, whose ids are the only ones that arrive
        without a channel scope.

        Returns:
            Number of message rows removed.
        """
        ids = sorted({int(mid) for mid in message_ids})
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        if channel_id is not None:
            scope_sql = "channel_id = ?"
            scope_params: List[Any] = [channel_id]
        else:
            scope_sql = (
                "channel_id IN (SELECT channel_id FROM channels "
                "WHERE peer_type IN ('chat', 'user'))"
            )
            scope_params = []

        async with self._store.transaction() as conn:
            for table in ("message_links", "message_media"):
                await conn.execute(
                    f"DELETE FROM {table} WHERE {scope_sql} AND message_id IN ({placeholders})",
                    (*scope_params, *ids),
                )
            cursor = await conn.execute(
                f"DELETE FROM messages WHERE {scope_sql} AND message_id IN ({placeholders})",
                (*scope_params, *ids),
            )
            deleted = cursor.rowcount
            await cursor.close()
        logger.debug("Deleted %d messages (channel=%s)", deleted, channel_id)
        return deleted

    async def count_messages(self, channel_id: str) -> int:
        count = await self._store.fetchval(
            "SELECT COUNT(*) FROM messages WHERE channel_id = ?", (channel_id,)
        )
        return int(count or 0)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def upsert_channel(self, peer: RemotePeer) -> bool:
        """Record a channel's identity.

        Returns:
            The channel's ``sync_enabled`` flag.
        """
        async with self._store.transaction() as conn:
            await conn.execute(_UPSERT_CHANNEL_SQL, _channel_params(peer))
            if peer.peer_type == PEER_USER:
                await conn.execute(_UPSERT_USER_SQL, _user_params(peer))
        row = await self._store.fetchone(
            "SELECT sync_enabled FROM channels WHERE channel_id = ?", (peer.id,)
        )
        return bool(row and row["sync_enabled"])

    async def upsert_channels(self, peers: Iterable[RemotePeer]) -> int:
        peers = list(peers)
        if not peers:
            return 0
        async with self._store.transaction() as conn:
            await conn.executemany(_UPSERT_CHANNEL_SQL, [_channel_params(p) for p in peers])
            users = [p for p in peers if p.peer_type == PEER_USER]
            await self._upsert_users(conn, users)
        return len(peers)

    async def ensure_channel(self, channel_id: str) -> None:
        await self._store.execute(
            "INSERT OR IGNORE INTO channels (channel_id) VALUES (?)", (channel_id,)
        )

    async def get_channel(self, channel_id: str) -> Optional[Dict[str, Any]]:
        row = await self._store.fetchone(
            "SELECT * FROM channels WHERE channel_id = ?", (channel_id,)
        )
        if row is None:
            return None
        row["sync_enabled"] = bool(row["sync_enabled"])
        row["is_forum"] = None if row["is_forum"] is None else bool(row["is_forum"])
        return row

    async def is_sync_enabled(self, channel_id: str) -> bool:
        value = await self._store.fetchval(
            "SELECT sync_enabled FROM channels WHERE channel_id = ?", (channel_id,)
        )
        return bool(value)

    async def set_channel_sync(self, channel_id: str, enabled: bool) -> Dict[str, Any]:
        """Set ``sync_enabled``, creating the channel row if it is not known yet.

        A channel opted out before it is first seen stays opted out: later
        identity upserts never touch the flag.

        Returns:
            ``{"channel_id", "sync_enabled"}`` as stored.
        """
        await self._store.execute(
            """
            INSERT INTO channels (channel_id, sync_enabled, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(channel_id) DO UPDATE SET
                sync_enabled = excluded.sync_enabled,
                updated_at = CURRENT_TIMESTAMP
            """,
            (channel_id, int(bool(enabled))),
        )
        stored = await self.is_sync_enabled(channel_id)
        return {"channel_id": channel_id, "sync_enabled": stored}

    async def list_active_channels(self) -> List[Dict[str, Any]]:
        return await self._store.fetchall(
            "SELECT * FROM channels WHERE sync_enabled = 1 "
            "ORDER BY COALESCE(peer_title, channel_id)"
        )

    async def get_sync_stats(self) -> Dict[str, Any]:
        """Return archive-wide statistics."""
        row = await self._store.fetchone(
            """
            SELECT
                (SELECT COUNT(*) FROM messages) AS total_messages,
                (SELECT COUNT(*) FROM channels) AS total_channels,
                (SELECT COUNT(*) FROM channels WHERE sync_enabled = 1) AS synced_channels,
                (SELECT MAX(date) FROM messages) AS latest_message_date
            """
        )
        stats = dict(row or {})
        stats["latest_message_date"] = iso_from_seconds(stats.get("latest_message_date"))
        return stats

    # ------------------------------------------------------------------
    # Topics / users
    # ------------------------------------------------------------------

    async def upsert_topics(
        self, channel_id: str, topics: Iterable[Dict[str, Any]]
    ) -> int:
        """Store forum topic titles and relabel already-archived messages.

        Args:
            channel_id: Forum channel id.
            topics: Items with ``id`` (or ``topic_id``) and ``title``.

        Returns:
            Number of topics written.
        """
        rows = []
        for topic in topics:
            topic_id = topic.get("id", topic.get("topic_id"))
            if topic_id is None:
                continue
            rows.append((channel_id, int(topic_id), topic.get("title")))
        if not rows:
            return 0
        async with self._store.transaction() as conn:
            await conn.executemany(
                "INSERT INTO topics (channel_id, topic_id, title, updated_at) "
                "VALUES (?, ?, ?, CURRENT_TIMESTAMP) "
                "ON CONFLICT(channel_id, topic_id) DO UPDATE SET "
                "title = excluded.title, updated_at = CURRENT_TIMESTAMP",
                rows,
            )
            await conn.executemany(
                "UPDATE messages SET topic = ? "
                "WHERE channel_id = ? AND topic_id = ? AND COALESCE(topic, '') != ?",
                [(title or "", cid, tid, title or "") for cid, tid, title in rows],
            )
        return len(rows)

    async def upsert_users(self, peers: Iterable[RemotePeer]) -> int:
        peers = [p for p in peers if p.id]
        if not peers:
            return 0
        async with self._store.transaction() as conn:
            await self._upsert_users(conn, peers)
        return len(peers)

    @staticmethod
    async def _upsert_users(
        conn: aiosqlite.Connection, peers: Iterable[RemotePeer]
    ) -> None:
        rows = [_user_params(p) for p in peers]
        if rows:
            await conn.executemany(_UPSERT_USER_SQL, rows)


def _channel_params(peer: RemotePeer) -> tuple:
    return (
        peer.id,
        peer.title,
        peer.peer_type,
        peer.chat_type,
        _bool_or_none(peer.is_forum),
        peer.username,
    )


def _senders(messages: Iterable[RemoteMessage]) -> List[RemotePeer]:
    by_id: Dict[str, RemotePeer] = {}
    for message in messages:
        peer = sender_peer(message)
        if peer is not None:
            by_id[peer.id] = peer
    return list(by_id.values())
