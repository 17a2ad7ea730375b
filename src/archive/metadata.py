"""
TTL cache of per-channel profile data ("about" text, title, username).

Profile data is fetched from the remote client only when it is missing,
older than the TTL, or a refresh is forced.  A refresh also re-upserts the
channel's identity row, so it doubles as an identity refresh.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from shared.db import Store
from syncer.message_store import MessageStore
from syncer.remote import RateLimitedError, RemoteClient, RemotePeer

logger = logging.getLogger("archive.metadata")

METADATA_TTL = timedelta(days=7)


def _parse_sql_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_metadata_stale(
    updated_at: Optional[str],
    ttl: timedelta = METADATA_TTL,
    now: Optional[datetime] = None,
) -> bool:
    """True when ``updated_at`` is missing, unparseable or older than ``ttl``."""
    parsed = _parse_sql_timestamp(updated_at)
    if parsed is None:
        return True
    now = now or datetime.now(timezone.utc)
    return now - parsed > ttl


class MetadataCache:
    """Serves channel profile data, refreshing it from the remote client.

    Args:
        store: Archive store.
        client: Remote client used for ``get_peer_metadata``.
        messages: Channel identity write path.
        ttl: Age after which cached data is refetched.
    """

    def __init__(
        self,
        store: Store,
        client: RemoteClient,
        messages: MessageStore,
        ttl: timedelta = METADATA_TTL,
    ) -> None:
        self._store = store
        self._client = client
        self._messages = messages
        self.ttl = ttl

    async def get_channel_metadata(self, channel_id: str) -> Optional[Dict[str, Any]]:
        row = await self._store.fetchone(
            """
            SELECT c.channel_id, c.peer_title, c.username, c.peer_type, c.chat_type,
                   c.is_forum, cm.about, cm.updated_at
            FROM channels c
            LEFT JOIN channel_metadata cm ON cm.channel_id = c.channel_id
            WHERE c.channel_id = ?
            """,
            (channel_id,),
        )
        if row is None:
            return None
        row["is_forum"] = None if row["is_forum"] is None else bool(row["is_forum"])
        row["stale"] = is_metadata_stale(row["updated_at"], self.ttl)
        return row

    async def refresh_channel_metadata(
        self,
        channel_ids: Optional[Sequence[str]] = None,
        limit: int = 20,
        force: bool = False,
        only_missing: bool = False,
    ) -> Dict[str, Any]:
        """Fetch profile data for channels whose cache is missing or stale.

        Args:
            channel_ids: Channels to consider; default is every known channel.
            limit: Maximum channels considered.
            force: Refetch even when the cache is fresh.
            only_missing: Only fetch channels that have never been fetched.

        Returns:
            ``{"refreshed": [...], "skipped": [...], "failed": [...]}``.
            A rate limit stops the run; the remaining channels are left for
            the next call.
        """
        sql = """
            SELECT c.channel_id, c.peer_type, cm.updated_at
            FROM channels c
            LEFT JOIN channel_metadata cm ON cm.channel_id = c.channel_id
        """
        params: List[Any] = []
        if channel_ids:
            ids = [str(cid) for cid in channel_ids]
            sql += f" WHERE c.channel_id IN ({', '.join('?' for _ in ids)})"
            params.extend(ids)
        sql += " ORDER BY cm.updated_at IS NOT NULL, cm.updated_at LIMIT ?"
        params.append(max(0, int(limit)))
        rows = await self._store.fetchall(sql, params)

        refreshed: List[str] = []
        skipped: List[str] = []
        failed: List[Dict[str, Any]] = []
        for row in rows:
            channel_id = row["channel_id"]
            if not force:
                if only_missing and row["updated_at"] is not None:
                    skipped.append(channel_id)
                    continue
                if not is_metadata_stale(row["updated_at"], self.ttl):
                    skipped.append(channel_id)
                    continue
            try:
                await self._refresh_one(channel_id, row["peer_type"])
            except RateLimitedError as exc:
                logger.warning(
                    "Rate limited while refreshing metadata; stopping (wait %ds)",
                    exc.wait_seconds,
                )
                failed.append({"channel_id": channel_id, "error": str(exc)})
                break
            except sqlite3.Error:
                raise
            except Exception as exc:
                logger.warning("Metadata refresh failed for %s: %s", channel_id, exc)
                failed.append({"channel_id": channel_id, "error": str(exc)})
                continue
            refreshed.append(channel_id)

        logger.info(
            "Metadata refresh: %d refreshed, %d cached, %d failed",
            len(refreshed),
            len(skipped),
            len(failed),
        )
        return {"refreshed": refreshed, "skipped": skipped, "failed": failed}

    async def _refresh_one(self, channel_id: str, peer_type: Optional[str]) -> None:
        meta = await self._client.get_peer_metadata(channel_id, peer_type)
        await self._messages.upsert_channel(
            RemotePeer(
                id=channel_id,
                peer_type=meta.peer_type or peer_type,
                title=meta.peer_title,
                username=meta.username,
                chat_type=meta.chat_type,
                is_forum=meta.is_forum,
            )
        )
        await self._store.execute(
            """
            INSERT INTO channel_metadata (channel_id, about, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(channel_id) DO UPDATE SET
                about = excluded.about,
                updated_at = CURRENT_TIMESTAMP
            """,
            (channel_id, meta.about),
        )
