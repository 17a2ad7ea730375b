"""
Users and user-authored contact annotations.

``users`` caches identities seen on the network (message senders, direct
message peers, the address book).  ``contacts`` and ``contact_tags`` hold
what the account owner adds on top: an alias, free-text notes and tags.
Contact tags are independent of channel tags.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from archive.tags import normalize_tags
from shared.db import Store
from syncer.message_store import MessageStore
from syncer.remote import PEER_USER, RemoteClient, RemotePeer

logger = logging.getLogger("archive.contacts")

_UPSERT_ALIAS_SQL = """
    INSERT INTO contacts (user_id, alias, updated_at)
    VALUES (?, ?, CURRENT_TIMESTAMP)
    ON CONFLICT(user_id) DO UPDATE SET
        alias = excluded.alias,
        updated_at = CURRENT_TIMESTAMP
"""

_UPSERT_NOTES_SQL = """
    INSERT INTO contacts (user_id, notes, updated_at)
    VALUES (?, ?, CURRENT_TIMESTAMP)
    ON CONFLICT(user_id) DO UPDATE SET
        notes = excluded.notes,
        updated_at = CURRENT_TIMESTAMP
"""


def _like_pattern(query: str) -> str:
    # Escape LIKE metacharacters
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class ContactBook:
    """Contact annotations over the user identity cache.

    Args:
        store: Archive store.
        client: Remote client, used by :meth:`refresh_contacts`.
        messages: User identity write path.
    """

    def __init__(self, store: Store, client: RemoteClient, messages: MessageStore) -> None:
        self._store = store
        self._client = client
        self._messages = messages

    async def refresh_contacts(self) -> Dict[str, Any]:
        """Pull the account's address book into ``users``."""
        peers = await self._client.list_contacts()
        users = [
            RemotePeer(
                id=p.id,
                peer_type=PEER_USER,
                title=p.title,
                username=p.username,
                phone=p.phone,
                is_bot=p.is_bot,
                is_contact=True,
            )
            for p in peers
            if p.id
        ]
        count = await self._messages.upsert_users(users)
        logger.info("Refreshed %d contact(s)", count)
        return {"count": count}

    async def set_contact_alias(self, user_id: str, alias: str) -> Dict[str, Any]:
        """Set a contact's alias.

        Raises:
            ValueError: If the alias is empty.
        """
        value = (alias or "").strip()
        if not value:
            raise ValueError("alias must not be empty")
        await self._store.execute(_UPSERT_ALIAS_SQL, (user_id, value))
        return {"user_id": user_id, "alias": value}

    async def remove_contact_alias(self, user_id: str) -> bool:
        updated = await self._store.execute(
            "UPDATE contacts SET alias = NULL, updated_at = CURRENT_TIMESTAMP "
            "WHERE user_id = ? AND alias IS NOT NULL",
            (user_id,),
        )
        return updated > 0

    async def set_contact_notes(self, user_id: str, notes: Optional[str]) -> Dict[str, Any]:
        """Set (or, with an empty value, clear) a contact's notes."""
        value = (notes or "").strip() or None
        await self._store.execute(_UPSERT_NOTES_SQL, (user_id, value))
        return {"user_id": user_id, "notes": value}

    async def list_contact_tags(self, user_id: str) -> List[str]:
        rows = await self._store.fetchall(
            "SELECT tag FROM contact_tags WHERE user_id = ? ORDER BY tag", (user_id,)
        )
        return [row["tag"] for row in rows]

    async def add_contact_tags(self, user_id: str, tags: Iterable[Any]) -> List[str]:
        """Add tags to a contact.  Returns the contact's full tag list."""
        normalized = normalize_tags(tags)
        if normalized:
            await self._store.executemany(
                "INSERT OR IGNORE INTO contact_tags (user_id, tag) VALUES (?, ?)",
                [(user_id, tag) for tag in normalized],
            )
        return await self.list_contact_tags(user_id)

    async def remove_contact_tags(self, user_id: str, tags: Iterable[Any]) -> List[str]:
        """Remove tags from a contact.  Returns the remaining tags."""
        normalized = normalize_tags(tags)
        if normalized:
            await self._store.executemany(
                "DELETE FROM contact_tags WHERE user_id = ? AND tag = ?",
                [(user_id, tag) for tag in normalized],
            )
        return await self.list_contact_tags(user_id)

    async def get_contact(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Identity, annotations and tags for one user, or None if unknown."""
        user = await self._store.fetchone(
            "SELECT user_id, peer_type, username, display_name, phone, is_contact, is_bot "
            "FROM users WHERE user_id = ?",
            (user_id,),
        )
        contact = await self._store.fetchone(
            "SELECT alias, notes FROM contacts WHERE user_id = ?", (user_id,)
        )
        tags = await self.list_contact_tags(user_id)
        if user is None and contact is None and not tags:
            return None
        result: Dict[str, Any] = {
            "user_id": user_id,
            "peer_type": None,
            "username": None,
            "display_name": None,
            "phone": None,
            "is_contact": None,
            "is_bot": None,
        }
        if user is not None:
            result.update(user)
            for flag in ("is_contact", "is_bot"):
                if result[flag] is not None:
                    result[flag] = bool(result[flag])
        result["alias"] = contact["alias"] if contact else None
        result["notes"] = contact["notes"] if contact else None
        result["tags"] = tags
        return result

    async def search_contacts(self, query: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Substring search over names, phone, alias, notes and tags."""
        pattern = _like_pattern((query or "").strip())
        rows = await self._store.fetchall(
            """
            SELECT u.user_id, u.username, u.display_name, u.phone,
                   u.is_contact, u.is_bot, c.alias, c.notes,
                   (SELECT group_concat(t.tag, ',') FROM contact_tags t
                     WHERE t.user_id = u.user_id) AS tags
            FROM users u
            LEFT JOIN contacts c ON c.user_id = u.user_id
            WHERE (u.peer_type = 'user' OR u.peer_type IS NULL)
              AND (
                u.username LIKE :q ESCAPE '\\'
                OR u.display_name LIKE :q ESCAPE '\\'
                OR u.phone LIKE :q ESCAPE '\\'
                OR c.alias LIKE :q ESCAPE '\\'
                OR c.notes LIKE :q ESCAPE '\\'
                OR EXISTS (
                    SELECT 1 FROM contact_tags t
                    WHERE t.user_id = u.user_id AND t.tag LIKE :q ESCAPE '\\'
                )
              )
            ORDER BY c.alias IS NULL, COALESCE(c.alias, u.display_name, u.username, u.user_id)
            LIMIT :limit
            """,
            {"q": pattern, "limit": int(limit)},
        )
        for row in rows:
            row["tags"] = sorted(row["tags"].split(",")) if row["tags"] else []
            for flag in ("is_contact", "is_bot"):
                if row[flag] is not None:
                    row[flag] = bool(row[flag])
        return rows
