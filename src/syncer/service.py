"""
MessageSyncService: the one object a front end (CLI, MCP server) needs.

The service owns the store handle and wires the components together by
constructor injection::

    Store ─┬─ MessageStore ─┬─ BackfillEngine ─┬─ JobScheduler
           │                │                  └─ RealtimeIngester
           ├─ ArchiveSearch │
           ├─ ChannelTags ◄─┴─ MetadataCache
           └─ ContactBook

Every public method returns plain dicts and lists; no Telethon type ever
crosses this boundary.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from archive.contacts import ContactBook
from archive.metadata import MetadataCache
from archive.search import ArchiveSearch
from archive.tags import SOURCE_AUTO, SOURCE_MANUAL, ChannelTags, normalize_tag
from shared.audit import AuditLogger
from shared.cancellation import CancellationToken
from shared.config import SyncSettings
from shared.db import Store, init_database
from shared.search_index import get_search_status
from syncer.backfill import BackfillEngine
from syncer.message_store import MessageStore
from syncer.realtime import RealtimeIngester
from syncer.remote import RemoteClient, RemotePeer
from syncer.scheduler import JobScheduler

logger = logging.getLogger("syncer.service")


def normalize_channel_id(value: Any) -> str:
    """Accept an int or numeric string id; return its canonical string form.

    Raises:
        ValueError: If the value is empty or not an integer.
    """
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValueError("channel_id is required")
    try:
        return str(int(text))
    except ValueError:
        raise ValueError(f"Invalid channel_id: {value!r}") from None


def _dicts(records: Iterable[Any]) -> List[Dict[str, Any]]:
    return [record.to_dict() for record in records]


class MessageSyncService:
    """Archive-and-sync engine facade.

    Build one with :meth:`open`; it initialises the database and returns a
    ready service.  Use as an async context manager, or call
    :meth:`shutdown` when done.
    """

    def __init__(
        self,
        store: Store,
        client: RemoteClient,
        settings: Optional[SyncSettings] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        settings = settings or SyncSettings()
        self.settings = settings
        self._store = store
        self._client = client
        self._audit = audit
        self._token = CancellationToken()
        self._drain_task: Optional[asyncio.Task[int]] = None
        self._closed = False

        self.messages = MessageStore(store)
        self.engine = BackfillEngine(
            client,
            self.messages,
            batch_size=settings.batch_size,
            inter_batch_delay=settings.inter_batch_delay_seconds,
        )
        self.scheduler = JobScheduler(
            store,
            self.messages,
            self.engine,
            self._token,
            audit=audit,
            inter_job_delay=settings.inter_job_delay_seconds,
            default_target=settings.default_target_messages,
        )
        self.realtime = RealtimeIngester(client, self.messages, self.engine, self._token)
        self.search = ArchiveSearch(store)
        self.metadata = MetadataCache(
            store, client, self.messages, ttl=timedelta(days=settings.metadata_ttl_days)
        )
        self.tags = ChannelTags(store, self.metadata)
        self.contacts = ContactBook(store, client, self.messages)

    @classmethod
    async def open(
        cls,
        client: RemoteClient,
        db_path: Path | str,
        settings: Optional[SyncSettings] = None,
        audit_path: Optional[Path] = None,
    ) -> "MessageSyncService":
        """Open (creating or migrating) the store at ``db_path``."""
        store = await Store.open(db_path)
        try:
            await init_database(store)
        except BaseException:
            await store.close()
            raise
        audit = AuditLogger(store, audit_path)
        logger.info("Archive store ready at %s", db_path)
        return cls(store, client, settings, audit)

    async def __aenter__(self) -> "MessageSyncService":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    @property
    def store(self) -> Store:
        return self._store

    @property
    def token(self) -> CancellationToken:
        return self._token

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def add_job(
        self,
        channel_id: Any,
        depth: Optional[int] = None,
        min_date: Any = None,
        peer: Optional[RemotePeer] = None,
    ) -> Dict[str, Any]:
        return await self.scheduler.add_job(
            normalize_channel_id(channel_id), depth=depth, min_date=min_date, peer=peer
        )

    async def get_job(
        self, job_id: Optional[int] = None, channel_id: Any = None
    ) -> Optional[Dict[str, Any]]:
        if channel_id is not None:
            channel_id = normalize_channel_id(channel_id)
        return await self.scheduler.get_job(job_id=job_id, channel_id=channel_id)

    async def list_jobs(
        self,
        status: Optional[str] = None,
        channel_id: Any = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        if channel_id is not None:
            channel_id = normalize_channel_id(channel_id)
        return await self.scheduler.list_jobs(status=status, channel_id=channel_id, limit=limit)

    async def retry_jobs(
        self,
        job_id: Optional[int] = None,
        channel_id: Any = None,
        all_errors: bool = False,
    ) -> Dict[str, Any]:
        if channel_id is not None:
            channel_id = normalize_channel_id(channel_id)
        return await self.scheduler.retry_jobs(
            job_id=job_id, channel_id=channel_id, all_errors=all_errors
        )

    async def cancel_jobs(
        self, job_id: Optional[int] = None, channel_id: Any = None
    ) -> Dict[str, Any]:
        if channel_id is not None:
            channel_id = normalize_channel_id(channel_id)
        return await self.scheduler.cancel_jobs(job_id=job_id, channel_id=channel_id)

    async def get_queue_stats(self) -> Dict[str, Any]:
        return await self.scheduler.get_queue_stats()

    async def process_queue(self) -> int:
        """Drain the queue.  Concurrent calls share one drain."""
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self.scheduler.process_queue())
        return await asyncio.shield(self._drain_task)

    async def resume_pending_jobs(self) -> int:
        """Put errored jobs back to ``pending`` and drain the queue."""
        reset = await self.scheduler.reset_errored_jobs()
        if reset:
            logger.info("Re-queued %d errored job(s)", reset)
        return await self.process_queue()

    async def list_job_events(
        self, channel_id: Any = None, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Recorded job transitions, newest first.  Empty without an audit trail."""
        if self._audit is None:
            return []
        if channel_id is not None:
            channel_id = normalize_channel_id(channel_id)
        await self._audit.flush()
        return await self._audit.recent_events(channel_id=channel_id, limit=limit)

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def refresh_channels_from_dialogs(self) -> Dict[str, Any]:
        peers = await self._client.list_dialogs()
        count = await self.messages.upsert_channels(peers)
        logger.info("Refreshed %d channel(s) from dialogs", count)
        return {"count": count}

    async def upsert_channels(self, peers: Iterable[RemotePeer]) -> int:
        return await self.messages.upsert_channels(peers)

    async def list_active_channels(self) -> List[Dict[str, Any]]:
        return await self.messages.list_active_channels()

    async def set_channel_sync(self, channel_id: Any, enabled: bool) -> Dict[str, Any]:
        return await self.messages.set_channel_sync(normalize_channel_id(channel_id), enabled)

    async def get_channel(self, channel_id: Any) -> Optional[Dict[str, Any]]:
        return await self.messages.get_channel(normalize_channel_id(channel_id))

    async def get_sync_stats(self) -> Dict[str, Any]:
        return await self.messages.get_sync_stats()

    async def upsert_topics(self, channel_id: Any, topics: Sequence[Dict[str, Any]]) -> int:
        return await self.messages.upsert_topics(normalize_channel_id(channel_id), topics)

    # ------------------------------------------------------------------
    # Archive reads
    # ------------------------------------------------------------------

    async def list_archived_messages(
        self,
        channel_ids: Any = None,
        topic_id: Optional[int] = None,
        from_date: Any = None,
        to_date: Any = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Newest archived messages; ``channel_ids`` may be one id or a list."""
        if channel_ids is not None and not isinstance(channel_ids, (list, tuple, set)):
            channel_ids = [channel_ids]
        ids = [normalize_channel_id(cid) for cid in channel_ids] if channel_ids else None
        return _dicts(
            await self.search.list_archived_messages(
                ids, topic_id=topic_id, from_date=from_date, to_date=to_date, limit=limit
            )
        )

    async def get_archived_message(
        self, channel_id: Any, message_id: int
    ) -> Optional[Dict[str, Any]]:
        record = await self.search.get_archived_message(
            normalize_channel_id(channel_id), message_id
        )
        return record.to_dict() if record is not None else None

    async def get_archived_message_context(
        self, channel_id: Any, message_id: int, before: int = 20, after: int = 20
    ) -> Dict[str, Any]:
        context = await self.search.get_archived_message_context(
            normalize_channel_id(channel_id), message_id, before=before, after=after
        )
        target = context["target"]
        return {
            "target": target.to_dict() if target is not None else None,
            "before": _dicts(context["before"]),
            "after": _dicts(context["after"]),
        }

    async def get_archived_messages(
        self,
        channel_id: Any,
        from_date: Any = None,
        to_date: Any = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return _dicts(
            await self.search.get_archived_messages(
                normalize_channel_id(channel_id), from_date, to_date, limit
            )
        )

    async def get_message_stats(self, channel_id: Any) -> Dict[str, Any]:
        return await self.search.get_message_stats(normalize_channel_id(channel_id))

    async def search_messages(
        self,
        channel_id: Any,
        pattern: str,
        limit: int = 50,
        case_insensitive: bool = True,
        topic_id: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        return _dicts(
            await self.search.search_messages(
                normalize_channel_id(channel_id), pattern, limit, case_insensitive, topic_id
            )
        )

    async def search_archive_messages(self, **criteria: Any) -> List[Dict[str, Any]]:
        """Search the whole archive.  See ``ArchiveSearch.search_archive_messages``."""
        channel_ids = criteria.get("channel_ids")
        if channel_ids:
            criteria["channel_ids"] = [normalize_channel_id(cid) for cid in channel_ids]
        return _dicts(await self.search.search_archive_messages(**criteria))

    async def search_tagged_messages(self, tag: str, **criteria: Any) -> List[Dict[str, Any]]:
        return _dicts(await self.search.search_tagged_messages(tag, **criteria))

    async def scan_tagged_messages(
        self,
        tag: str,
        source: str = SOURCE_AUTO,
        query: Optional[str] = None,
        from_date: Any = None,
        to_date: Any = None,
        auto_tag: bool = True,
        auto_tag_limit: int = 50,
        refresh_metadata: bool = True,
        channel_ids: Optional[Sequence[Any]] = None,
        channel_limit: int = 100,
        message_limit: int = 100,
    ) -> Dict[str, Any]:
        """Auto-tag channels, then collect the channels and messages under ``tag``.

        Runs :meth:`auto_tag_channels` first (unless ``auto_tag`` is False) so
        freshly discovered channels are classified before they are listed.

        Args:
            tag: Tag to scan.
            source: Tag partition used for tagging, listing and searching.
            query: Optional full-text query over the tagged messages.
            from_date: ISO-8601 lower bound (inclusive).
            to_date: ISO-8601 upper bound (inclusive).
            auto_tag: Classify channels before listing them.
            auto_tag_limit: Channels to classify when ``channel_ids`` is not given.
            refresh_metadata: Refresh stale "about" text before classifying.
            channel_ids: Only classify these channels.
            channel_limit: Maximum tagged channels returned.
            message_limit: Maximum messages returned.

        Returns:
            Summary dict with ``tagged_channels`` and ``messages``.
        """
        normalized = normalize_tag(tag)
        if normalized is None:
            return {
                "tag": None,
                "source": None,
                "auto_tag": False,
                "tagged_channel_count": 0,
                "message_count": 0,
                "tagged_channels": [],
                "messages": [],
            }
        auto_tag_limit = auto_tag_limit if auto_tag_limit and auto_tag_limit > 0 else 50
        if auto_tag:
            await self.auto_tag_channels(
                channel_ids,
                limit=auto_tag_limit,
                source=source,
                refresh_metadata=refresh_metadata,
            )
        tagged_channels = await self.tags.list_tagged_channels(
            normalized, source, channel_limit if channel_limit > 0 else 100
        )
        messages = await self.search.search_tagged_messages(
            normalized,
            source=source,
            query=query,
            from_date=from_date,
            to_date=to_date,
            limit=message_limit if message_limit > 0 else 100,
        )
        return {
            "tag": normalized,
            "source": source,
            "query": query,
            "from_date": from_date,
            "to_date": to_date,
            "auto_tag": auto_tag,
            "auto_tag_limit": auto_tag_limit,
            "tagged_channel_count": len(tagged_channels),
            "message_count": len(messages),
            "tagged_channels": tagged_channels,
            "messages": _dicts(messages),
        }

    async def get_search_status(self) -> Dict[str, Any]:
        return await get_search_status(self._store)

    # ------------------------------------------------------------------
    # Tags and metadata
    # ------------------------------------------------------------------

    async def set_channel_tags(
        self, channel_id: Any, tags: Iterable[Any], source: str = SOURCE_MANUAL
    ) -> List[str]:
        return await self.tags.set_channel_tags(normalize_channel_id(channel_id), tags, source)

    async def list_channel_tags(
        self, channel_id: Any, source: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return await self.tags.list_channel_tags(normalize_channel_id(channel_id), source)

    async def list_tagged_channels(
        self, tag: str, source: Optional[str] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        return await self.tags.list_tagged_channels(tag, source, limit)

    async def auto_tag_channels(
        self,
        channel_ids: Optional[Sequence[Any]] = None,
        limit: int = 50,
        source: str = SOURCE_AUTO,
        refresh_metadata: bool = True,
    ) -> List[Dict[str, Any]]:
        ids = [normalize_channel_id(cid) for cid in channel_ids] if channel_ids else None
        return await self.tags.auto_tag_channels(ids, limit, source, refresh_metadata)

    async def get_channel_metadata(self, channel_id: Any) -> Optional[Dict[str, Any]]:
        return await self.metadata.get_channel_metadata(normalize_channel_id(channel_id))

    async def refresh_channel_metadata(
        self,
        channel_ids: Optional[Sequence[Any]] = None,
        limit: int = 20,
        force: bool = False,
        only_missing: bool = False,
    ) -> Dict[str, Any]:
        ids = [normalize_channel_id(cid) for cid in channel_ids] if channel_ids else None
        return await self.metadata.refresh_channel_metadata(ids, limit, force, only_missing)

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def refresh_contacts(self) -> Dict[str, Any]:
        return await self.contacts.refresh_contacts()

    async def get_contact(self, user_id: Any) -> Optional[Dict[str, Any]]:
        return await self.contacts.get_contact(normalize_channel_id(user_id))

    async def search_contacts(self, query: str, limit: int = 50) -> List[Dict[str, Any]]:
        return await self.contacts.search_contacts(query, limit)

    async def set_contact_alias(self, user_id: Any, alias: str) -> Dict[str, Any]:
        return await self.contacts.set_contact_alias(normalize_channel_id(user_id), alias)

    async def remove_contact_alias(self, user_id: Any) -> bool:
        return await self.contacts.remove_contact_alias(normalize_channel_id(user_id))

    async def set_contact_notes(self, user_id: Any, notes: Optional[str]) -> Dict[str, Any]:
        return await self.contacts.set_contact_notes(normalize_channel_id(user_id), notes)

    async def list_contact_tags(self, user_id: Any) -> List[str]:
        return await self.contacts.list_contact_tags(normalize_channel_id(user_id))

    async def add_contact_tags(self, user_id: Any, tags: Iterable[Any]) -> List[str]:
        return await self.contacts.add_contact_tags(normalize_channel_id(user_id), tags)

    async def remove_contact_tags(self, user_id: Any, tags: Iterable[Any]) -> List[str]:
        return await self.contacts.remove_contact_tags(normalize_channel_id(user_id), tags)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_realtime_sync(self) -> bool:
        return self.realtime.start()

    async def shutdown(self) -> None:
        """Stop syncing and release the store.

        Order: request stop, wait for the running drain, return interrupted
        jobs to ``pending``, unsubscribe from live updates, flush the audit
        trail, close the store.  Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True
        self._token.cancel()
        if self._drain_task is not None and not self._drain_task.done():
            try:
                await self._drain_task
            except Exception:
                logger.exception("Queue drain failed during shutdown")
        reset = await self.scheduler.reset_in_progress_jobs()
        if reset:
            logger.info("Returned %d interrupted job(s) to pending", reset)
        self.realtime.stop()
        if self._audit is not None:
            try:
                await self._audit.close()
            except Exception:
                logger.exception("Failed to flush/close audit logger")
        await self._store.close()
        logger.info("Sync service shut down")
