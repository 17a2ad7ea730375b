"""
Live update ingestion.

``RealtimeIngester`` implements the remote client's ``UpdateHandler``
protocol and writes through the same ``MessageStore`` as the backfill
path: new messages are insert-or-ignore, edits overwrite.  Channels that
are not opted into sync still get their identity recorded but never get
message rows.

Each event is handled in isolation; a failure is logged and the next
event is processed normally.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from shared.cancellation import CancellationToken
from syncer.backfill import BackfillEngine
from syncer.message_store import MessageStore
from syncer.remote import (
    ChannelDiff,
    DeletedMessages,
    IncomingMessage,
    RemoteClient,
)

logger = logging.getLogger("syncer.realtime")


class RealtimeIngester:
    """Keeps the archive current from the client's live event stream.

    Args:
        client: Remote client to subscribe to.
        messages: Message write path.
        engine: Used for the catch-up pass after an update gap.
        token: Stop request; catch-up passes honour it.
    """

    def __init__(
        self,
        client: RemoteClient,
        messages: MessageStore,
        engine: BackfillEngine,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self._client = client
        self._messages = messages
        self._engine = engine
        self._token = token or CancellationToken()
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> bool:
        """Subscribe to live updates.  Returns False if already running."""
        if self._unsubscribe is not None:
            return False
        self._unsubscribe = self._client.subscribe(self)
        logger.info("Realtime sync started")
        return True

    def stop(self) -> None:
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
            logger.info("Realtime sync stopped")

    # ------------------------------------------------------------------
    # UpdateHandler
    # ------------------------------------------------------------------

    async def on_new_message(self, update: IncomingMessage) -> None:
        try:
            await self._store_incoming(update, edit=False)
        except Exception:
            logger.exception("Failed to ingest new message")

    async def on_edit_message(self, update: IncomingMessage) -> None:
        try:
            await self._store_incoming(update, edit=True)
        except Exception:
            logger.exception("Failed to ingest edited message")

    async def on_delete_messages(self, update: DeletedMessages) -> None:
        try:
            deleted = await self._messages.delete_messages(
                update.channel_id, update.message_ids
            )
            logger.debug(
                "Realtime delete channel=%s ids=%s removed=%d",
                update.channel_id,
                update.message_ids,
                deleted,
            )
        except Exception:
            logger.exception("Failed to apply message deletion")

    async def on_channel_too_long(self, update: ChannelDiff) -> None:
        """Apply a bulk diff, then catch up past it."""
        channel_id = update.channel.id
        try:
            if not await self._messages.upsert_channel(update.channel):
                return
            messages = [m for m in update.messages if m.id > 0]
            inserted = await self._messages.insert_messages(
                channel_id, messages, update_cursors=True
            )
            logger.info(
                "Applied update-gap diff channel=%s: %d messages, %d new",
                channel_id,
                len(messages),
                inserted,
            )
            await self._engine.sync_newer_messages(channel_id, self._token)
        except Exception:
            logger.exception("Failed to recover update gap for channel %s", channel_id)

    # ------------------------------------------------------------------

    async def _store_incoming(self, update: IncomingMessage, edit: bool) -> None:
        channel_id = update.chat.id
        if not await self._messages.upsert_channel(update.chat):
            return
        message = update.message
        if edit:
            await self._messages.upsert_message(channel_id, message, update_cursors=True)
        else:
            await self._messages.insert_messages(channel_id, [message], update_cursors=True)
