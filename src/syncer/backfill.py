"""
Cursor-driven history fetcher.

Each job runs two phases against one channel:

1. **Catch-up**: fetch forward from the newest archived message id in
   fixed-size batches until a short batch says the head has been reached.
   Channels opted out of sync are skipped.
   A channel with nothing archived yet only takes the newest batch; older
   history is the backfill phase's job.
2. **Backfill**: walk backward from the resume cursor (the job's own,
   else the channel's oldest archived message) until the job's target
   count is reached, the ``min_date`` floor is crossed, history runs out,
   or the cursor stops moving.  The cursor is checkpointed after every
   chunk so a restart resumes where the last run stopped.

Rate limits are not handled here: ``RateLimitedError`` propagates to the
scheduler, which owns the retry policy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.cancellation import CancellationToken
from syncer.message_store import MessageStore, iso_from_seconds
from syncer.progress import JobProgress
from syncer.remote import RemoteClient, RemoteMessage, RemotePeer

logger = logging.getLogger("syncer.backfill")

DEFAULT_BATCH_SIZE = 100
DEFAULT_INTER_BATCH_DELAY = 1.2

# checkpoint(cursor_message_id, cursor_message_date_iso, message_count)
Checkpoint = Callable[[int, Optional[str], int], Awaitable[None]]


@dataclass
class CatchUpResult:
    fetched: int = 0
    inserted: int = 0
    newest_id: Optional[int] = None
    stopped: bool = False


@dataclass
class BackfillResult:
    inserted: int
    total: int
    cursor_id: Optional[int]
    cursor_date: Optional[str]
    has_more_older: bool
    stopped_by_date: bool = False
    stopped: bool = False


def parse_iso_datetime(value: Any, name: str = "date") -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime) as aware UTC.

    Raises:
        ValueError: If ``value`` is a non-empty string that is not ISO-8601.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"{name} must be a valid ISO-8601 date: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class BackfillEngine:
    """Fetches a channel's history through the remote client.

    Args:
        client: Remote client implementation.
        messages: Message write path.
        batch_size: Messages per request.
        inter_batch_delay: Seconds to wait between consecutive requests.
    """

    def __init__(
        self,
        client: RemoteClient,
        messages: MessageStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
        inter_batch_delay: float = DEFAULT_INTER_BATCH_DELAY,
    ) -> None:
        self._client = client
        self._messages = messages
        self.batch_size = max(1, batch_size)
        self.inter_batch_delay = max(0.0, inter_batch_delay)

    # ------------------------------------------------------------------
    # Catch-up
    # ------------------------------------------------------------------

    async def sync_newer_messages(
        self,
        channel_id: str,
        token: Optional[CancellationToken] = None,
        min_date: Optional[datetime] = None,
    ) -> CatchUpResult:
        """Archive everything newer than the channel's newest archived message.

        Args:
            channel_id: Channel to catch up.
            token: Stop request checked between batches.
            min_date: Messages older than this are not archived.
        """
        token = token or CancellationToken()
        result = CatchUpResult()
        channel = await self._messages.get_channel(channel_id)
        if channel is not None and not channel["sync_enabled"]:
            logger.debug("Catch-up skipped for channel=%s: sync disabled", channel_id)
            return result
        min_id = int((channel or {}).get("last_message_id") or 0)
        head_only = min_id == 0
        floor = int(min_date.timestamp()) if min_date is not None else None
        identity_saved = False

        while not token.cancelled:
            page = await self._client.get_messages_by_channel_id(
                channel_id,
                self.batch_size,
                min_id=min_id,
                reverse=not head_only,
            )
            if not identity_saved and (page.peer_title or page.peer_type):
                await self._messages.upsert_channel(
                    RemotePeer(id=channel_id, peer_type=page.peer_type, title=page.peer_title)
                )
                identity_saved = True

            fresh = sorted((m for m in page.messages if m.id > min_id), key=lambda m: m.id)
            if not fresh:
                break
            keep = [m for m in fresh if floor is None or m.date is None or m.date >= floor]
            inserted = await self._messages.insert_messages(
                channel_id, keep, update_cursors=True
            )

            result.fetched += len(fresh)
            result.inserted += inserted
            result.newest_id = fresh[-1].id
            logger.debug(
                "Catch-up channel=%s: fetched=%d inserted=%d newest=%d",
                channel_id,
                len(fresh),
                inserted,
                fresh[-1].id,
            )

            if head_only or len(page.messages) < self.batch_size:
                break
            min_id = fresh[-1].id
            if await token.sleep(self.inter_batch_delay):
                break

        result.stopped = token.cancelled
        return result

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def backfill_history(
        self,
        job: Dict[str, Any],
        token: Optional[CancellationToken] = None,
        checkpoint: Optional[Checkpoint] = None,
    ) -> BackfillResult:
        """Walk older history for ``job`` until one of the stop conditions.

        Args:
            job: Job row (``channel_id``, ``target_message_count``,
                 ``cursor_message_id``, ``cursor_message_date``,
                 ``backfill_min_date``).
            token: Stop request checked between chunks.
            checkpoint: Called after every chunk with the new cursor and count.
        """
        token = token or CancellationToken()
        channel_id = str(job["channel_id"])
        target = int(job.get("target_message_count") or 0)
        total = await self._messages.count_messages(channel_id)
        cursor_id: Optional[int] = job.get("cursor_message_id")
        cursor_date: Optional[str] = job.get("cursor_message_date")

        if total >= target:
            return BackfillResult(0, total, cursor_id, cursor_date, has_more_older=False)

        channel = await self._messages.get_channel(channel_id) or {}
        offset_id = int(
            cursor_id
            or channel.get("oldest_message_id")
            or channel.get("last_message_id")
            or 0
        )
        offset_date = parse_iso_datetime(
            cursor_date
            or channel.get("oldest_message_date")
            or channel.get("last_message_date")
        )
        min_date = parse_iso_datetime(job.get("backfill_min_date"), "backfill_min_date")
        floor = int(min_date.timestamp()) if min_date is not None else None

        progress = JobProgress(
            channel_id, channel.get("peer_title") or channel_id, target, total
        )
        inserted_total = 0
        stopped_by_date = False
        exhausted = False
        reason = "target reached"

        while total < target:
            if token.cancelled:
                reason = "stop requested"
                break
            if offset_id != 0 and offset_id <= 1:
                reason = "start of history"
                exhausted = True
                break

            chunk: List[RemoteMessage] = []
            chunk_limit = min(self.batch_size, target - total)
            async for message in self._client.iter_history(
                channel_id, chunk_limit, offset_id=offset_id, offset_date=offset_date
            ):
                if floor is not None and message.date is not None and message.date < floor:
                    stopped_by_date = True
                    break
                chunk.append(message)

            next_offset_id, next_offset_date = offset_id, offset_date
            if chunk:
                inserted = await self._messages.insert_messages(
                    channel_id, chunk, update_cursors=True
                )
                inserted_total += inserted
                total = await self._messages.count_messages(channel_id)

                oldest = min(chunk, key=lambda m: m.id)
                next_offset_id = oldest.id
                if oldest.date is not None:
                    next_offset_date = datetime.fromtimestamp(oldest.date, tz=timezone.utc)
                cursor_id, cursor_date = oldest.id, iso_from_seconds(oldest.date)
                if checkpoint is not None:
                    await checkpoint(cursor_id, cursor_date, total)
                progress.update(len(chunk), inserted, total)
                progress.log_chunk()

            if stopped_by_date:
                reason = "reached min date"
                break
            if not chunk:
                reason = "no older history"
                exhausted = True
                break
            if next_offset_id == offset_id and next_offset_date == offset_date:
                reason = "cursor did not advance"
                break
            offset_id, offset_date = next_offset_id, next_offset_date

            if total < target and await token.sleep(self.inter_batch_delay):
                reason = "stop requested"
                break

        stopped = token.cancelled
        progress.log_complete(reason)
        return BackfillResult(
            inserted=inserted_total,
            total=total,
            cursor_id=cursor_id,
            cursor_date=cursor_date,
            has_more_older=(
                inserted_total > 0
                and total < target
                and not (stopped_by_date or stopped or exhausted)
            ),
            stopped_by_date=stopped_by_date,
            stopped=stopped,
        )
