"""
Single-flight job queue driving the backfill engine.

Job states::

    pending ──► in_progress ──► idle       (target reached, no older history left)
                             ├─► pending    (more history, rate limit, or shutdown)
                             └─► error      (any other failure; retried only on request)

Only one job is processed at a time.  Telegram's flood limits apply to the
whole account, so running channels in parallel buys nothing but longer
waits.  The drain loop always takes the least recently updated runnable
job, so a job put back to ``pending`` goes to the back of the line.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from shared.audit import (
    JOB_FAILED,
    JOB_FINISHED,
    JOB_RATE_LIMITED,
    JOB_STARTED,
    AuditLogger,
    JobEvent,
)
from shared.cancellation import CancellationToken
from shared.db import Store
from syncer.backfill import BackfillEngine, parse_iso_datetime
from syncer.message_store import MessageStore
from syncer.remote import RemotePeer, as_rate_limited

logger = logging.getLogger("syncer.scheduler")

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_IDLE = "idle"
STATUS_ERROR = "error"
JOB_STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_IDLE, STATUS_ERROR)

DEFAULT_TARGET_MESSAGES = 1000
DEFAULT_INTER_JOB_DELAY = 3.0

_JOB_SELECT = """
    SELECT j.*, c.peer_title, c.username, c.peer_type, c.sync_enabled
    FROM jobs j
    LEFT JOIN channels c ON c.channel_id = j.channel_id
"""


class JobScheduler:
    """Persists jobs and drains them one at a time.

    Args:
        store: Archive store.
        messages: Message/channel write path.
        engine: Backfill engine that does the fetching.
        token: Stop request shared with the rest of the service.
        audit: Optional audit trail for job lifecycle events.
        inter_job_delay: Seconds to wait between jobs.
        default_target: Target message count when ``add_job`` gets no depth.
    """

    def __init__(
        self,
        store: Store,
        messages: MessageStore,
        engine: BackfillEngine,
        token: CancellationToken,
        audit: Optional[AuditLogger] = None,
        inter_job_delay: float = DEFAULT_INTER_JOB_DELAY,
        default_target: int = DEFAULT_TARGET_MESSAGES,
    ) -> None:
        self._store = store
        self._messages = messages
        self._engine = engine
        self._token = token
        self._audit = audit
        self.inter_job_delay = max(0.0, inter_job_delay)
        self.default_target = default_target
        self._processing = False

    @property
    def processing(self) -> bool:
        return self._processing

    # ------------------------------------------------------------------
    # Job CRUD
    # ------------------------------------------------------------------

    async def add_job(
        self,
        channel_id: str,
        depth: Optional[int] = None,
        min_date: Any = None,
        peer: Optional[RemotePeer] = None,
    ) -> Dict[str, Any]:
        """Create or re-arm the job for ``channel_id``.

        Re-arming resets the job to ``pending`` and clears its error; the
        resume cursor and message count are kept.

        Raises:
            ValueError: On an empty channel id, non-positive depth, or an
                unparseable ``min_date``.
        """
        if not channel_id:
            raise ValueError("channel_id is required")
        target = self.default_target if depth is None else int(depth)
        if target <= 0:
            raise ValueError("depth must be a positive integer")
        floor = parse_iso_datetime(min_date, "min_date")
        floor_iso = floor.isoformat() if floor is not None else None

        if peer is not None:
            await self._messages.upsert_channel(peer)
        else:
            await self._messages.ensure_channel(channel_id)

        await self._store.execute(
            """
            INSERT INTO jobs (channel_id, status, target_message_count, backfill_min_date, error)
            VALUES (?, 'pending', ?, ?, NULL)
            ON CONFLICT(channel_id) DO UPDATE SET
                status = 'pending',
                target_message_count = excluded.target_message_count,
                backfill_min_date = excluded.backfill_min_date,
                error = NULL,
                updated_at = CURRENT_TIMESTAMP
            """,
            (channel_id, target, floor_iso),
        )
        job = await self.get_job(channel_id=channel_id)
        logger.info(
            "Job armed: channel=%s target=%d min_date=%s", channel_id, target, floor_iso
        )
        return job

    async def get_job(
        self, job_id: Optional[int] = None, channel_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        if job_id is not None:
            return await self._store.fetchone(f"{_JOB_SELECT} WHERE j.id = ?", (job_id,))
        return await self._store.fetchone(
            f"{_JOB_SELECT} WHERE j.channel_id = ?", (channel_id,)
        )

    async def list_jobs(
        self,
        status: Optional[str] = None,
        channel_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Jobs joined with channel display data, most recently updated first."""
        if status is not None and status not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {status!r}")
        conditions: List[str] = []
        params: List[Any] = []
        if status is not None:
            conditions.append("j.status = ?")
            params.append(status)
        if channel_id is not None:
            conditions.append("j.channel_id = ?")
            params.append(channel_id)
        sql = _JOB_SELECT
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY j.updated_at DESC, j.id DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return await self._store.fetchall(sql, params)

    async def retry_jobs(
        self,
        job_id: Optional[int] = None,
        channel_id: Optional[str] = None,
        all_errors: bool = False,
    ) -> Dict[str, Any]:
        """Return jobs to ``pending`` and clear their error.

        Exactly one selector must be given.  ``all_errors`` only touches
        jobs currently in ``error``.

        Raises:
            ValueError: If no selector, or more than one, is given.
        """
        selectors = sum(1 for s in (job_id is not None, channel_id is not None, all_errors) if s)
        if selectors == 0:
            raise ValueError("Specify job_id, channel_id, or all_errors")
        if selectors > 1:
            if all_errors:
                raise ValueError("all_errors cannot be combined with job_id or channel_id")
            raise ValueError("Specify only one of job_id or channel_id")

        if all_errors:
            where, params = "status = 'error'", ()
        elif job_id is not None:
            where, params = "id = ?", (job_id,)
        else:
            where, params = "channel_id = ?", (channel_id,)

        async with self._store.transaction() as conn:
            async with conn.execute(f"SELECT id FROM jobs WHERE {where}", params) as cursor:
                job_ids = [row["id"] for row in await cursor.fetchall()]
            if job_ids:
                await conn.execute(
                    f"UPDATE jobs SET status = 'pending', error = NULL, "
                    f"updated_at = CURRENT_TIMESTAMP WHERE {where}",
                    params,
                )
        logger.info("Retry: %d job(s) reset to pending", len(job_ids))
        return {"updated": len(job_ids), "job_ids": job_ids}

    async def cancel_jobs(
        self, job_id: Optional[int] = None, channel_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Delete job rows.  Archived messages are kept.

        Raises:
            ValueError: If neither or both selectors are given.
        """
        if (job_id is None) == (channel_id is None):
            raise ValueError("Specify exactly one of job_id or channel_id")
        where, params = ("id = ?", (job_id,)) if job_id is not None else (
            "channel_id = ?",
            (channel_id,),
        )
        async with self._store.transaction() as conn:
            async with conn.execute(f"SELECT id FROM jobs WHERE {where}", params) as cursor:
                job_ids = [row["id"] for row in await cursor.fetchall()]
            await conn.execute(f"DELETE FROM jobs WHERE {where}", params)
        logger.info("Canceled %d job(s)", len(job_ids))
        return {"canceled": len(job_ids), "job_ids": job_ids}

    async def get_queue_stats(self) -> Dict[str, Any]:
        rows = await self._store.fetchall(
            "SELECT status, COUNT(*) AS count FROM jobs GROUP BY status"
        )
        stats: Dict[str, Any] = {status: 0 for status in JOB_STATUSES}
        for row in rows:
            stats[row["status"]] = row["count"]
        stats["processing"] = self._processing
        return stats

    async def reset_errored_jobs(self) -> int:
        return await self._store.execute(
            "UPDATE jobs SET status = 'pending', error = NULL, "
            "updated_at = CURRENT_TIMESTAMP WHERE status = 'error'"
        )

    async def reset_in_progress_jobs(self) -> int:
        """Put jobs interrupted mid-flight back to ``pending``."""
        return await self._store.execute(
            "UPDATE jobs SET status = 'pending', updated_at = CURRENT_TIMESTAMP "
            "WHERE status = 'in_progress'"
        )

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------

    async def _next_job(self) -> Optional[Dict[str, Any]]:
        return await self._store.fetchone(
            "SELECT * FROM jobs WHERE status IN ('pending', 'in_progress') "
            "ORDER BY updated_at ASC, id ASC LIMIT 1"
        )

    async def _update_job(self, job_id: int, **fields: Any) -> None:
        assignments = ", ".join(f"{name} = :{name}" for name in fields)
        await self._store.execute(
            f"UPDATE jobs SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = :id",
            {**fields, "id": job_id},
        )

    async def process_queue(self) -> int:
        """Drain runnable jobs until the queue is empty or a stop is requested.

        A call made while a drain is already running returns immediately.

        Returns:
            Number of jobs processed by this call.
        """
        if self._processing:
            return 0
        self._processing = True
        processed = 0
        try:
            while not self._token.cancelled:
                job = await self._next_job()
                if job is None:
                    break
                await self.process_job(job)
                processed += 1
                if await self._token.sleep(self.inter_job_delay):
                    break
        finally:
            self._processing = False
        logger.info("Queue drain finished: %d job(s) processed", processed)
        return processed

    async def process_job(self, job: Dict[str, Any]) -> str:
        """Run catch-up and backfill for one job and persist its outcome.

        Returns:
            The job's final status.
        """
        job_id = job["id"]
        channel_id = str(job["channel_id"])

        if self._token.cancelled:
            await self._update_job(job_id, status=STATUS_PENDING)
            return STATUS_PENDING

        await self._update_job(job_id, status=STATUS_IN_PROGRESS, error=None)
        await self._audit_event(JOB_STARTED, job_id, channel_id)
        logger.info("Processing job %d (channel=%s)", job_id, channel_id)

        try:
            min_date = parse_iso_datetime(job.get("backfill_min_date"), "backfill_min_date")
            await self._engine.sync_newer_messages(channel_id, self._token, min_date=min_date)
            if self._token.cancelled:
                await self._update_job(job_id, status=STATUS_PENDING)
                return STATUS_PENDING

            message_count = await self._messages.count_messages(channel_id)
            await self._update_job(job_id, message_count=message_count)

            async def checkpoint(cursor_id: int, cursor_date: Optional[str], count: int) -> None:
                await self._update_job(
                    job_id,
                    cursor_message_id=cursor_id,
                    cursor_message_date=cursor_date,
                    message_count=count,
                )

            result = await self._engine.backfill_history(job, self._token, checkpoint)
            if self._token.cancelled:
                await self._update_job(
                    job_id, status=STATUS_PENDING, message_count=result.total
                )
                return STATUS_PENDING

            status = STATUS_PENDING if result.has_more_older else STATUS_IDLE
            await self._update_job(
                job_id,
                status=status,
                message_count=result.total,
                cursor_message_id=result.cursor_id,
                cursor_message_date=result.cursor_date,
                last_synced_at=_utc_now_sql(),
                error=None,
            )
            logger.info(
                "Job %d (channel=%s) -> %s: %d archived, %d new",
                job_id,
                channel_id,
                status,
                result.total,
                result.inserted,
            )
            await self._audit_event(
                JOB_FINISHED,
                job_id,
                channel_id,
                status=status,
                message_count=result.total,
                inserted=result.inserted,
            )
            return status

        except sqlite3.Error:
            raise
        except Exception as exc:
            rate_limited = as_rate_limited(exc)
            if rate_limited is not None:
                wait = rate_limited.wait_seconds
                logger.warning(
                    "Rate limited on job %d (channel=%s); waiting %ds", job_id, channel_id, wait
                )
                await self._update_job(
                    job_id,
                    status=STATUS_PENDING,
                    error=f"Rate limited, waiting {wait}s",
                )
                await self._audit_event(
                    JOB_RATE_LIMITED, job_id, channel_id, success=False, wait_seconds=wait
                )
                await self._token.sleep(wait)
                return STATUS_PENDING

            logger.exception("Job %d (channel=%s) failed", job_id, channel_id)
            await self._update_job(job_id, status=STATUS_ERROR, error=str(exc) or repr(exc))
            await self._audit_event(
                JOB_FAILED, job_id, channel_id, success=False, error=str(exc)
            )
            return STATUS_ERROR

    async def _audit_event(
        self, action: str, job_id: int, channel_id: str, success: bool = True, **details: Any
    ) -> None:
        if self._audit is not None:
            await self._audit.record(JobEvent(action, job_id, channel_id, success, details))


def _utc_now_sql() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
