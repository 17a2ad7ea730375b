"""
Job event trail.

The scheduler reports each job transition (started, finished, rate limited,
failed) as a :class:`JobEvent`.  A background writer appends the events to
a JSON Lines file and to the ``audit_log`` table, so the drain loop only
enqueues.  A failed write is logged and the events are dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from shared.db import Store

logger = logging.getLogger("shared.audit")

JOB_STARTED = "job_started"
JOB_FINISHED = "job_finished"
JOB_RATE_LIMITED = "job_rate_limited"
JOB_FAILED = "job_failed"

_INSERT_EVENT_SQL = (
    "INSERT INTO audit_log (job_id, channel_id, action, details, success, created_at) "
    "VALUES (?, ?, ?, ?, ?, ?)"
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class JobEvent:
    """One transition of one sync job."""

    action: str
    job_id: int
    channel_id: str
    success: bool = True
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utc_now)

    def to_json_line(self) -> str:
        return json.dumps(asdict(self), default=str) + "\n"

    def to_row(self) -> Tuple[Any, ...]:
        return (
            self.job_id,
            self.channel_id,
            self.action,
            json.dumps(self.details, default=str),
            int(self.success),
            self.timestamp,
        )


class AuditLogger:
    """Buffered writer for :class:`JobEvent` records.

    Args:
        store: Archive store holding the ``audit_log`` table.
        log_path: JSON Lines file; ``None`` records to the table only.
    """

    def __init__(self, store: Store, log_path: Optional[Path] = None) -> None:
        self._store = store
        self._log_path = log_path
        self._pending: asyncio.Queue[JobEvent] = asyncio.Queue()
        self._writer: Optional[asyncio.Task[None]] = None
        self._closed = False

    async def record(self, event: JobEvent) -> None:
        """Queue ``event`` for writing.  Events recorded after close are dropped."""
        if self._closed:
            logger.debug(
                "Dropping %s for job %s: audit trail closed", event.action, event.job_id
            )
            return
        if self._writer is None:
            self._writer = asyncio.get_running_loop().create_task(
                self._drain(), name="tg-archive-audit-writer"
            )
        self._pending.put_nowait(event)

    async def _drain(self) -> None:
        while True:
            batch = [await self._pending.get()]
            while not self._pending.empty():
                batch.append(self._pending.get_nowait())
            try:
                await self._write(batch)
            finally:
                for _ in batch:
                    self._pending.task_done()

    async def _write(self, batch: List[JobEvent]) -> None:
        if self._log_path is not None:
            try:
                self._log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._log_path, "a", encoding="utf-8") as handle:
                    handle.writelines(event.to_json_line() for event in batch)
            except OSError:
                logger.exception(
                    "Failed to append %d job event(s) to %s", len(batch), self._log_path
                )
        try:
            await self._store.executemany(_INSERT_EVENT_SQL, [e.to_row() for e in batch])
        except Exception:
            logger.exception("Failed to store %d job event(s)", len(batch))

    async def flush(self) -> None:
        """Wait until every queued event has been written."""
        await self._pending.join()

    async def close(self) -> None:
        """Flush queued events and stop the writer.  Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        await self.flush()
        if self._writer is not None:
            self._writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer
            self._writer = None

    async def recent_events(
        self, channel_id: Optional[str] = None, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Stored job events, newest first, optionally for one channel."""
        sql = (
            "SELECT job_id, channel_id, action, details, success, created_at "
            "FROM audit_log"
        )
        params: List[Any] = []
        if channel_id is not None:
            sql += " WHERE channel_id = ?"
            params.append(channel_id)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, int(limit)))
        rows = await self._store.fetchall(sql, params)
        for row in rows:
            row["details"] = json.loads(row["details"]) if row["details"] else {}
            row["success"] = bool(row["success"])
        return rows
