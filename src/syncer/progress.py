"""
Backfill progress tracking with ETA for log output.

``JobProgress`` follows one job as it walks a channel's history, logging a
line per chunk with archive size against the job's target, fetch rate and
estimated time remaining.
"""

from __future__ import annotations

import logging
import time

logger = logging.getLogger("syncer.progress")


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    return f"{hours}h {mins}m" if mins else f"{hours}h"


class JobProgress:
    """Tracks one backfill job.

    Args:
        channel_id: Channel being backfilled.
        label: Display name for log lines (title, falling back to the id).
        target: Job's target message count.
        archived: Messages already archived when the job started.
    """

    def __init__(self, channel_id: str, label: str, target: int, archived: int = 0) -> None:
        self.channel_id = channel_id
        self.label = label
        self.target = target
        self.archived = archived
        self.fetched = 0
        self.inserted = 0
        self.chunks = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def rate(self) -> float:
        """Messages fetched per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.fetched / elapsed

    @property
    def eta_seconds(self) -> float | None:
        """Seconds until the target is reached at the current rate."""
        if self.target <= 0 or self.rate <= 0:
            return None
        return max(0, self.target - self.archived) / self.rate

    def update(self, fetched: int, inserted: int, archived: int) -> None:
        """Record one chunk; ``archived`` is the channel's new message count."""
        self.fetched += fetched
        self.inserted += inserted
        self.archived = archived
        self.chunks += 1

    def log_chunk(self) -> None:
        pct = min(100, int(self.archived / self.target * 100)) if self.target > 0 else 0
        eta = self.eta_seconds
        logger.info(
            "  [%s] %d/%d messages (%d%%) | %.1f msg/s | %s",
            self.label,
            self.archived,
            self.target,
            pct,
            self.rate,
            f"ETA: ~{_format_duration(eta)}" if eta is not None else "ETA: n/a",
        )

    def log_complete(self, reason: str) -> None:
        logger.info(
            '  Backfill "%s" stopped (%s) | %d new in %d chunks over %s',
            self.label,
            reason,
            self.inserted,
            self.chunks,
            _format_duration(self.elapsed_seconds),
        )
