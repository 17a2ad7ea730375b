"""
Cooperative cancellation for the sync loops.

A ``CancellationToken`` is handed to every long-running operation (queue
drain, catch-up, backfill).  The operation checks ``cancelled`` at each
suspend point and uses :meth:`CancellationToken.sleep` for its delays so a
stop request interrupts a wait instead of outliving it.
"""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger("shared.cancellation")


class CancellationToken:
    """One-shot stop flag that can be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.debug("Cancellation requested")
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for up to ``seconds`` while remaining responsive to cancel.

        Returns:
            True if the token was cancelled before or during the sleep.
        """
        if self._event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True
