"""
Syncer entry point: keeps the local archive in step with a Telegram account.

Runs as a long-lived process (``tg-archive-sync``).

Key behaviours:
    - Loads configuration from ``settings.toml`` in the store directory
      (or ``TG_ARCHIVE_CONFIG``).
    - Holds the exclusive store lock for its whole lifetime, so only one
      writer process ever opens the archive.
    - All Telegram access goes through ``ReadOnlyTelegramClient``.
    - Subscribes to live updates and drains the job queue every
      ``sync.queue_poll_seconds``.
    - Handles SIGTERM / SIGINT for graceful shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import threading
from typing import Any

from telethon import TelegramClient as TelethonClient

from shared.config import (
    SESSION_NAME,
    StorePaths,
    SyncSettings,
    load_config,
    log_level,
    resolve_config_path,
    resolve_credentials,
    resolve_store_dir,
)
from shared.store_lock import acquire_store_lock
from syncer.readonly_client import ReadOnlyTelegramClient
from syncer.service import MessageSyncService
from syncer.telegram_client import TelethonRemoteClient

logger = logging.getLogger("syncer.main")

_SHUTDOWN_POLL_SECONDS = 0.5

# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


def _handle_signal(sig: int, frame: Any) -> None:
    """Signal handler: sets the shutdown event so the main loop exits cleanly."""
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    _shutdown_event.set()


async def _forward_shutdown(service: MessageSyncService) -> None:
    """Cancel the service token once a shutdown signal arrives."""
    while not _shutdown_event.is_set():
        await asyncio.sleep(_SHUTDOWN_POLL_SECONDS)
    service.token.cancel()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main() -> None:
    """Top-level async entry point for the syncer process."""
    store_dir = resolve_store_dir()
    config = load_config(resolve_config_path(store_dir))
    api_id, api_hash = resolve_credentials(config)
    settings = SyncSettings.from_config(config)
    session_name = (config.get("telegram", {}) or {}).get("session_name", SESSION_NAME)
    paths = StorePaths.for_dir(store_dir, session_name)

    with acquire_store_lock(store_dir, exclusive=True):
        raw_client = TelethonClient(str(paths.session_path), api_id, api_hash)
        async with ReadOnlyTelegramClient(raw_client) as client:
            if not await client.is_user_authorized():
                raise RuntimeError(
                    f"Telegram session {paths.session_path} is not authorized; "
                    "log in once with Telethon to create it"
                )
            me = await client.get_me()
            logger.info("Logged in as %s (id=%s)", me.username, me.id)

            remote = TelethonRemoteClient(client, gap_fetch_limit=settings.gap_fetch_limit)
            service = await MessageSyncService.open(
                remote, paths.db_path, settings, audit_path=paths.audit_path
            )
            watcher = asyncio.create_task(_forward_shutdown(service))
            try:
                await service.refresh_channels_from_dialogs()
                if settings.realtime:
                    service.start_realtime_sync()
                await service.resume_pending_jobs()

                while not service.token.cancelled:
                    if await service.token.sleep(settings.queue_poll_seconds):
                        break
                    try:
                        processed = await service.process_queue()
                        if processed:
                            logger.info("Drained %d job(s)", processed)
                    except Exception:
                        logger.exception("Error while draining the job queue")
            finally:
                watcher.cancel()
                await service.shutdown()
                logger.info("Syncer shut down cleanly.")


def run() -> None:
    """Synchronous entry point (the ``tg-archive-sync`` console script)."""
    store_dir = resolve_store_dir()
    config = load_config(resolve_config_path(store_dir))
    logging.basicConfig(
        level=log_level(config),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    asyncio.run(main())


if __name__ == "__main__":
    run()
