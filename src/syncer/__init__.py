"""
Syncer package: pulls history and live updates from Telegram (Telethon)
into the local SQLite archive.

All Telegram API access goes through ReadOnlyTelegramClient to enforce a
strict read-only allowlist.  The host process (``syncer.main``) holds the
exclusive store lock, so it is the only writer of the archive.
"""
