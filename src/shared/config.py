"""
Settings loading for tg-archive.

Configuration lives in a TOML file.  Its location is resolved from
``TG_ARCHIVE_CONFIG`` or, failing that, ``settings.toml`` inside the store
directory (``TG_ARCHIVE_STORE``, default ``~/.tg-archive``).  A missing
file means "all defaults"; Telegram credentials may come from the
environment instead.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import toml

logger = logging.getLogger("shared.config")

STORE_DIR_ENV = "TG_ARCHIVE_STORE"
CONFIG_PATH_ENV = "TG_ARCHIVE_CONFIG"
_DEFAULT_STORE_DIR = Path("~/.tg-archive")

DB_FILE_NAME = "messages.db"
SESSION_NAME = "session"
AUDIT_FILE_NAME = "audit.log"


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def resolve_store_dir(value: Optional[str] = None) -> Path:
    """Return the store directory (not created)."""
    raw = value or os.environ.get(STORE_DIR_ENV) or str(_DEFAULT_STORE_DIR)
    return Path(raw).expanduser()


def resolve_config_path(store_dir: Path) -> Path:
    raw = os.environ.get(CONFIG_PATH_ENV)
    if raw:
        return Path(raw).expanduser()
    return store_dir / "settings.toml"


@dataclass(frozen=True)
class StorePaths:
    root: Path
    db_path: Path
    session_path: Path
    audit_path: Path

    @classmethod
    def for_dir(cls, root: Path, session_name: str = SESSION_NAME) -> "StorePaths":
        return cls(
            root=root,
            db_path=root / DB_FILE_NAME,
            session_path=root / session_name,
            audit_path=root / AUDIT_FILE_NAME,
        )


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncSettings:
    """Tunables for the job scheduler and backfill engine."""

    batch_size: int = 100
    inter_job_delay_seconds: float = 3.0
    inter_batch_delay_seconds: float = 1.2
    default_target_messages: int = 1000
    metadata_ttl_days: float = 7.0
    gap_fetch_limit: int = 100
    queue_poll_seconds: float = 60.0
    realtime: bool = True

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SyncSettings":
        """Build settings from the ``[sync]`` table, validating values.

        Raises:
            ValueError: If a size is not positive or a delay is negative.
        """
        section = config.get("sync", {}) or {}
        defaults = cls()
        settings = cls(
            batch_size=int(section.get("batch_size", defaults.batch_size)),
            inter_job_delay_seconds=float(
                section.get("inter_job_delay_seconds", defaults.inter_job_delay_seconds)
            ),
            inter_batch_delay_seconds=float(
                section.get("inter_batch_delay_seconds", defaults.inter_batch_delay_seconds)
            ),
            default_target_messages=int(
                section.get("default_target_messages", defaults.default_target_messages)
            ),
            metadata_ttl_days=float(
                section.get("metadata_ttl_days", defaults.metadata_ttl_days)
            ),
            gap_fetch_limit=int(section.get("gap_fetch_limit", defaults.gap_fetch_limit)),
            queue_poll_seconds=float(
                section.get("queue_poll_seconds", defaults.queue_poll_seconds)
            ),
            realtime=bool(section.get("realtime", defaults.realtime)),
        )
        for name in ("batch_size", "default_target_messages", "gap_fetch_limit"):
            if getattr(settings, name) <= 0:
                raise ValueError(f"sync.{name} must be positive")
        for name in (
            "inter_job_delay_seconds",
            "inter_batch_delay_seconds",
            "metadata_ttl_days",
            "queue_poll_seconds",
        ):
            if getattr(settings, name) < 0:
                raise ValueError(f"sync.{name} must not be negative")
        return settings


def load_config(path: Path) -> Dict[str, Any]:
    """Load settings from a TOML file.

    A missing file yields an empty configuration (all defaults).

    Raises:
        toml.TomlDecodeError: If the file exists but is not valid TOML.
    """
    if not path.exists():
        logger.info("No config file at %s; using defaults", path)
        return {}
    config = toml.load(path)
    logger.debug("Loaded config from %s", path)
    return config


def resolve_credentials(config: Dict[str, Any]) -> tuple[int, str]:
    """Return ``(api_id, api_hash)`` from config or the environment.

    Raises:
        KeyError: If either credential is missing.
        ValueError: If ``api_id`` is not an integer.
    """
    telegram = config.get("telegram", {}) or {}
    api_id = telegram.get("api_id") or os.environ.get("TG_ARCHIVE_API_ID")
    api_hash = telegram.get("api_hash") or os.environ.get("TG_ARCHIVE_API_HASH")
    if not api_id:
        raise KeyError("Missing required config key: telegram.api_id")
    if not api_hash:
        raise KeyError("Missing required config key: telegram.api_hash")
    try:
        return int(api_id), str(api_hash)
    except (TypeError, ValueError):
        raise ValueError("telegram.api_id must be an integer") from None


def log_level(config: Dict[str, Any]) -> int:
    name = str((config.get("logging", {}) or {}).get("level", "INFO")).upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO
