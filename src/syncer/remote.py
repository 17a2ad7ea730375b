"""
Boundary between the sync engine and the Telegram client.

The engine never touches Telethon objects.  Whatever implements
``RemoteClient`` decodes protocol objects into the plain records defined
here exactly once, at the edge; everything downstream works with these
types and with the dicts they serialize to.

Rate limiting is signalled with a structured :class:`RateLimitedError`
carrying the server-mandated wait.  ``parse_wait_seconds`` remains as a
fallback for client errors that only expose a human-readable message.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
)

_WAIT_PATTERN = re.compile(r"wait of (\d+) seconds is required", re.IGNORECASE)

PEER_USER = "user"
PEER_CHAT = "chat"
PEER_CHANNEL = "channel"


class RateLimitedError(Exception):
    """The remote network asked us to wait before the next request.

    Args:
        wait_seconds: Server-specified wait before retrying.
    """

    def __init__(self, wait_seconds: int, message: Optional[str] = None) -> None:
        self.wait_seconds = max(0, int(wait_seconds))
        super().__init__(message or f"A wait of {self.wait_seconds} seconds is required")


def parse_wait_seconds(text: Any) -> Optional[int]:
    """Extract the wait from a ``"A wait of N seconds is required"`` message."""
    match = _WAIT_PATTERN.search(str(text or ""))
    return int(match.group(1)) if match else None


def as_rate_limited(exc: BaseException) -> Optional[RateLimitedError]:
    """Return ``exc`` as a :class:`RateLimitedError` if it signals a flood wait."""
    if isinstance(exc, RateLimitedError):
        return exc
    seconds = parse_wait_seconds(exc)
    if seconds is None:
        return None
    return RateLimitedError(seconds, str(exc))


def normalize_peer_type(kind: Optional[str], chat_type: Optional[str] = None) -> str:
    """Collapse a client-specific peer kind into ``user``/``chat``/``channel``.

    Basic groups are ``chat``; supergroups, gigagroups and broadcasts all
    live in channel id space and are ``channel``.
    """
    value = (kind or "").lower()
    if value in ("user", "bot"):
        return PEER_USER
    if value == PEER_CHANNEL:
        return PEER_CHANNEL
    if value == PEER_CHAT and chat_type and chat_type != "group":
        return PEER_CHANNEL
    return PEER_CHAT


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------


class MediaKind(str, enum.Enum):
    PHOTO = "photo"
    VIDEO = "video"
    AUDIO = "audio"
    VOICE = "voice"
    DOCUMENT = "document"
    STICKER = "sticker"
    ANIMATION = "animation"
    WEBPAGE = "webpage"
    LOCATION = "location"
    CONTACT = "contact"
    POLL = "poll"
    OTHER = "other"


# Kinds that always refer to a downloadable file.
_FILE_KINDS = frozenset(
    {
        MediaKind.PHOTO,
        MediaKind.VIDEO,
        MediaKind.AUDIO,
        MediaKind.VOICE,
        MediaKind.DOCUMENT,
        MediaKind.STICKER,
        MediaKind.ANIMATION,
    }
)


@dataclass(frozen=True)
class MediaSummary:
    """Normalized media attachment.

    File kinds carry ``file_id``; webpage previews carry their URL and
    title in ``extras``.  Photos default ``mime_type`` to ``image/jpeg``.
    """

    kind: MediaKind
    file_id: Optional[str] = None
    unique_file_id: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind in _FILE_KINDS and not self.file_id:
            raise ValueError(f"{self.kind.value} media requires a file_id")
        if self.kind is MediaKind.PHOTO and self.mime_type is None:
            object.__setattr__(self, "mime_type", "image/jpeg")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind.value,
            "file_id": self.file_id,
            "unique_file_id": self.unique_file_id,
            "file_name": self.file_name,
            "mime_type": self.mime_type,
            "file_size": self.file_size,
            "width": self.width,
            "height": self.height,
            "duration": self.duration,
            "extras": dict(self.extras),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["MediaSummary"]:
        if not data:
            return None
        try:
            kind = MediaKind(str(data.get("type") or "other"))
        except ValueError:
            kind = MediaKind.OTHER
        if kind in _FILE_KINDS and not data.get("file_id"):
            kind = MediaKind.OTHER
        return cls(
            kind=kind,
            file_id=data.get("file_id"),
            unique_file_id=data.get("unique_file_id"),
            file_name=data.get("file_name"),
            mime_type=data.get("mime_type"),
            file_size=data.get("file_size"),
            width=data.get("width"),
            height=data.get("height"),
            duration=data.get("duration"),
            extras=dict(data.get("extras") or {}),
        )


# ---------------------------------------------------------------------------
# Peers and messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RemotePeer:
    """A user, group or channel as seen in dialogs, events and contacts."""

    id: str
    peer_type: str
    title: Optional[str] = None
    username: Optional[str] = None
    chat_type: Optional[str] = None
    is_forum: Optional[bool] = None
    phone: Optional[str] = None
    is_bot: Optional[bool] = None
    is_contact: Optional[bool] = None


@dataclass(frozen=True)
class RemoteMessage:
    """A single message decoded from the remote client.

    ``date`` is Unix seconds.  ``raw`` is the client's own JSON-safe dump of
    the original object, kept for lossless replay.
    """

    id: int
    date: Optional[int]
    text: str = ""
    from_id: Optional[str] = None
    from_username: Optional[str] = None
    from_display_name: Optional[str] = None
    from_peer_type: Optional[str] = None
    from_is_bot: Optional[bool] = None
    topic_id: Optional[int] = None
    topic_title: Optional[str] = None
    media: Optional[MediaSummary] = None
    raw: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date,
            "text": self.text,
            "from_id": self.from_id,
            "from_username": self.from_username,
            "from_display_name": self.from_display_name,
            "from_peer_type": self.from_peer_type,
            "from_is_bot": self.from_is_bot,
            "topic_id": self.topic_id,
            "topic_title": self.topic_title,
            "media": self.media.to_dict() if self.media else None,
            "raw": self.raw,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemoteMessage":
        return cls(
            id=int(data["id"]),
            date=int(data["date"]) if data.get("date") is not None else None,
            text=data.get("text") or "",
            from_id=data.get("from_id"),
            from_username=data.get("from_username"),
            from_display_name=data.get("from_display_name"),
            from_peer_type=data.get("from_peer_type"),
            from_is_bot=data.get("from_is_bot"),
            topic_id=data.get("topic_id"),
            topic_title=data.get("topic_title"),
            media=MediaSummary.from_dict(data.get("media")),
            raw=data.get("raw"),
        )


@dataclass(frozen=True)
class HistoryPage:
    peer_title: Optional[str]
    peer_type: Optional[str]
    messages: List[RemoteMessage]


@dataclass(frozen=True)
class PeerMetadata:
    peer_title: Optional[str] = None
    username: Optional[str] = None
    peer_type: Optional[str] = None
    chat_type: Optional[str] = None
    is_forum: Optional[bool] = None
    about: Optional[str] = None


# ---------------------------------------------------------------------------
# Live updates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IncomingMessage:
    """A new or edited message together with the chat it arrived in."""

    chat: RemotePeer
    message: RemoteMessage


@dataclass(frozen=True)
class DeletedMessages:
    """Deleted message ids; ``channel_id`` is None when the event is unscoped."""

    message_ids: List[int]
    channel_id: Optional[str] = None


@dataclass(frozen=True)
class ChannelDiff:
    """Messages delivered in bulk after the client fell too far behind."""

    channel: RemotePeer
    messages: List[RemoteMessage]


class UpdateHandler(Protocol):
    async def on_new_message(self, update: IncomingMessage) -> None: ...

    async def on_edit_message(self, update: IncomingMessage) -> None: ...

    async def on_delete_messages(self, update: DeletedMessages) -> None: ...

    async def on_channel_too_long(self, update: ChannelDiff) -> None: ...


class RemoteClient(Protocol):
    """What the engine needs from a Telegram client."""

    async def list_dialogs(self) -> List[RemotePeer]: ...

    async def get_messages_by_channel_id(
        self,
        channel_id: str,
        limit: int,
        min_id: int = 0,
        max_id: int = 0,
        reverse: bool = False,
    ) -> HistoryPage: ...

    def iter_history(
        self,
        channel_id: str,
        limit: int,
        offset_id: int = 0,
        offset_date: Optional[datetime] = None,
    ) -> AsyncIterator[RemoteMessage]: ...

    async def get_peer_metadata(
        self, channel_id: str, peer_type: Optional[str] = None
    ) -> PeerMetadata: ...

    async def list_contacts(self) -> List[RemotePeer]: ...

    def subscribe(self, handler: UpdateHandler) -> Callable[[], None]: ...
