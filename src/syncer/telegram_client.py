"""
Telethon implementation of the ``RemoteClient`` contract.

All Telethon objects are decoded here into the records of
:mod:`syncer.remote`.  Peer ids are Telethon "marked" ids
(``utils.get_peer_id``), so users, basic groups and channels never
collide.  ``FloodWaitError`` is translated into :class:`RateLimitedError`.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional

from telethon import events, utils
from telethon.errors import FloodWaitError
from telethon.tl import types
from telethon.tl.functions.channels import GetFullChannelRequest
from telethon.tl.functions.contacts import GetContactsRequest
from telethon.tl.functions.messages import GetFullChatRequest
from telethon.tl.functions.users import GetFullUserRequest

from syncer.readonly_client import ReadOnlyTelegramClient
from syncer.remote import (
    PEER_CHANNEL,
    PEER_CHAT,
    PEER_USER,
    ChannelDiff,
    DeletedMessages,
    HistoryPage,
    IncomingMessage,
    MediaKind,
    MediaSummary,
    PeerMetadata,
    RateLimitedError,
    RemoteMessage,
    RemotePeer,
    UpdateHandler,
)

logger = logging.getLogger("syncer.telegram_client")

DEFAULT_GAP_FETCH_LIMIT = 100


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except FloodWaitError as exc:
        raise RateLimitedError(exc.seconds, str(exc)) from exc


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _display_name(entity: Any) -> Optional[str]:
    if isinstance(entity, types.User):
        name = " ".join(p for p in (entity.first_name, entity.last_name) if p)
        return name or None
    return getattr(entity, "title", None)


def chat_type_of(entity: Any) -> str:
    """``private``, ``group``, ``supergroup``, ``gigagroup`` or ``channel``."""
    if isinstance(entity, types.User):
        return "private"
    if isinstance(entity, (types.Channel, types.ChannelForbidden)):
        if getattr(entity, "gigagroup", False):
            return "gigagroup"
        if getattr(entity, "megagroup", False):
            return "supergroup"
        return "channel"
    return "group"


def peer_type_of(entity: Any) -> str:
    if isinstance(entity, types.User):
        return PEER_USER
    if isinstance(entity, (types.Channel, types.ChannelForbidden)):
        return PEER_CHANNEL
    return PEER_CHAT


def peer_from_entity(entity: Any, is_contact: Optional[bool] = None) -> RemotePeer:
    """Decode a Telethon ``User``/``Chat``/``Channel`` into a :class:`RemotePeer`."""
    is_user = isinstance(entity, types.User)
    if is_contact is None and is_user:
        is_contact = bool(entity.contact)
    return RemotePeer(
        id=str(utils.get_peer_id(entity)),
        peer_type=peer_type_of(entity),
        title=_display_name(entity),
        username=getattr(entity, "username", None),
        chat_type=chat_type_of(entity),
        is_forum=bool(getattr(entity, "forum", False)) if not is_user else None,
        phone=entity.phone if is_user else None,
        is_bot=bool(entity.bot) if is_user else None,
        is_contact=is_contact,
    )


def _file_media(kind: MediaKind, msg: Any) -> MediaSummary:
    file = msg.file
    handle = msg.photo or msg.document
    file_id = (file.id if file is not None else None) or str(handle.id)
    return MediaSummary(
        kind=kind,
        file_id=file_id,
        unique_file_id=str(handle.id),
        file_name=file.name if file is not None else None,
        mime_type=file.mime_type if file is not None else None,
        file_size=file.size if file is not None else None,
        width=file.width if file is not None else None,
        height=file.height if file is not None else None,
        duration=file.duration if file is not None else None,
    )


def media_from_message(msg: Any) -> Optional[MediaSummary]:
    """Decode a message's attachment, or None when it has none."""
    if msg.media is None:
        return None
    if msg.photo:
        return _file_media(MediaKind.PHOTO, msg)
    if msg.document:
        if msg.sticker:
            kind = MediaKind.STICKER
        elif msg.gif:
            kind = MediaKind.ANIMATION
        elif msg.voice:
            kind = MediaKind.VOICE
        elif msg.video or msg.video_note:
            kind = MediaKind.VIDEO
        elif msg.audio:
            kind = MediaKind.AUDIO
        else:
            kind = MediaKind.DOCUMENT
        return _file_media(kind, msg)
    page = msg.web_preview
    if page is not None:
        return MediaSummary(
            kind=MediaKind.WEBPAGE,
            extras={
                "url": page.url,
                "site_name": page.site_name,
                "title": page.title,
                "description": page.description,
            },
        )
    if msg.geo is not None:
        geo = msg.geo
        return MediaSummary(
            kind=MediaKind.LOCATION,
            extras={"latitude": getattr(geo, "lat", None), "longitude": getattr(geo, "long", None)},
        )
    if msg.contact is not None:
        contact = msg.contact
        return MediaSummary(
            kind=MediaKind.CONTACT,
            extras={
                "phone_number": contact.phone_number,
                "first_name": contact.first_name,
                "last_name": contact.last_name,
                "user_id": contact.user_id,
            },
        )
    if msg.poll is not None:
        question = msg.poll.poll.question
        return MediaSummary(
            kind=MediaKind.POLL,
            extras={"question": getattr(question, "text", question)},
        )
    return MediaSummary(kind=MediaKind.OTHER, extras={"class": type(msg.media).__name__})


def _topic_id(msg: Any) -> Optional[int]:
    reply = msg.reply_to
    if reply is None or not getattr(reply, "forum_topic", False):
        return None
    return reply.reply_to_top_id or reply.reply_to_msg_id


def _raw_payload(msg: Any) -> Optional[Dict[str, Any]]:
    try:
        return json.loads(msg.to_json())
    except (TypeError, ValueError):
        logger.debug("Could not serialize message %s", msg.id, exc_info=True)
        return None


def message_from_telethon(msg: Any) -> RemoteMessage:
    """Decode a Telethon message.  ``msg.sender`` should already be resolved."""
    sender = msg.sender
    return RemoteMessage(
        id=msg.id,
        date=int(msg.date.timestamp()) if msg.date else None,
        text=msg.message or "",
        from_id=str(msg.sender_id) if msg.sender_id is not None else None,
        from_username=getattr(sender, "username", None),
        from_display_name=_display_name(sender) if sender is not None else None,
        from_peer_type=peer_type_of(sender) if sender is not None else None,
        from_is_bot=getattr(sender, "bot", None) if isinstance(sender, types.User) else None,
        topic_id=_topic_id(msg),
        media=media_from_message(msg),
        raw=_raw_payload(msg),
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TelethonRemoteClient:
    """``RemoteClient`` over a :class:`ReadOnlyTelegramClient`.

    Args:
        client: Connected, authorized read-only client.
        gap_fetch_limit: Messages fetched when the server reports an
            update gap for a channel.
    """

    def __init__(
        self,
        client: ReadOnlyTelegramClient,
        gap_fetch_limit: int = DEFAULT_GAP_FETCH_LIMIT,
    ) -> None:
        self._client = client
        self._gap_fetch_limit = max(1, gap_fetch_limit)
        self._entities: Dict[str, Any] = {}

    async def _entity(self, channel_id: str) -> Any:
        entity = self._entities.get(channel_id)
        if entity is None:
            with _translate_errors():
                entity = await self._client.get_entity(int(channel_id))
            self._entities[channel_id] = entity
        return entity

    async def list_dialogs(self) -> List[RemotePeer]:
        peers = []
        with _translate_errors():
            async for dialog in self._client.iter_dialogs():
                self._entities[str(dialog.id)] = dialog.entity
                peers.append(peer_from_entity(dialog.entity))
        logger.debug("Listed %d dialogs", len(peers))
        return peers

    async def get_messages_by_channel_id(
        self,
        channel_id: str,
        limit: int,
        min_id: int = 0,
        max_id: int = 0,
        reverse: bool = False,
    ) -> HistoryPage:
        entity = await self._entity(channel_id)
        with _translate_errors():
            messages = await self._client.get_messages(
                entity, limit=limit, min_id=min_id, max_id=max_id, reverse=reverse
            )
        peer = peer_from_entity(entity)
        return HistoryPage(
            peer_title=peer.title,
            peer_type=peer.peer_type,
            messages=[message_from_telethon(m) for m in messages],
        )

    async def iter_history(
        self,
        channel_id: str,
        limit: int,
        offset_id: int = 0,
        offset_date: Optional[datetime] = None,
    ) -> AsyncIterator[RemoteMessage]:
        entity = await self._entity(channel_id)
        with _translate_errors():
            async for msg in self._client.iter_messages(
                entity, limit=limit, offset_id=offset_id, offset_date=offset_date
            ):
                yield message_from_telethon(msg)

    async def get_peer_metadata(
        self, channel_id: str, peer_type: Optional[str] = None
    ) -> PeerMetadata:
        entity = await self._entity(channel_id)
        with _translate_errors():
            if isinstance(entity, types.Channel):
                full = await self._client.invoke(GetFullChannelRequest(entity))
                about = full.full_chat.about
            elif isinstance(entity, types.Chat):
                full = await self._client.invoke(GetFullChatRequest(entity.id))
                about = full.full_chat.about
            elif isinstance(entity, types.User):
                full = await self._client.invoke(GetFullUserRequest(entity))
                about = full.full_user.about
            else:
                about = None
        peer = peer_from_entity(entity)
        return PeerMetadata(
            peer_title=peer.title,
            username=peer.username,
            peer_type=peer.peer_type,
            chat_type=peer.chat_type,
            is_forum=peer.is_forum,
            about=about,
        )

    async def list_contacts(self) -> List[RemotePeer]:
        with _translate_errors():
            result = await self._client.invoke(GetContactsRequest(hash=0))
        return [peer_from_entity(user, is_contact=True) for user in getattr(result, "users", [])]

    # ------------------------------------------------------------------
    # Live updates
    # ------------------------------------------------------------------

    def subscribe(self, handler: UpdateHandler) -> Callable[[], None]:
        """Register Telethon event handlers that forward to ``handler``."""

        async def _incoming(event: Any) -> IncomingMessage:
            chat = await event.get_chat()
            await event.message.get_sender()
            return IncomingMessage(peer_from_entity(chat), message_from_telethon(event.message))

        async def on_new(event: Any) -> None:
            try:
                update = await _incoming(event)
            except Exception:
                logger.exception("Failed to decode new message event")
                return
            await handler.on_new_message(update)

        async def on_edit(event: Any) -> None:
            try:
                update = await _incoming(event)
            except Exception:
                logger.exception("Failed to decode edit event")
                return
            await handler.on_edit_message(update)

        async def on_delete(event: Any) -> None:
            channel_id = str(event.chat_id) if event.chat_id is not None else None
            await handler.on_delete_messages(
                DeletedMessages(message_ids=list(event.deleted_ids), channel_id=channel_id)
            )

        async def on_too_long(update: Any) -> None:
            channel_id = str(utils.get_peer_id(types.PeerChannel(update.channel_id)))
            try:
                entity = await self._entity(channel_id)
                with _translate_errors():
                    messages = await self._client.get_messages(
                        entity, limit=self._gap_fetch_limit
                    )
            except Exception:
                logger.exception("Failed to fetch update-gap diff for %s", channel_id)
                return
            await handler.on_channel_too_long(
                ChannelDiff(
                    channel=peer_from_entity(entity),
                    messages=[message_from_telethon(m) for m in messages],
                )
            )

        registrations = [
            (on_new, events.NewMessage()),
            (on_edit, events.MessageEdited()),
            (on_delete, events.MessageDeleted()),
            (on_too_long, events.Raw(types.UpdateChannelTooLong)),
        ]
        for callback, event in registrations:
            self._client.add_event_handler(callback, event)

        def unsubscribe() -> None:
            for callback, event in registrations:
                self._client.remove_event_handler(callback, event)

        return unsubscribe
