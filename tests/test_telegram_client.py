"""
Tests for the Telethon adapter: entity/message decoding, error translation
and event registration.  The Telethon client itself is mocked.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from telethon.errors import FloodWaitError
from telethon.tl import types

from syncer.remote import DeletedMessages, MediaKind, RateLimitedError
from syncer.telegram_client import (
    TelethonRemoteClient,
    chat_type_of,
    media_from_message,
    message_from_telethon,
    peer_from_entity,
)


def _user(**fields):
    defaults = {"id": 42, "first_name": "Ann", "last_name": "Lee", "username": "ann"}
    defaults.update(fields)
    return types.User(**defaults)


def _channel(**fields):
    defaults = {"id": 123, "title": "News", "photo": types.ChatPhotoEmpty(), "date": None}
    defaults.update(fields)
    return types.Channel(**defaults)


def _chat():
    return types.Chat(
        id=7,
        title="Family",
        photo=types.ChatPhotoEmpty(),
        participants_count=3,
        date=None,
        version=1,
    )


def _message(**fields):
    msg = MagicMock()
    msg.id = 10
    msg.date = datetime(2024, 6, 1, tzinfo=timezone.utc)
    msg.message = "hello"
    msg.sender_id = 42
    msg.sender = _user()
    msg.reply_to = None
    msg.media = None
    msg.to_json.return_value = '{"_": "Message", "id": 10}'
    for name, value in fields.items():
        setattr(msg, name, value)
    return msg


async def _aiter(items):
    for item in items:
        yield item


class TestPeerDecoding:
    def test_user(self):
        """A user entity should carry phone, contact and bot flags."""
        peer = peer_from_entity(_user(phone="15550001", contact=True, bot=False))
        assert peer.id == "42"
        assert peer.peer_type == "user"
        assert peer.title == "Ann Lee"
        assert peer.chat_type == "private"
        assert peer.phone == "15550001"
        assert peer.is_contact is True
        assert peer.is_bot is False
        assert peer.is_forum is None

    def test_channel_uses_marked_id(self):
        """Channels are keyed by their -100 marked id."""
        peer = peer_from_entity(_channel(megagroup=True, forum=True, username="news"))
        assert peer.id == "-1000000000123"
        assert peer.peer_type == "channel"
        assert peer.chat_type == "supergroup"
        assert peer.is_forum is True
        assert peer.username == "news"

    def test_basic_group(self):
        peer = peer_from_entity(_chat())
        assert peer.id == "-7"
        assert peer.peer_type == "chat"
        assert peer.chat_type == "group"

    def test_broadcast_and_gigagroup(self):
        """Should tell broadcast channels from gigagroups."""
        assert chat_type_of(_channel()) == "channel"
        assert chat_type_of(_channel(gigagroup=True, megagroup=True)) == "gigagroup"


class TestMessageDecoding:
    def test_plain_message(self):
        record = message_from_telethon(_message())
        assert record.id == 10
        assert record.date == int(datetime(2024, 6, 1, tzinfo=timezone.utc).timestamp())
        assert record.text == "hello"
        assert record.from_id == "42"
        assert record.from_username == "ann"
        assert record.from_display_name == "Ann Lee"
        assert record.from_peer_type == "user"
        assert record.media is None
        assert record.raw == {"_": "Message", "id": 10}

    def test_forum_topic(self):
        """A forum reply should take its topic from the thread root."""
        reply = MagicMock(forum_topic=True, reply_to_top_id=None, reply_to_msg_id=5)
        assert message_from_telethon(_message(reply_to=reply)).topic_id == 5

    def test_plain_reply_is_not_a_topic(self):
        """An ordinary reply has no topic."""
        reply = MagicMock(forum_topic=False, reply_to_top_id=None, reply_to_msg_id=5)
        assert message_from_telethon(_message(reply_to=reply)).topic_id is None

    def test_unserialisable_raw_is_dropped(self):
        """A payload that cannot be serialised is stored as None."""
        msg = _message()
        msg.to_json.side_effect = TypeError("not serialisable")
        assert message_from_telethon(msg).raw is None


class TestMediaDecoding:
    def test_document(self):
        """Document media should keep file id, name and size."""
        file = MagicMock(id="fid", mime_type="application/pdf", size=2048,
                         width=None, height=None, duration=None)
        file.name = "report.pdf"
        msg = _message(
            media=object(), photo=None, document=MagicMock(id=99), file=file,
            sticker=None, gif=None, voice=None, video=None, video_note=None, audio=None,
        )
        media = media_from_message(msg)
        assert media.kind == MediaKind.DOCUMENT
        assert media.file_id == "fid"
        assert media.unique_file_id == "99"
        assert media.file_name == "report.pdf"
        assert media.file_size == 2048

    def test_webpage(self):
        page = MagicMock(url="https://example.com", site_name="Example",
                         title="Example page", description="desc")
        msg = _message(media=object(), photo=None, document=None, web_preview=page)
        media = media_from_message(msg)
        assert media.kind == MediaKind.WEBPAGE
        assert media.extras["url"] == "https://example.com"

    def test_no_media(self):
        assert media_from_message(_message()) is None


class TestRemoteClient:
    @pytest.mark.asyncio
    async def test_flood_wait_becomes_rate_limited(self):
        """FloodWaitError should surface as RateLimitedError with the wait."""
        raw = MagicMock()
        raw.get_entity = AsyncMock(side_effect=FloodWaitError(request=None, capture=30))
        client = TelethonRemoteClient(raw)
        with pytest.raises(RateLimitedError) as exc_info:
            await client.get_messages_by_channel_id("-100123", limit=10)
        assert exc_info.value.wait_seconds == 30

    @pytest.mark.asyncio
    async def test_history_page(self):
        """Should pass paging arguments through and cache the entity."""
        raw = MagicMock()
        raw.get_entity = AsyncMock(return_value=_channel())
        raw.get_messages = AsyncMock(return_value=[_message()])
        client = TelethonRemoteClient(raw)

        page = await client.get_messages_by_channel_id("-1000000000123", 10, min_id=5, reverse=True)

        assert page.peer_title == "News"
        assert page.peer_type == "channel"
        assert [m.id for m in page.messages] == [10]
        raw.get_messages.assert_awaited_once_with(
            raw.get_entity.return_value, limit=10, min_id=5, max_id=0, reverse=True
        )
        # The entity is cached after the first lookup.
        await client.get_messages_by_channel_id("-1000000000123", 10)
        raw.get_entity.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_list_dialogs_caches_entities(self):
        """Dialog entities are reused instead of looked up again."""
        raw = MagicMock()
        channel = _channel()
        raw.iter_dialogs = MagicMock(
            return_value=_aiter([MagicMock(id=-1000000000123, entity=channel)])
        )
        raw.get_entity = AsyncMock()
        raw.get_messages = AsyncMock(return_value=[])
        client = TelethonRemoteClient(raw)

        peers = await client.list_dialogs()
        assert [p.title for p in peers] == ["News"]
        await client.get_messages_by_channel_id("-1000000000123", 10)
        raw.get_entity.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_iter_history(self):
        raw = MagicMock()
        raw.get_entity = AsyncMock(return_value=_channel())
        raw.iter_messages = MagicMock(return_value=_aiter([_message(id=9), _message(id=8)]))
        client = TelethonRemoteClient(raw)

        ids = [m.id async for m in client.iter_history("-1000000000123", 2, offset_id=10)]
        assert ids == [9, 8]

    @pytest.mark.asyncio
    async def test_channel_metadata(self):
        """About text comes from the full-channel request."""
        raw = MagicMock()
        raw.get_entity = AsyncMock(return_value=_channel(username="news"))
        raw.invoke = AsyncMock(return_value=MagicMock(full_chat=MagicMock(about="Daily news")))
        client = TelethonRemoteClient(raw)

        meta = await client.get_peer_metadata("-1000000000123")
        assert meta.about == "Daily news"
        assert meta.username == "news"
        assert meta.peer_type == "channel"

    @pytest.mark.asyncio
    async def test_list_contacts(self):
        raw = MagicMock()
        raw.invoke = AsyncMock(return_value=MagicMock(users=[_user()]))
        peers = await TelethonRemoteClient(raw).list_contacts()
        assert [(p.id, p.is_contact) for p in peers] == [("42", True)]


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_registers_and_forwards_deletes(self):
        """Should register every handler and forward deletes as DeletedMessages."""
        raw = MagicMock()
        handler = MagicMock()
        handler.on_delete_messages = AsyncMock()
        client = TelethonRemoteClient(raw)

        unsubscribe = client.subscribe(handler)
        assert raw.add_event_handler.call_count == 4

        on_delete = raw.add_event_handler.call_args_list[2].args[0]
        await on_delete(MagicMock(chat_id=None, deleted_ids=[3, 4]))
        handler.on_delete_messages.assert_awaited_once_with(
            DeletedMessages(message_ids=[3, 4], channel_id=None)
        )

        unsubscribe()
        assert raw.remove_event_handler.call_count == 4

    @pytest.mark.asyncio
    async def test_new_message_event(self):
        """A new-message event should reach the handler with the decoded chat."""
        raw = MagicMock()
        handler = MagicMock()
        handler.on_new_message = AsyncMock()
        TelethonRemoteClient(raw).subscribe(handler)

        event = MagicMock()
        event.get_chat = AsyncMock(return_value=_channel())
        event.message = _message()
        event.message.get_sender = AsyncMock()
        on_new = raw.add_event_handler.call_args_list[0].args[0]
        await on_new(event)

        update = handler.on_new_message.await_args.args[0]
        assert update.chat.id == "-1000000000123"
        assert update.message.text == "hello"
