"""
Shared fixtures: a real SQLite store in a temp dir and an in-memory fake
of the remote client.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from shared.db import Store, init_database
from syncer.message_store import MessageStore
from syncer.remote import (
    PEER_CHANNEL,
    HistoryPage,
    PeerMetadata,
    RemoteMessage,
    RemotePeer,
)

BASE_TS = int(datetime(2024, 6, 1, tzinfo=timezone.utc).timestamp())


def make_message(
    message_id: int,
    text: Optional[str] = None,
    date: Optional[int] = None,
    **fields: Any,
) -> RemoteMessage:
    """A message whose date grows with its id (one minute apart)."""
    return RemoteMessage(
        id=message_id,
        date=BASE_TS + message_id * 60 if date is None else date,
        text=f"message number {message_id}" if text is None else text,
        **fields,
    )


def make_history(count: int, start_id: int = 1) -> List[RemoteMessage]:
    return [make_message(i) for i in range(start_id, start_id + count)]


class FakeRemoteClient:
    """In-memory ``RemoteClient``.

    ``history`` maps channel id to its messages; ``fail_with`` is raised by
    the next history call (then cleared) to simulate a remote failure.
    """

    def __init__(self) -> None:
        self.history: Dict[str, List[RemoteMessage]] = {}
        self.peers: Dict[str, RemotePeer] = {}
        self.metadata: Dict[str, PeerMetadata] = {}
        self.contacts: List[RemotePeer] = []
        self.calls: List[tuple] = []
        self.fail_with: Optional[BaseException] = None
        self.handler: Any = None

    def add_channel(
        self,
        channel_id: str,
        messages: List[RemoteMessage],
        title: str = "Test Channel",
        peer_type: str = PEER_CHANNEL,
    ) -> RemotePeer:
        peer = RemotePeer(id=channel_id, peer_type=peer_type, title=title)
        self.peers[channel_id] = peer
        self.history[channel_id] = sorted(messages, key=lambda m: m.id)
        return peer

    def _raise_pending(self) -> None:
        if self.fail_with is not None:
            exc, self.fail_with = self.fail_with, None
            raise exc

    async def list_dialogs(self) -> List[RemotePeer]:
        self.calls.append(("list_dialogs",))
        return list(self.peers.values())

    async def get_messages_by_channel_id(
        self,
        channel_id: str,
        limit: int,
        min_id: int = 0,
        max_id: int = 0,
        reverse: bool = False,
    ) -> HistoryPage:
        self.calls.append(("get_messages", channel_id, limit, min_id, max_id, reverse))
        self._raise_pending()
        messages = [
            m
            for m in self.history.get(channel_id, [])
            if m.id > min_id and (max_id == 0 or m.id < max_id)
        ]
        if not reverse:
            messages = list(reversed(messages))
        peer = self.peers.get(channel_id)
        return HistoryPage(
            peer_title=peer.title if peer else None,
            peer_type=peer.peer_type if peer else None,
            messages=messages[:limit],
        )

    async def iter_history(
        self,
        channel_id: str,
        limit: int,
        offset_id: int = 0,
        offset_date: Optional[datetime] = None,
    ):
        self.calls.append(("iter_history", channel_id, limit, offset_id))
        self._raise_pending()
        older = [
            m for m in reversed(self.history.get(channel_id, []))
            if offset_id == 0 or m.id < offset_id
        ]
        for message in older[:limit]:
            yield message

    async def get_peer_metadata(
        self, channel_id: str, peer_type: Optional[str] = None
    ) -> PeerMetadata:
        self.calls.append(("get_peer_metadata", channel_id))
        self._raise_pending()
        return self.metadata[channel_id]

    async def list_contacts(self) -> List[RemotePeer]:
        self.calls.append(("list_contacts",))
        return list(self.contacts)

    def subscribe(self, handler: Any) -> Callable[[], None]:
        self.handler = handler

        def unsubscribe() -> None:
            self.handler = None

        return unsubscribe

    def history_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in ("get_messages", "iter_history")]


@pytest.fixture
def fake_client() -> FakeRemoteClient:
    return FakeRemoteClient()


@pytest_asyncio.fixture
async def store(tmp_path):
    store = await Store.open(tmp_path / "messages.db")
    await init_database(store)
    yield store
    await store.close()


@pytest.fixture
def messages(store) -> MessageStore:
    return MessageStore(store)
