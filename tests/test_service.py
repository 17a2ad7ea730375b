"""
End-to-end tests for the MessageSyncService facade over a fake remote.
"""

import asyncio
import json

import pytest
import pytest_asyncio

from conftest import make_history, make_message
from shared.audit import JOB_FAILED, JOB_FINISHED, JOB_STARTED, AuditLogger, JobEvent
from shared.config import SyncSettings
from shared.db import Store
from syncer.remote import RemotePeer
from syncer.service import MessageSyncService, normalize_channel_id

FAST = SyncSettings(inter_job_delay_seconds=0, inter_batch_delay_seconds=0)


@pytest_asyncio.fixture
async def service(tmp_path, fake_client):
    service = await MessageSyncService.open(
        fake_client, tmp_path / "messages.db", FAST, audit_path=tmp_path / "audit.log"
    )
    yield service
    await service.shutdown()


@pytest_asyncio.fixture
async def archived(service, fake_client):
    """Two synced channels whose titles classify as crypto and travel."""
    fake_client.add_channel("100", make_history(3), title="Crypto Daily")
    fake_client.add_channel("200", make_history(2), title="Travel Notes")
    await service.add_job(100)
    await service.add_job(200)
    await service.process_queue()
    return service


@pytest_asyncio.fixture
async def topic_messages(service):
    await service.messages.insert_messages(
        "100",
        [
            make_message(1, text="number one"),
            make_message(2, text="number two", topic_id=4),
            make_message(3, text="number three"),
        ],
    )
    return service


# ---------------------------------------------------------------------------
# Channel id normalisation
# ---------------------------------------------------------------------------


class TestNormalizeChannelId:
    def test_int_and_string(self):
        """Should accept ints and padded digit strings."""
        assert normalize_channel_id(-1001234) == "-1001234"
        assert normalize_channel_id(" 42 ") == "42"

    @pytest.mark.parametrize("value", [None, "", "   ", "abc", "1.5"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            normalize_channel_id(value)


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class TestFacade:
    @pytest.mark.asyncio
    async def test_job_to_archive_round_trip(self, service, fake_client):
        """A queued job should end up as searchable archived messages."""
        fake_client.add_channel("100", make_history(120), title="Archive Me")
        job = await service.add_job(100, depth=500)
        assert job["channel_id"] == "100"

        assert await service.process_queue() == 1
        assert (await service.get_job(channel_id=100))["status"] == "idle"

        latest = await service.list_archived_messages("100", limit=1)
        assert latest[0]["message_id"] == 120
        assert latest[0]["peer_title"] == "Archive Me"
        hits = await service.search_archive_messages(query='"number 7"')
        assert [h["message_id"] for h in hits] == [7]
        assert (await service.get_sync_stats())["total_messages"] == 120

    @pytest.mark.asyncio
    async def test_concurrent_drains_share_one_run(self, service, fake_client):
        """Two concurrent drain calls should fetch history only once."""
        fake_client.add_channel("100", make_history(10))
        await service.add_job("100")
        results = await asyncio.gather(service.process_queue(), service.process_queue())
        assert results == [1, 1]
        assert len(fake_client.history_calls()) == 1

    @pytest.mark.asyncio
    async def test_resume_requeues_errored_jobs(self, service, fake_client):
        """Should put errored jobs back in the queue and finish them."""
        fake_client.add_channel("100", make_history(10))
        await service.add_job("100")
        fake_client.fail_with = RuntimeError("temporary outage")
        await service.process_queue()
        assert (await service.get_job(channel_id="100"))["status"] == "error"

        assert await service.resume_pending_jobs() == 1
        assert (await service.get_job(channel_id="100"))["status"] == "idle"

    @pytest.mark.asyncio
    async def test_refresh_channels_from_dialogs(self, service, fake_client):
        """Dialogs become channels, and opting one out hides it from the active list."""
        fake_client.add_channel("1", [], title="One")
        fake_client.add_channel("2", [], title="Two")
        assert await service.refresh_channels_from_dialogs() == {"count": 2}
        assert {c["peer_title"] for c in await service.list_active_channels()} == {"One", "Two"}

        assert await service.set_channel_sync(2, False) == {
            "channel_id": "2",
            "sync_enabled": False,
        }
        assert [c["channel_id"] for c in await service.list_active_channels()] == ["1"]

    @pytest.mark.asyncio
    async def test_tags_and_contacts_pass_through(self, service, fake_client):
        await service.upsert_channels([RemotePeer(id="5", peer_type="channel", title="Five")])
        assert await service.set_channel_tags(5, ["Music"]) == ["music"]
        assert [r["channel_id"] for r in await service.list_tagged_channels("music")] == ["5"]

        await service.set_contact_alias("9", "Nine")
        assert (await service.get_contact(9))["alias"] == "Nine"

    @pytest.mark.asyncio
    async def test_invalid_channel_id(self, service):
        """Should reject a channel id that is not an integer."""
        with pytest.raises(ValueError):
            await service.add_job("not-a-number")

    @pytest.mark.asyncio
    async def test_search_status(self, service):
        assert (await service.get_search_status())["ready"] is True

    @pytest.mark.asyncio
    async def test_missing_message_is_none(self, service):
        assert await service.get_archived_message("100", 1) is None


# ---------------------------------------------------------------------------
# Listing and tagged scans
# ---------------------------------------------------------------------------


class TestArchiveReads:
    @pytest.mark.asyncio
    async def test_list_across_channels(self, archived):
        """Should merge several channels newest first, accepting int ids."""
        result = await archived.list_archived_messages([100, 200], limit=10)
        assert len(result) == 5
        assert {m["channel_id"] for m in result} == {"100", "200"}
        assert result[0]["message_id"] == 3

        only_200 = await archived.list_archived_messages(200)
        assert [(m["channel_id"], m["message_id"]) for m in only_200] == [("200", 2), ("200", 1)]

    @pytest.mark.asyncio
    async def test_search_messages_by_topic(self, topic_messages):
        """Should restrict the regex search to one forum topic."""
        result = await topic_messages.search_messages(100, r"number", topic_id=4)
        assert [m["message_id"] for m in result] == [2]

    @pytest.mark.asyncio
    async def test_scan_tagged_messages(self, archived, fake_client):
        """Should auto-tag first, then return the tagged channels and their messages."""
        summary = await archived.scan_tagged_messages(
            "Crypto", refresh_metadata=False, message_limit=2
        )

        assert summary["tag"] == "crypto"
        assert summary["source"] == "auto"
        assert summary["auto_tag"] is True
        assert summary["tagged_channel_count"] == 1
        assert summary["tagged_channels"][0]["channel_id"] == "100"
        assert summary["message_count"] == 2
        assert [(m["channel_id"], m["message_id"]) for m in summary["messages"]] == [
            ("100", 3),
            ("100", 2),
        ]
        assert not [c for c in fake_client.calls if c[0] == "get_peer_metadata"]

    @pytest.mark.asyncio
    async def test_scan_without_auto_tag_uses_existing_tags(self, archived):
        """With auto-tagging off only tags already stored are scanned."""
        untagged = await archived.scan_tagged_messages("crypto", auto_tag=False)
        assert untagged["tagged_channel_count"] == 0
        assert untagged["messages"] == []

        await archived.set_channel_tags(200, ["crypto"])
        manual = await archived.scan_tagged_messages(
            "crypto", source="manual", auto_tag=False, query="number"
        )
        assert [c["channel_id"] for c in manual["tagged_channels"]] == ["200"]
        assert {m["channel_id"] for m in manual["messages"]} == {"200"}
        assert manual["query"] == "number"

    @pytest.mark.asyncio
    async def test_scan_blank_tag(self, archived):
        summary = await archived.scan_tagged_messages("   ")
        assert summary["tag"] is None
        assert summary["tagged_channels"] == []
        assert summary["messages"] == []


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_shutdown_returns_interrupted_jobs_to_pending(self, tmp_path, fake_client):
        """Shutdown should leave no job stuck in_progress and be safe to repeat."""
        db_path = tmp_path / "messages.db"
        service = await MessageSyncService.open(fake_client, db_path, FAST)
        await service.add_job("100")
        await service.store.execute("UPDATE jobs SET status = 'in_progress'")

        await service.shutdown()
        await service.shutdown()
        assert service.store.closed

        store = await Store.open(db_path)
        try:
            status = await store.fetchval("SELECT status FROM jobs WHERE channel_id = '100'")
        finally:
            await store.close()
        assert status == "pending"

    @pytest.mark.asyncio
    async def test_shutdown_stops_realtime(self, tmp_path, fake_client):
        async with await MessageSyncService.open(
            fake_client, tmp_path / "messages.db", FAST
        ) as service:
            assert service.start_realtime_sync() is True
            assert fake_client.handler is service.realtime
        assert fake_client.handler is None
        assert service.token.cancelled

    @pytest.mark.asyncio
    async def test_audit_trail(self, tmp_path, fake_client):
        """Should record job start and finish in the file and the table."""
        db_path = tmp_path / "messages.db"
        audit_path = tmp_path / "audit.log"
        service = await MessageSyncService.open(fake_client, db_path, FAST, audit_path)
        fake_client.add_channel("100", make_history(5))
        await service.add_job("100")
        await service.process_queue()

        events = await service.list_job_events(100)
        assert [e["action"] for e in events] == [JOB_FINISHED, JOB_STARTED]
        assert events[0]["details"]["message_count"] == 5
        await service.shutdown()

        lines = [json.loads(line) for line in audit_path.read_text().splitlines()]
        assert [e["action"] for e in lines] == [JOB_STARTED, JOB_FINISHED]
        assert {e["channel_id"] for e in lines} == {"100"}

        store = await Store.open(db_path)
        try:
            rows = await store.fetchall(
                "SELECT action, channel_id, success FROM audit_log ORDER BY id"
            )
        finally:
            await store.close()
        assert rows == [
            {"action": JOB_STARTED, "channel_id": "100", "success": 1},
            {"action": JOB_FINISHED, "channel_id": "100", "success": 1},
        ]


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class TestAuditLogger:
    @pytest.mark.asyncio
    async def test_events_after_close_are_dropped(self, store, tmp_path):
        """Should write queued events on close and ignore later ones."""
        audit = AuditLogger(store, tmp_path / "audit.log")
        await audit.record(JobEvent(JOB_FAILED, 1, "100", success=False, details={"error": "x"}))
        await audit.close()
        await audit.record(JobEvent(JOB_STARTED, 2, "100"))
        await audit.close()

        lines = (tmp_path / "audit.log").read_text().splitlines()
        assert len(lines) == 1
        event = json.loads(lines[0])
        assert event["job_id"] == 1
        assert event["success"] is False
        assert event["details"] == {"error": "x"}

    @pytest.mark.asyncio
    async def test_recent_events_from_table(self, store):
        """Events are read back newest first with details decoded."""
        audit = AuditLogger(store)
        await audit.record(JobEvent(JOB_STARTED, 1, "100"))
        await audit.record(JobEvent(JOB_FAILED, 2, "200", success=False, details={"error": "boom"}))
        await audit.flush()

        events = await audit.recent_events()
        assert [(e["job_id"], e["action"]) for e in events] == [(2, JOB_FAILED), (1, JOB_STARTED)]
        assert events[0]["success"] is False
        assert events[0]["details"] == {"error": "boom"}

        only_100 = await audit.recent_events(channel_id="100")
        assert [e["job_id"] for e in only_100] == [1]
        await audit.close()

    @pytest.mark.asyncio
    async def test_close_without_events(self, store):
        audit = AuditLogger(store)
        await audit.flush()
        await audit.close()
        assert await audit.recent_events() == []
