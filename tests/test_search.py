"""
Tests for archive reads and search (archive.search).
"""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from archive.search import ArchiveSearch, compile_regex
from archive.tags import ChannelTags
from conftest import make_message
from syncer.remote import MediaKind, MediaSummary, RemotePeer


def _ts(year, month, day):
    return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp())


@pytest_asyncio.fixture
async def search(store, messages):
    await messages.upsert_channel(RemotePeer(id="100", peer_type="channel", title="Alpha"))
    await messages.upsert_channel(RemotePeer(id="200", peer_type="channel", title="Beta"))
    await messages.insert_messages(
        "100",
        [
            make_message(1, text="release notes for v1.0", date=_ts(2024, 1, 10)),
            make_message(2, text="Release candidate RC2", date=_ts(2024, 2, 10)),
            make_message(3, text="unrelated chatter", date=_ts(2024, 3, 10), topic_id=9),
            make_message(
                4,
                text="slides attached",
                date=_ts(2024, 4, 10),
                media=MediaSummary(kind=MediaKind.DOCUMENT, file_id="d", file_name="talk.pdf"),
            ),
        ],
    )
    await messages.insert_messages(
        "200", [make_message(1, text="release party tonight", date=_ts(2024, 5, 1))]
    )
    return ArchiveSearch(store)


def _keys(results):
    return [(m.channel_id, m.message_id) for m in results]


# ---------------------------------------------------------------------------
# Regex compilation
# ---------------------------------------------------------------------------


class TestCompileRegex:
    def test_invalid_regex_is_value_error(self):
        """Should surface a bad pattern as ValueError, not re.error."""
        with pytest.raises(ValueError, match="Invalid regex"):
            compile_regex("(unclosed")

    def test_case_flag(self):
        assert compile_regex("abc").search("ABC")
        assert not compile_regex("abc", case_insensitive=False).search("ABC")


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class TestListArchived:
    @pytest.mark.asyncio
    async def test_newest_first_in_one_channel(self, search):
        """Should list one channel newest first with its title and media."""
        result = await search.list_archived_messages(["100"], limit=2)
        assert [m.message_id for m in result] == [4, 3]
        assert result[0].peer_title == "Alpha"
        assert result[0].media["file_name"] == "talk.pdf"

    @pytest.mark.asyncio
    async def test_single_channel_id_string(self, search):
        """A bare channel id is read as one id, not as characters."""
        result = await search.list_archived_messages("200")
        assert _keys(result) == [("200", 1)]

    @pytest.mark.asyncio
    async def test_merges_several_channels_by_date(self, search):
        """Should interleave channels by message date."""
        result = await search.list_archived_messages(["100", "200"], limit=3)
        assert _keys(result) == [("200", 1), ("100", 4), ("100", 3)]

    @pytest.mark.asyncio
    async def test_whole_archive_when_unfiltered(self, search):
        result = await search.list_archived_messages()
        assert len(result) == 5
        assert result[-1].message_id == 1
        assert result[-1].channel_id == "100"

    @pytest.mark.asyncio
    async def test_topic_and_date_filters(self, search):
        """Should narrow by forum topic and by an inclusive date range."""
        by_topic = await search.list_archived_messages(["100"], topic_id=9)
        assert [m.message_id for m in by_topic] == [3]

        by_date = await search.list_archived_messages(
            ["100", "200"], from_date="2024-02-01", to_date="2024-03-31T23:59:59Z"
        )
        assert _keys(by_date) == [("100", 3), ("100", 2)]

    @pytest.mark.asyncio
    async def test_non_positive_limit_uses_default(self, search):
        result = await search.list_archived_messages(limit=0)
        assert len(result) == 5

    @pytest.mark.asyncio
    async def test_bad_date_is_value_error(self, search):
        with pytest.raises(ValueError):
            await search.list_archived_messages(from_date="last tuesday")


# ---------------------------------------------------------------------------
# Single-channel reads
# ---------------------------------------------------------------------------


class TestReads:
    @pytest.mark.asyncio
    async def test_get_message_and_missing(self, search):
        """Should return the stored message, and None for an unknown id."""
        found = await search.get_archived_message("100", 2)
        assert found.text == "Release candidate RC2"
        assert found.date == "2024-02-10T00:00:00+00:00"
        assert await search.get_archived_message("100", 999) is None

    @pytest.mark.asyncio
    async def test_context_is_chronological(self, search):
        """Neighbours on both sides should come back oldest first."""
        context = await search.get_archived_message_context("100", 3, before=1, after=5)
        assert context["target"].message_id == 3
        assert [m.message_id for m in context["before"]] == [2]
        assert [m.message_id for m in context["after"]] == [4]

    @pytest.mark.asyncio
    async def test_context_for_missing_message(self, search):
        assert await search.get_archived_message_context("100", 42) == {
            "target": None,
            "before": [],
            "after": [],
        }

    @pytest.mark.asyncio
    async def test_date_range_is_chronological(self, search):
        """Should bound by date inclusively and return oldest first."""
        result = await search.get_archived_messages(
            "100", from_date="2024-02-01", to_date="2024-03-31T23:59:59Z"
        )
        assert [m.message_id for m in result] == [2, 3]

    @pytest.mark.asyncio
    async def test_bad_date_is_value_error(self, search):
        with pytest.raises(ValueError):
            await search.get_archived_messages("100", from_date="yesterday-ish")

    @pytest.mark.asyncio
    async def test_message_stats(self, search):
        """Should report count and the oldest/newest dates as ISO strings."""
        stats = await search.get_message_stats("100")
        assert stats["total"] == 4
        assert stats["oldest_date"] == "2024-01-10T00:00:00+00:00"
        assert stats["newest_date"] == "2024-04-10T00:00:00+00:00"


# ---------------------------------------------------------------------------
# Regex search in one channel
# ---------------------------------------------------------------------------


class TestSearchMessages:
    @pytest.mark.asyncio
    async def test_regex_in_one_channel(self, search):
        """Should match case-insensitively by default, newest first."""
        result = await search.search_messages("100", r"^release")
        assert [m.message_id for m in result] == [2, 1]

    @pytest.mark.asyncio
    async def test_case_sensitive(self, search):
        result = await search.search_messages("100", r"^Release", case_insensitive=False)
        assert [m.message_id for m in result] == [2]

    @pytest.mark.asyncio
    async def test_topic_filter(self, search):
        """Should only consider messages of the given forum topic."""
        result = await search.search_messages("100", r"release|chatter", topic_id=9)
        assert [m.message_id for m in result] == [3]

    @pytest.mark.asyncio
    async def test_pages_past_non_matching_rows(self, store, messages):
        """A match buried under many newer rows is still found."""
        await messages.insert_messages("400", [make_message(1, text="the rare one", topic_id=7)])
        await messages.insert_messages(
            "400", [make_message(i, text="filler") for i in range(2, 1202)]
        )
        search = ArchiveSearch(store)

        assert [m.message_id for m in await search.search_messages("400", "rare")] == [1]

        fillers = await search.search_messages("400", "filler", limit=600)
        assert len(fillers) == 600
        assert fillers[0].message_id == 1201

        in_topic = await search.search_messages("400", "rare|filler", topic_id=7)
        assert [m.message_id for m in in_topic] == [1]


# ---------------------------------------------------------------------------
# Cross-channel search
# ---------------------------------------------------------------------------


class TestSearchArchive:
    @pytest.mark.asyncio
    async def test_requires_a_criterion(self, search):
        """Should refuse a search with nothing to narrow it."""
        with pytest.raises(ValueError):
            await search.search_archive_messages()

    @pytest.mark.asyncio
    async def test_blank_query_and_tags_are_no_criterion(self, search):
        with pytest.raises(ValueError):
            await search.search_archive_messages(query="   ", tags=["", "  "])

    @pytest.mark.asyncio
    async def test_blank_query_is_ignored(self, search, store):
        """A whitespace query should not reach FTS5 when tags narrow the search."""
        await ChannelTags(store).set_channel_tags("200", ["news"])

        result = await search.search_archive_messages(query="   ", tags=["news"])
        assert _keys(result) == [("200", 1)]

    @pytest.mark.asyncio
    async def test_blank_tags_are_ignored(self, search):
        """Should drop blank tags instead of joining on an empty tag list."""
        result = await search.search_archive_messages(tags=[" "], channel_ids=["200"])
        assert _keys(result) == [("200", 1)]

    @pytest.mark.asyncio
    async def test_fts_query_across_channels(self, search):
        result = await search.search_archive_messages(query="release")
        assert _keys(result) == [("200", 1), ("100", 2), ("100", 1)]

    @pytest.mark.asyncio
    async def test_file_name_is_searchable(self, search):
        """Attachment file names are part of the full-text index."""
        result = await search.search_archive_messages(query="talk")
        assert [m.message_id for m in result] == [4]

    @pytest.mark.asyncio
    async def test_query_and_regex_combine(self, search):
        result = await search.search_archive_messages(query="release", regex=r"v\d")
        assert [m.message_id for m in result] == [1]

    @pytest.mark.asyncio
    async def test_regex_prefetch_fills_limit(self, store, messages):
        """Regex matches older than ``limit`` rows are still found."""
        batch = [make_message(i, text=f"plain {i}") for i in range(1, 11)]
        batch += [make_message(100 + i, text=f"needle {i}") for i in range(3)]
        await messages.insert_messages("300", batch)
        search = ArchiveSearch(store)
        # Push the needles behind the plain rows so a plain LIMIT would miss them.
        await store.execute("UPDATE messages SET date = date - 100000 WHERE message_id >= 100")
        result = await search.search_archive_messages(
            channel_ids=["300"], regex="needle", limit=3
        )
        assert len(result) == 3

    @pytest.mark.asyncio
    async def test_filters(self, search):
        """Channel, topic and date filters each narrow the result."""
        by_channel = await search.search_archive_messages(query="release", channel_ids=["200"])
        assert [m.channel_id for m in by_channel] == ["200"]

        by_topic = await search.search_archive_messages(topic_id=9)
        assert [m.message_id for m in by_topic] == [3]

        by_date = await search.search_archive_messages(
            query="release", from_date="2024-02-01", to_date="2024-03-01"
        )
        assert [m.message_id for m in by_date] == [2]

    @pytest.mark.asyncio
    async def test_invalid_fts_query_is_value_error(self, search):
        """Should turn an FTS5 syntax error into ValueError."""
        with pytest.raises(ValueError, match="Invalid search query"):
            await search.search_archive_messages(query="release AND")

    @pytest.mark.asyncio
    async def test_invalid_regex_is_value_error(self, search):
        with pytest.raises(ValueError):
            await search.search_archive_messages(query="release", regex="[")


# ---------------------------------------------------------------------------
# Tagged search
# ---------------------------------------------------------------------------


class TestTaggedSearch:
    @pytest_asyncio.fixture
    async def tagged(self, search, store):
        tags = ChannelTags(store)
        await tags.set_channel_tags("200", ["parties"])
        await tags.set_channel_tags("100", ["parties"], source="auto")
        return search

    @pytest.mark.asyncio
    async def test_tag_filter_and_source(self, tagged):
        """Should match tags case-insensitively and honour the source partition."""
        manual = await tagged.search_tagged_messages("parties", source="manual", query="release")
        assert [m.channel_id for m in manual] == ["200"]

        any_source = await tagged.search_tagged_messages("Parties", query="release")
        assert {m.channel_id for m in any_source} == {"100", "200"}

    @pytest.mark.asyncio
    async def test_date_range(self, tagged):
        """Should bound tagged results by date."""
        recent = await tagged.search_tagged_messages("parties", from_date="2024-04-01")
        assert _keys(recent) == [("200", 1), ("100", 4)]

        early = await tagged.search_tagged_messages(
            "parties", query="release", to_date="2024-01-31"
        )
        assert _keys(early) == [("100", 1)]

    @pytest.mark.asyncio
    async def test_blank_tag_matches_nothing(self, tagged):
        assert await tagged.search_tagged_messages("   ") == []
        assert await tagged.search_tagged_messages(None, query="release") == []
