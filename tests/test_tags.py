"""
Tests for channel tags and the rule-based classifier.
"""

import pytest

from archive.metadata import MetadataCache
from archive.tags import (
    ChannelTags,
    build_tag_text,
    classify_tags,
    normalize_tag,
    normalize_tags,
)
from syncer.remote import PeerMetadata, RemotePeer


class TestNormalize:
    def test_normalize_tag(self):
        """Should lowercase, trim and collapse inner whitespace."""
        assert normalize_tag("  Machine   Learning ") == "machine learning"
        assert normalize_tag("   ") is None
        assert normalize_tag(None) is None

    def test_normalize_tags_dedupes_in_order(self):
        assert normalize_tags(["News", "news", "", "AI", " ai "]) == ["news", "ai"]


class TestClassify:
    def test_confidence_scales_with_hits(self):
        """Confidence is hits/3, capped at 1."""
        matches = {m.tag: m.confidence for m in classify_tags("Bitcoin and blockchain crypto news")}
        assert matches["crypto"] == 1.0
        assert matches["news"] == pytest.approx(1 / 3)

    def test_russian_text(self):
        """Russian keywords should classify too."""
        tags = {m.tag for m in classify_tags("Вакансии и работа в IT")}
        assert "jobs" in tags

    def test_no_match(self):
        assert classify_tags("") == []
        assert classify_tags("zzz qqq") == []

    def test_build_tag_text_skips_missing(self):
        assert build_tag_text("Title", None, "about") == "Title about"


class TestChannelTags:
    @pytest.mark.asyncio
    async def test_sources_are_independent(self, store):
        """Manual and auto tag sets are stored and replaced separately."""
        tags = ChannelTags(store)
        assert await tags.set_channel_tags("1", ["Travel", "travel", "Food"]) == ["travel", "food"]
        await tags.set_channel_tags("1", ["news"], source="auto")
        await tags.set_channel_tags("1", ["trips"], source="manual")

        rows = await tags.list_channel_tags("1")
        assert [(r["source"], r["tag"]) for r in rows] == [("auto", "news"), ("manual", "trips")]
        assert [r["tag"] for r in await tags.list_channel_tags("1", source="auto")] == ["news"]

    @pytest.mark.asyncio
    async def test_empty_set_clears_source(self, store):
        """Setting an empty list removes the source's tags."""
        tags = ChannelTags(store)
        await tags.set_channel_tags("1", ["a"])
        assert await tags.set_channel_tags("1", []) == []
        assert await tags.list_channel_tags("1") == []

    @pytest.mark.asyncio
    async def test_list_tagged_channels(self, store, messages):
        """Tag lookup is normalised and can be narrowed to one source."""
        await messages.upsert_channel(RemotePeer(id="1", peer_type="channel", title="Alpha"))
        await messages.upsert_channel(RemotePeer(id="2", peer_type="channel", title="Beta"))
        tags = ChannelTags(store)
        await tags.set_channel_tags("1", ["tech"])
        await tags.set_channel_tags("2", ["tech"], source="auto")

        found = await tags.list_tagged_channels(" TECH ")
        assert [r["channel_id"] for r in found] == ["1", "2"]
        manual = await tags.list_tagged_channels("tech", source="manual")
        assert [r["peer_title"] for r in manual] == ["Alpha"]

    @pytest.mark.asyncio
    async def test_list_tagged_requires_tag(self, store):
        with pytest.raises(ValueError):
            await ChannelTags(store).list_tagged_channels("  ")


class TestAutoTag:
    @pytest.mark.asyncio
    async def test_auto_tag_uses_fetched_about_text(self, store, messages, fake_client):
        """Auto-tagging should classify the refreshed about text and leave manual tags alone."""
        await messages.upsert_channel(RemotePeer(id="1", peer_type="channel", title="Daily"))
        fake_client.metadata["1"] = PeerMetadata(
            peer_title="Daily Digest",
            peer_type="channel",
            about="Bitcoin, blockchain and crypto markets",
        )
        metadata = MetadataCache(store, fake_client, messages)
        tags = ChannelTags(store, metadata)
        await tags.set_channel_tags("1", ["favourite"])

        results = await tags.auto_tag_channels(channel_ids=["1"])

        assert results[0]["peer_title"] == "Daily Digest"
        assert {t["tag"] for t in results[0]["tags"]} >= {"crypto"}
        stored = await tags.list_channel_tags("1")
        assert ("manual", "favourite") in [(r["source"], r["tag"]) for r in stored]
        assert ("auto", "crypto") in [(r["source"], r["tag"]) for r in stored]

    @pytest.mark.asyncio
    async def test_auto_tag_without_refresh(self, store, messages, fake_client):
        """With refresh off only stored identity is classified and nothing is fetched."""
        await messages.upsert_channel(
            RemotePeer(id="1", peer_type="channel", title="Football and sports")
        )
        tags = ChannelTags(store, MetadataCache(store, fake_client, messages))
        results = await tags.auto_tag_channels(refresh_metadata=False)
        assert [t["tag"] for t in results[0]["tags"]] == ["sports"]
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_retagging_replaces_previous_auto_tags(self, store, messages):
        """A second run replaces the auto tag set instead of merging."""
        await messages.upsert_channel(RemotePeer(id="1", peer_type="channel", title="Crypto"))
        tags = ChannelTags(store)
        await tags.auto_tag_channels(["1"])
        await messages.upsert_channel(RemotePeer(id="1", peer_type="channel", title="Travel"))
        await tags.auto_tag_channels(["1"])
        assert [r["tag"] for r in await tags.list_channel_tags("1", "auto")] == ["travel"]

    @pytest.mark.asyncio
    async def test_nothing_to_tag(self, store):
        assert await ChannelTags(store).auto_tag_channels() == []
