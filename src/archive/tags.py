"""
Channel tags and the rule-based classifier that proposes them.

Tags are partitioned by ``source``: ``manual`` tags are set by the user,
``auto`` tags come from :func:`classify_tags`.  Writing one source always
replaces that source's whole set for the channel and never touches the
other partitions, so re-running auto-tagging cannot clobber manual edits.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Pattern, Sequence

from shared.db import Store

if TYPE_CHECKING:
    from archive.metadata import MetadataCache

logger = logging.getLogger("archive.tags")

SOURCE_MANUAL = "manual"
SOURCE_AUTO = "auto"
_HITS_FOR_FULL_CONFIDENCE = 3


def _rule(tag: str, *patterns: str) -> tuple[str, tuple[Pattern[str], ...]]:
    return tag, tuple(re.compile(p, re.IGNORECASE) for p in patterns)


TAG_RULES: Sequence[tuple[str, tuple[Pattern[str], ...]]] = (
    _rule(
        "ai",
        r"\bai\b", r"\bartificial intelligence\b", r"\bmachine learning\b", r"\bml\b",
        r"\bgpt\b", r"\bllm\b", r"нейросет", r"искусственн", r"машинн(ое|ого) обучен",
    ),
    _rule("memes", r"\bmemes?\b", r"мем", r"юмор", r"шутк", r"\blol\b", r"\bkek\b"),
    _rule("news", r"\bnews\b", r"новост", r"сводк", r"дайджест", r"\bbreaking\b"),
    _rule(
        "crypto",
        r"\bcrypto\b", r"\bbitcoin\b", r"\bbtc\b", r"\beth\b", r"\bblockchain\b",
        r"крипт", r"блокчейн",
    ),
    _rule("jobs", r"\bjobs?\b", r"ваканс", r"работа", r"\bhiring\b", r"\bcareer\b"),
    _rule("events", r"\bevents?\b", r"мероприяти", r"встреч", r"митап", r"конференц"),
    _rule("travel", r"\btravel\b", r"\btrip\b", r"путешеств", r"туризм"),
    _rule("finance", r"\bfinance\b", r"финанс", r"инвест", r"\bstocks?\b", r"акци"),
    _rule("real_estate", r"\breal estate\b", r"недвижим", r"аренд", r"\brent\b", r"квартир"),
    _rule("education", r"\bcourses?\b", r"курс", r"обучен", r"учеб"),
    _rule("tech", r"\btech\b", r"технол", r"\bsoftware\b", r"разработк", r"\bdev\b"),
    _rule("marketing", r"\bmarketing\b", r"маркетинг", r"\bsmm\b", r"реклам"),
    _rule("gaming", r"\bgam(e|ing|es)\b", r"игр", r"стрим"),
    _rule("sports", r"\bsports?\b", r"спорт", r"футбол", r"\bnba\b"),
    _rule("health", r"\bhealth\b", r"здоров", r"медиц", r"fitness", r"фитнес"),
)


@dataclass(frozen=True)
class TagMatch:
    tag: str
    confidence: float


def normalize_tag(tag: Any) -> Optional[str]:
    """Lowercase, trim and collapse whitespace; None for empty tags."""
    if tag is None:
        return None
    normalized = " ".join(str(tag).split()).lower()
    return normalized or None


def normalize_tags(tags: Iterable[Any]) -> List[str]:
    seen: List[str] = []
    for tag in tags:
        normalized = normalize_tag(tag)
        if normalized and normalized not in seen:
            seen.append(normalized)
    return seen


def build_tag_text(
    peer_title: Optional[str], username: Optional[str], about: Optional[str]
) -> str:
    return " ".join(part for part in (peer_title, username, about) if part).strip()


def classify_tags(text: str) -> List[TagMatch]:
    """Score every rule against ``text``.

    Each matching pattern is one hit; confidence is ``min(1, hits / 3)``.
    """
    if not text:
        return []
    lowered = text.lower()
    matches = []
    for tag, patterns in TAG_RULES:
        hits = sum(1 for pattern in patterns if pattern.search(lowered))
        if hits:
            matches.append(TagMatch(tag, min(1.0, hits / _HITS_FOR_FULL_CONFIDENCE)))
    return matches


class ChannelTags:
    """Stores and queries channel tags.

    Args:
        store: Archive store.
        metadata: Metadata cache used to fetch "about" text before
            auto-tagging.  Optional; without it only cached text is used.
    """

    def __init__(self, store: Store, metadata: Optional["MetadataCache"] = None) -> None:
        self._store = store
        self._metadata = metadata

    async def _replace(
        self,
        channel_id: str,
        source: str,
        tags: Sequence[tuple[str, Optional[float]]],
    ) -> None:
        async with self._store.transaction() as conn:
            await conn.execute(
                "DELETE FROM channel_tags WHERE channel_id = ? AND source = ?",
                (channel_id, source),
            )
            if tags:
                await conn.executemany(
                    "INSERT INTO channel_tags (channel_id, tag, source, confidence) "
                    "VALUES (?, ?, ?, ?)",
                    [(channel_id, tag, source, confidence) for tag, confidence in tags],
                )

    async def set_channel_tags(
        self,
        channel_id: str,
        tags: Iterable[Any],
        source: str = SOURCE_MANUAL,
    ) -> List[str]:
        """Replace the channel's tags for ``source``.

        Returns:
            The normalized tags now stored.
        """
        source = normalize_tag(source) or SOURCE_MANUAL
        normalized = normalize_tags(tags)
        await self._replace(channel_id, source, [(tag, None) for tag in normalized])
        logger.debug("Set %d %s tag(s) on channel %s", len(normalized), source, channel_id)
        return normalized

    async def list_channel_tags(
        self, channel_id: str, source: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        sql = "SELECT tag, source, confidence FROM channel_tags WHERE channel_id = ?"
        params: List[Any] = [channel_id]
        if source:
            sql += " AND source = ?"
            params.append(source)
        sql += " ORDER BY source, tag"
        return await self._store.fetchall(sql, params)

    async def list_tagged_channels(
        self, tag: str, source: Optional[str] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Channels carrying ``tag``, highest confidence first."""
        normalized = normalize_tag(tag)
        if not normalized:
            raise ValueError("tag is required")
        sql = """
            SELECT c.channel_id, c.peer_title, c.username, c.peer_type, c.chat_type,
                   ct.tag, ct.source, ct.confidence
            FROM channel_tags ct
            JOIN channels c ON c.channel_id = ct.channel_id
            WHERE ct.tag = ?
        """
        params: List[Any] = [normalized]
        if source:
            sql += " AND ct.source = ?"
            params.append(source)
        sql += " ORDER BY COALESCE(ct.confidence, 1) DESC, c.peer_title LIMIT ?"
        params.append(int(limit))
        return await self._store.fetchall(sql, params)

    async def auto_tag_channels(
        self,
        channel_ids: Optional[Sequence[str]] = None,
        limit: int = 50,
        source: str = SOURCE_AUTO,
        refresh_metadata: bool = True,
    ) -> List[Dict[str, Any]]:
        """Classify channels and replace their ``source`` tag set.

        Returns:
            One ``{channel_id, peer_title, tags}`` entry per channel processed.
        """
        if channel_ids:
            ids = [str(cid) for cid in channel_ids]
        else:
            rows = await self._store.fetchall(
                "SELECT channel_id FROM channels ORDER BY updated_at DESC LIMIT ?",
                (int(limit),),
            )
            ids = [row["channel_id"] for row in rows]
        if not ids:
            return []

        if refresh_metadata and self._metadata is not None:
            await self._metadata.refresh_channel_metadata(channel_ids=ids, limit=len(ids))

        placeholders = ", ".join("?" for _ in ids)
        rows = await self._store.fetchall(
            f"""
            SELECT c.channel_id, c.peer_title, c.username, cm.about
            FROM channels c
            LEFT JOIN channel_metadata cm ON cm.channel_id = c.channel_id
            WHERE c.channel_id IN ({placeholders})
            """,
            ids,
        )
        results = []
        for row in rows:
            text = build_tag_text(row["peer_title"], row["username"], row["about"])
            matches = classify_tags(text)
            await self._replace(
                row["channel_id"], source, [(m.tag, m.confidence) for m in matches]
            )
            results.append(
                {
                    "channel_id": row["channel_id"],
                    "peer_title": row["peer_title"],
                    "tags": [{"tag": m.tag, "confidence": m.confidence} for m in matches],
                }
            )
        logger.info("Auto-tagged %d channel(s) with source=%s", len(results), source)
        return results
