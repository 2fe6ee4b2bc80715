"""Trigram similarity and the similarity index used for deduplication.

Similarity follows PostgreSQL pg_trgm semantics so that the in-process
index and the database-backed index agree:

- text is lowercased and split into alphanumeric words
- each word is padded with two spaces in front and one behind
- the set of three-character substrings is taken
- similarity is |A ∩ B| / |A ∪ B|
"""

import logging
import re
from typing import FrozenSet, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from src.curation.db import DatabaseError, PostgresDatabase
from src.curation.gates.models import normalize_text
from src.curation.state.machine import ItemRepository
from src.curation.state.models import ItemType, LifecycleState


logger = logging.getLogger(__name__)


_TRGM_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)


def trigrams(text: str) -> FrozenSet[str]:
    """Return the pg_trgm trigram set of a text."""
    grams = set()
    for word in _TRGM_WORD_RE.findall(text.lower()):
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i:i + 3])
    return frozenset(grams)


def trigram_similarity(a: str, b: str) -> float:
    """Jaccard similarity of two texts' trigram sets, in [0, 1]."""
    grams_a = trigrams(a)
    grams_b = trigrams(b)
    if not grams_a or not grams_b:
        return 0.0
    shared = len(grams_a & grams_b)
    return shared / (len(grams_a) + len(grams_b) - shared)


class SimilarityMatch(BaseModel):
    """One approved item similar to the probe text."""

    id: str
    score: float = Field(..., ge=0.0, le=1.0)
    text: str = ""


@runtime_checkable
class SimilarityIndex(Protocol):
    """Index over approved content used by the duplication gate."""

    async def similar_to(
        self,
        text: str,
        item_type: ItemType,
        language: Optional[str],
        threshold: float,
        exclude_id: Optional[str] = None,
    ) -> List[SimilarityMatch]:
        """Return approved items with similarity >= threshold, best first."""
        ...


class ApprovedItemIndex:
    """Similarity index computed in-process over approved items.

    Reads approved items of the probe's type through an ItemRepository
    on every query, so it never drifts from the stored lifecycle state.
    Suitable for the in-memory repository and small deployments.
    """

    def __init__(self, repository: ItemRepository):
        self.repository = repository

    async def similar_to(
        self,
        text: str,
        item_type: ItemType,
        language: Optional[str],
        threshold: float,
        exclude_id: Optional[str] = None,
    ) -> List[SimilarityMatch]:
        approved = await self.repository.list_by_state(LifecycleState.APPROVED, item_type)

        matches = []
        for item in approved:
            if item.item_id == exclude_id:
                continue
            if language is not None and item.language not in (None, language):
                continue
            candidate_text = str(item.data.get("text", ""))
            score = trigram_similarity(text, candidate_text)
            if score >= threshold:
                matches.append(
                    SimilarityMatch(id=item.item_id, score=score, text=candidate_text)
                )

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches


class PostgresSimilarityIndex:
    """Similarity index backed by the pg_trgm extension.

    Requires CREATE EXTENSION pg_trgm and the trigram index on
    curation_items from migrations/001_curation_core.sql.
    """

    def __init__(self, db: PostgresDatabase, limit: int = 10):
        self.db = db
        self.limit = limit

    async def similar_to(
        self,
        text: str,
        item_type: ItemType,
        language: Optional[str],
        threshold: float,
        exclude_id: Optional[str] = None,
    ) -> List[SimilarityMatch]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT item_id, data->>'text' AS text,
                           similarity(data->>'text', $1) AS score
                    FROM curation_items
                    WHERE item_type = $2
                      AND state = 'approved'
                      AND ($3::text IS NULL OR language IS NULL OR language = $3)
                      AND ($4::text IS NULL OR item_id <> $4)
                      AND similarity(data->>'text', $1) >= $5
                    ORDER BY score DESC
                    LIMIT $6
                    """,
                    text,
                    item_type.value,
                    language,
                    exclude_id,
                    threshold,
                    self.limit,
                )
                return [
                    SimilarityMatch(
                        id=row["item_id"],
                        score=min(1.0, float(row["score"])),
                        text=row["text"] or "",
                    )
                    for row in rows
                ]

        except Exception as e:
            logger.error(
                "Similarity query failed",
                extra={"item_type": item_type.value, "error": str(e)},
            )
            raise DatabaseError(
                f"Similarity query failed: {e}",
                original_error=e,
            ) from e


def is_exact_duplicate(a: str, b: str) -> bool:
    """True when two texts are identical after normalization."""
    return bool(a) and normalize_text(a) == normalize_text(b)
