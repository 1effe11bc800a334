"""
Smart Retrieval — context-aware memory ranking on a 0-100 scale

    score = base * time_decay * importance * type * freshness * context

    base        100 * relevance / best relevance (query), 50 (no query)
    time_decay  0.5 ** (age_days / 30)
    importance  critical 2.0, high 1.5, medium 1.0, low 0.5
    type        decision 1.3, pattern 1.2, bugfix 1.1, feature 1.0,
                observation 0.9, other 1.0
    freshness   1.5 (< 24 h), 1.2 (< 1 week), 0.8 (> 30 days), else 1.0
    context     x1.5 feature match, x1.3 file match, x1.2 tag match

The final score is clamped to [0, 100] and rounded to one decimal.  The
candidate pool is three times ``limit`` for a query and twice ``limit``
for the recency listing, so boosts can reorder beyond the first page.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from kcache.types import MemoryFilters, MemoryRecord, RelevanceBreakdown, SmartSearchResult

logger = logging.getLogger(__name__)

HALF_LIFE_DAYS = 30.0
RECENCY_BASE_SCORE = 50.0

IMPORTANCE_MULTIPLIERS: Dict[str, float] = {
    "critical": 2.0,
    "high": 1.5,
    "medium": 1.0,
    "low": 0.5,
}

TYPE_MULTIPLIERS: Dict[str, float] = {
    "decision": 1.3,
    "pattern": 1.2,
    "bugfix": 1.1,
    "feature": 1.0,
    "observation": 0.9,
}

FEATURE_BOOST = 1.5
FILE_BOOST = 1.3
TAG_BOOST = 1.2


def _freshness(age_hours: float) -> float:
    if age_hours < 24:
        return 1.5
    if age_hours < 168:
        return 1.2
    if age_hours > 720:
        return 0.8
    return 1.0


def _context_boost(
    memory: MemoryRecord,
    current_feature: Optional[str],
    current_file: Optional[str],
    tags: List[str],
) -> float:
    boost = 1.0
    if current_feature:
        cf = current_feature.lower()
        if any(f.lower() in cf or cf in f.lower() for f in memory.features):
            boost *= FEATURE_BOOST
    if current_file:
        if any(
            current_file in f or f.rsplit("/", 1)[-1] in current_file
            for f in memory.related_files
        ):
            boost *= FILE_BOOST
    if tags:
        wanted = {t.lower() for t in tags}
        if any(t.lower() in wanted for t in memory.tags):
            boost *= TAG_BOOST
    return boost


def score_memory(
    memory: MemoryRecord,
    base: float,
    now: float,
    current_feature: Optional[str] = None,
    current_file: Optional[str] = None,
    tags: Optional[Iterable[str]] = None,
    include_reasoning: bool = False,
) -> SmartSearchResult:
    """Apply every ranking factor to one memory."""
    age_days = max(0.0, now - memory.created_at_epoch) / 86400
    time_decay = 0.5 ** (age_days / HALF_LIFE_DAYS)
    importance = IMPORTANCE_MULTIPLIERS.get(memory.importance, 1.0)
    type_boost = TYPE_MULTIPLIERS.get(memory.type, 1.0)
    freshness = _freshness(age_days * 24)
    context = _context_boost(memory, current_feature, current_file, list(tags or []))

    final = base * time_decay * importance * type_boost * freshness * context
    relevance = round(min(100.0, max(0.0, final)), 1)
    reasoning = None
    if include_reasoning:
        reasoning = RelevanceBreakdown(
            text_match=round(base, 1),
            time_decay=round(time_decay, 2),
            importance_boost=importance,
            type_boost=type_boost,
            context_boost=round(context, 2),
            freshness_bonus=freshness,
            final=relevance,
        )
    return SmartSearchResult(memory=memory, relevance=relevance, reasoning=reasoning)


def smart_search(
    store,
    query: str = "",
    filters: Optional[MemoryFilters] = None,
    limit: int = 10,
    current_feature: Optional[str] = None,
    current_file: Optional[str] = None,
    tags: Optional[Iterable[str]] = None,
    min_relevance: Optional[float] = None,
    include_reasoning: bool = False,
) -> List[SmartSearchResult]:
    """Memories ranked by text match, age, importance, type and context.

    Args:
        store: MemoryStore to search.
        query: Free text; empty ranks the most recent memories instead.
        filters: Scope and attribute filters (applied before scoring).
        current_feature: Boosts memories whose features overlap it.
        current_file: Boosts memories referencing the file.
        tags: Boosts memories carrying any of these tags (not a filter).
        min_relevance: Drop results scoring below this value (0-100).
        include_reasoning: Attach the factor breakdown to each result.
    """
    if limit <= 0:
        return []
    now = store.db.now()
    if query.strip():
        hits = store.search(query, filters, limit * 3)
        best = max((h.relevance for h in hits), default=0.0)
        scored = [
            (h.memory, 100.0 * h.relevance / best if best > 0 else RECENCY_BASE_SCORE)
            for h in hits
        ]
    else:
        hits = store.search("", filters, limit * 2)
        scored = [(h.memory, RECENCY_BASE_SCORE) for h in hits]

    tags = list(tags or [])
    results = [
        score_memory(
            memory, base, now, current_feature, current_file, tags, include_reasoning,
        )
        for memory, base in scored
    ]
    results.sort(key=lambda r: -r.relevance)
    if min_relevance:
        results = [r for r in results if r.relevance >= min_relevance]
    logger.debug(f"[smart] {query!r} -> {len(results)} scored (limit {limit})")
    return results[:limit]


def critical_memories(store, project: Optional[str] = None, limit: int = 3) -> List[SmartSearchResult]:
    """Critical memories of a project, best first."""
    filters = MemoryFilters(project=project, importance="critical")
    return smart_search(store, "", filters, limit)


def recent_decisions(
    store,
    project: Optional[str] = None,
    feature: Optional[str] = None,
    limit: int = 5,
) -> List[SmartSearchResult]:
    """Decisions of a project, boosted toward the current feature."""
    filters = MemoryFilters(project=project, type="decision")
    return smart_search(store, "", filters, limit, current_feature=feature)
