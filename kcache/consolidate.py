"""
Memory Consolidation — similarity scoring for near-duplicate memories

Pairwise scoring used by MemoryStore.find_similar / merge / cleanup_stale:

    similarity = 0.4 * jaccard(title words)
               + 0.3 * jaccard(description words)
               + 0.2 * jaccard(tags, case-insensitive)
               + 0.1 * (same type)

Words are lowercased, whitespace-split and shorter than three characters
are ignored.  An empty side scores 0, never 1.

Suggested action:
    > 0.8  delete-older when importance is equal, otherwise merge
    > 0.5  merge
    else   keep-both

No embeddings, no LLM calls: the score is fully deterministic.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

from typing import Iterable, List, Set

from kcache.types import MemoryRecord, _unique

TITLE_WEIGHT = 0.4
DESCRIPTION_WEIGHT = 0.3
TAG_WEIGHT = 0.2
TYPE_WEIGHT = 0.1

DUPLICATE_THRESHOLD = 0.8
MERGE_THRESHOLD = 0.5


def _jaccard(a: Set[str], b: Set[str]) -> float:
    """Jaccard similarity between two sets (0 when either is empty)."""
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def _words(text: str) -> Set[str]:
    return {w for w in (text or "").lower().split() if len(w) > 2}


def text_similarity(a: str, b: str) -> float:
    """Word-level Jaccard similarity."""
    return _jaccard(_words(a), _words(b))


def tag_similarity(a: Iterable[str], b: Iterable[str]) -> float:
    """Case-insensitive tag Jaccard similarity."""
    return _jaccard({t.lower() for t in a or []}, {t.lower() for t in b or []})


def memory_similarity(m1: MemoryRecord, m2: MemoryRecord) -> float:
    """Weighted similarity of two memories in [0, 1]."""
    return (
        TITLE_WEIGHT * text_similarity(m1.title, m2.title)
        + DESCRIPTION_WEIGHT * text_similarity(m1.description, m2.description)
        + TAG_WEIGHT * tag_similarity(m1.tags, m2.tags)
        + TYPE_WEIGHT * (1.0 if m1.type == m2.type else 0.0)
    )


def suggest_action(m1: MemoryRecord, m2: MemoryRecord, similarity: float) -> str:
    if similarity > DUPLICATE_THRESHOLD:
        return "delete-older" if m1.importance == m2.importance else "merge"
    if similarity > MERGE_THRESHOLD:
        return "merge"
    return "keep-both"


def similarity_reason(m1: MemoryRecord, m2: MemoryRecord, similarity: float) -> str:
    """Human-readable explanation of why two memories look alike."""
    reasons: List[str] = []
    if text_similarity(m1.title, m2.title) > 0.6:
        reasons.append("similar titles")
    if m1.type == m2.type:
        reasons.append(f"both {m1.type}s")
    shared_tags = [t for t in m1.tags if t in m2.tags]
    if shared_tags:
        reasons.append(f"shared tags: {', '.join(shared_tags)}")
    shared_features = [f for f in m1.features if f in m2.features]
    if shared_features:
        reasons.append(f"same feature: {', '.join(shared_features)}")
    if reasons:
        return ", ".join(reasons)
    return f"{round(similarity * 100)}% similar"


def merged_description(keep: MemoryRecord, other: MemoryRecord) -> str:
    """Description of ``keep`` with ``other``'s appended under a marker."""
    if keep.description == other.description:
        return keep.description
    return f"{keep.description}\n\n[Merged from: {other.title}]\n{other.description}"


def merged_lists(a: Iterable[str], b: Iterable[str]) -> List[str]:
    return _unique(list(a or []) + list(b or []))
