"""
Hybrid Ranker — text relevance blended with semantic similarity

    score = bm25_weight * normalize(text_relevance)
          + semantic_weight * semantic_similarity

``normalize`` divides by the best text relevance among the candidates.
Similarities below ``min_similarity`` contribute nothing (the candidate is
kept, only the semantic term is zeroed).  Without an embedding provider,
or when the provider fails, the score is the text relevance alone and the
reported search mode is "text" instead of "hybrid".

The provider is an external capability: ``embed(text)`` returns an opaque
vector and ``similarity(a, b)`` a value in [0, 1].  Nothing here assumes
how either is computed.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from kcache.types import MemoryFilters, RankedResult, SearchMeta, SearchMode

logger = logging.getLogger(__name__)

DEFAULT_BM25_WEIGHT = 0.5
DEFAULT_SEMANTIC_WEIGHT = 0.5
DEFAULT_MIN_SIMILARITY = 0.3


class EmbeddingProvider(Protocol):
    """External embedding capability consumed by the ranker."""

    model_name: str

    def embed(self, text: str) -> Sequence[float]: ...

    def similarity(self, a: Sequence[float], b: Sequence[float]) -> float: ...


def _record_text(record: Any) -> str:
    """Text to embed for a memory or a documentation section."""
    text = getattr(record, "text", None)
    if isinstance(text, str):
        return text
    title = getattr(record, "title", "") or ""
    body = getattr(record, "content", "") or getattr(record, "description", "") or ""
    return f"{title} {body}".strip() or str(record)


class HybridRanker:
    """Re-scores (record, text_relevance) candidates."""

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        bm25_weight: float = DEFAULT_BM25_WEIGHT,
        semantic_weight: float = DEFAULT_SEMANTIC_WEIGHT,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
    ):
        if abs(bm25_weight + semantic_weight - 1.0) > 1e-9:
            raise ValueError(
                f"bm25_weight + semantic_weight must equal 1.0 "
                f"(got {bm25_weight} + {semantic_weight})"
            )
        self.provider = provider
        self.bm25_weight = bm25_weight
        self.semantic_weight = semantic_weight
        self.min_similarity = min_similarity

    def rank(
        self,
        query: str,
        candidates: Sequence[Tuple[Any, float]],
        vectors: Optional[Dict[str, Sequence[float]]] = None,
    ) -> Tuple[List[RankedResult], SearchMode]:
        """Order candidates by blended score.

        Args:
            query: The search text.
            candidates: (record, text_relevance) pairs, text relevance >= 0.
            vectors: Precomputed vectors keyed by record id; records without
                one are embedded on the fly.

        Returns:
            (results sorted by score descending, "hybrid" | "text")
        """
        if not candidates:
            return [], "hybrid" if self.provider is not None else "text"
        if self.provider is None:
            return self._text_only(candidates), "text"
        try:
            sims = self._similarities(query, candidates, vectors or {})
        except Exception as exc:
            logger.warning(f"[ranker] embedding provider failed, text-only ranking: {exc}")
            return self._text_only(candidates), "text"

        best = max(rel for _, rel in candidates)
        results: List[RankedResult] = []
        for (record, rel), sim in zip(candidates, sims):
            text_norm = rel / best if best > 0 else 0.0
            semantic = sim if sim >= self.min_similarity else 0.0
            results.append(RankedResult(
                record=record,
                score=self.bm25_weight * text_norm + self.semantic_weight * semantic,
                text_relevance=rel,
                semantic_similarity=sim,
            ))
        results.sort(key=lambda r: -r.score)
        return results, "hybrid"

    def _similarities(
        self,
        query: str,
        candidates: Sequence[Tuple[Any, float]],
        vectors: Dict[str, Sequence[float]],
    ) -> List[float]:
        query_vec = self.provider.embed(query)
        sims: List[float] = []
        for record, _ in candidates:
            vec = vectors.get(getattr(record, "id", None))
            if vec is None:
                vec = self.provider.embed(_record_text(record))
            sims.append(float(self.provider.similarity(query_vec, vec)))
        return sims

    @staticmethod
    def _text_only(candidates: Sequence[Tuple[Any, float]]) -> List[RankedResult]:
        results = [
            RankedResult(record=record, score=rel, text_relevance=rel)
            for record, rel in candidates
        ]
        results.sort(key=lambda r: -r.score)
        return results


# ---------------------------------------------------------------------------
# Memory helpers
# ---------------------------------------------------------------------------


def hybrid_search(
    store,
    ranker: HybridRanker,
    query: str,
    filters: Optional[MemoryFilters] = None,
    limit: int = 10,
) -> Tuple[List[RankedResult], SearchMeta]:
    """Memory search re-ranked by the hybrid ranker.

    Fetches twice ``limit`` text candidates so that semantic re-ordering
    has room to promote lower text hits.
    """
    hits = store.search(query, filters, limit * 2)
    vectors = store.embeddings(h.memory.id for h in hits) if ranker.provider else {}
    ranked, mode = ranker.rank(query, [(h.memory, h.relevance) for h in hits], vectors)
    ranked = ranked[:limit]
    return ranked, SearchMeta(search_mode=mode, query=query, total=len(ranked))


def backfill_embeddings(
    store, provider: EmbeddingProvider, batch_size: int = 50,
) -> int:
    """Store vectors for every memory that has none. Returns the count."""
    total = 0
    while True:
        batch = store.missing_embeddings(batch_size)
        if not batch:
            break
        for record in batch:
            store.store_embedding(
                record.id, provider.embed(record.text),
                getattr(provider, "model_name", ""),
            )
            total += 1
    if total:
        logger.info(f"Embeddings backfilled: {total}")
    return total


# ---------------------------------------------------------------------------
# Documentation helpers
# ---------------------------------------------------------------------------


def hybrid_search_docs(
    docs,
    ranker: HybridRanker,
    query: str,
    library: Optional[str] = None,
    topic: Optional[str] = None,
    limit: int = 10,
) -> Tuple[List[RankedResult], SearchMeta]:
    """Section search re-ranked by the hybrid ranker.

    Each RankedResult wraps a DocSearchResult, so the owning library name
    travels with the section.
    """
    hits = docs.search_docs(query, library, topic, limit * 2)
    vectors = docs.section_embeddings(h.id for h in hits) if ranker.provider else {}
    ranked, mode = ranker.rank(query, [(h, h.relevance) for h in hits], vectors)
    ranked = ranked[:limit]
    return ranked, SearchMeta(search_mode=mode, query=query, total=len(ranked))


def backfill_section_embeddings(
    docs, provider: EmbeddingProvider, batch_size: int = 50,
) -> int:
    """Store vectors for every section that has none. Returns the count."""
    total = 0
    while True:
        batch = docs.missing_section_embeddings(batch_size)
        if not batch:
            break
        for section in batch:
            docs.store_section_embedding(
                section.id, provider.embed(section.text),
                getattr(provider, "model_name", ""),
            )
            total += 1
    if total:
        logger.info(f"Section embeddings backfilled: {total}")
    return total
