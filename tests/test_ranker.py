"""
Tests for kcache.ranker — blended scores, the similarity floor, text-only
degradation, the memory and documentation helpers (hybrid_search,
hybrid_search_docs, backfills) and concurrent searches.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import threading

import pytest

from kcache.config import KCacheConfig, ResolverConfig
from kcache.cache import KnowledgeCache
from kcache.docs import DocsCache
from kcache.memory import MemoryStore
from kcache.ranker import (
    HybridRanker,
    backfill_embeddings,
    backfill_section_embeddings,
    hybrid_search,
    hybrid_search_docs,
)
from kcache.types import MemoryRecord

from conftest import KeywordEmbedding

VOCAB = ["alpha", "beta", "gamma", "delta", "epsilon", "zeta", "eta"]


def _rec(title, description=""):
    return MemoryRecord(type="observation", title=title, description=description)


# ---------------------------------------------------------------------------
# rank()
# ---------------------------------------------------------------------------


class TestTextMode:
    def test_no_provider(self):
        a, b = _rec("a"), _rec("b")
        results, mode = HybridRanker().rank("q", [(a, 1.0), (b, 3.0)])
        assert mode == "text"
        assert [r.record for r in results] == [b, a]
        assert [r.score for r in results] == [3.0, 1.0]
        assert all(r.semantic_similarity is None for r in results)

    def test_provider_failure_degrades(self):
        provider = KeywordEmbedding(VOCAB, fail=True)
        a, b = _rec("alpha"), _rec("beta")
        results, mode = HybridRanker(provider).rank("alpha", [(a, 2.0), (b, 5.0)])
        assert mode == "text"
        assert [r.record for r in results] == [b, a]

    def test_empty_candidates(self):
        assert HybridRanker().rank("q", []) == ([], "text")
        assert HybridRanker(KeywordEmbedding(VOCAB)).rank("q", []) == ([], "hybrid")


class TestHybridMode:
    def test_semantic_reorders(self):
        provider = KeywordEmbedding(VOCAB)
        text_hit = _rec("alpha")
        meaning_hit = _rec("beta gamma")
        results, mode = HybridRanker(provider).rank(
            "beta gamma", [(text_hit, 10.0), (meaning_hit, 8.0)],
        )
        assert mode == "hybrid"
        assert results[0].record is meaning_hit
        assert results[0].score == pytest.approx(0.5 * 0.8 + 0.5 * 1.0)
        assert results[1].score == pytest.approx(0.5)
        assert results[1].semantic_similarity == 0.0

    def test_low_similarity_zeroed_not_dropped(self):
        provider = KeywordEmbedding(VOCAB)
        # one shared word out of four on each side: cosine 0.25
        weak = _rec("alpha epsilon zeta eta")
        results, _ = HybridRanker(provider).rank(
            "alpha beta gamma delta", [(weak, 4.0)],
        )
        assert len(results) == 1
        assert results[0].semantic_similarity == pytest.approx(0.25)
        assert results[0].score == pytest.approx(0.5)

    def test_similarity_at_floor_counts(self):
        provider = KeywordEmbedding(VOCAB)
        ranker = HybridRanker(provider, min_similarity=0.25)
        weak = _rec("alpha epsilon zeta eta")
        results, _ = ranker.rank("alpha beta gamma delta", [(weak, 4.0)])
        assert results[0].score == pytest.approx(0.5 + 0.5 * 0.25)

    def test_precomputed_vectors_used(self):
        provider = KeywordEmbedding(VOCAB)
        rec = _rec("unrelated words")
        vectors = {rec.id: provider.embed("alpha")}
        calls_before = provider.calls
        results, _ = HybridRanker(provider).rank("alpha", [(rec, 1.0)], vectors)
        # only the query is embedded
        assert provider.calls == calls_before + 1
        assert results[0].semantic_similarity == pytest.approx(1.0)

    def test_zero_text_relevance(self):
        provider = KeywordEmbedding(VOCAB)
        a, b = _rec("alpha"), _rec("beta")
        results, _ = HybridRanker(provider).rank("beta", [(a, 0.0), (b, 0.0)])
        assert results[0].record is b
        assert results[0].score == pytest.approx(0.5)
        assert results[1].score == 0.0

    def test_custom_weights(self):
        provider = KeywordEmbedding(VOCAB)
        a = _rec("alpha")
        ranker = HybridRanker(provider, bm25_weight=0.2, semantic_weight=0.8)
        results, _ = ranker.rank("alpha", [(a, 3.0)])
        assert results[0].score == pytest.approx(1.0)

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError):
            HybridRanker(bm25_weight=0.7, semantic_weight=0.7)


# ---------------------------------------------------------------------------
# Memory helpers
# ---------------------------------------------------------------------------


class TestMemoryHelpers:
    def test_hybrid_search_reports_modes(self, db):
        store = MemoryStore(db)
        store.save("decision", "alpha storage", description="beta")
        store.save("decision", "alpha caching", description="gamma")

        ranked, meta = hybrid_search(store, HybridRanker(), "alpha")
        assert meta.search_mode == "text"
        assert len(ranked) == 2

        provider = KeywordEmbedding(VOCAB)
        ranked, meta = hybrid_search(store, HybridRanker(provider), "alpha gamma")
        assert meta.search_mode == "hybrid"
        assert ranked[0].record.title == "alpha caching"

    def test_hybrid_search_limit(self, db):
        store = MemoryStore(db)
        for i in range(6):
            store.save("observation", f"alpha note {i}")
        ranked, meta = hybrid_search(store, HybridRanker(), "alpha", limit=3)
        assert len(ranked) == 3
        assert meta.total == 3

    def test_backfill(self, db):
        store = MemoryStore(db)
        for i in range(5):
            store.save("observation", f"alpha {i}")
        provider = KeywordEmbedding(VOCAB)
        assert backfill_embeddings(store, provider, batch_size=2) == 5
        assert store.missing_embeddings() == []
        assert backfill_embeddings(store, provider) == 0


class TestCacheWithProvider:
    @pytest.fixture
    def hybrid_cache(self, clock):
        config = KCacheConfig(resolver=ResolverConfig(enabled=False))
        c = KnowledgeCache(
            config=config, db_path=":memory:", clock=clock,
            provider=KeywordEmbedding(VOCAB),
        )
        yield c
        c.close()

    def test_save_stores_embedding(self, hybrid_cache):
        m = hybrid_cache.save_memory("decision", "alpha beta")
        assert m.has_embedding is True
        assert hybrid_cache.memories.get_embedding(m.id) is not None

    def test_embedding_failure_keeps_record(self, hybrid_cache):
        hybrid_cache.ranker.provider.fail = True
        m = hybrid_cache.save_memory("decision", "alpha beta")
        assert hybrid_cache.memories.get(m.id) is not None
        assert m.has_embedding is False

    def test_search_is_hybrid(self, hybrid_cache):
        hybrid_cache.save_memory("decision", "alpha beta")
        _, meta = hybrid_cache.search_memory("alpha")
        assert meta.search_mode == "hybrid"

    def test_backfill_through_facade(self, hybrid_cache, cache):
        hybrid_cache.memories.save("decision", "saved without vector")
        assert hybrid_cache.backfill_embeddings() == 1
        # without a provider there is nothing to do
        cache.save_memory("decision", "x")
        assert cache.backfill_embeddings() == 0

    def test_save_section_stores_embedding(self, hybrid_cache):
        hybrid_cache.save_library("/facebook/react", "react")
        sec = hybrid_cache.save_section("/facebook/react", "Hooks", "alpha beta")
        assert set(hybrid_cache.docs.section_embeddings([sec.id])) == {sec.id}

    def test_section_embedding_failure_keeps_section(self, hybrid_cache):
        hybrid_cache.ranker.provider.fail = True
        hybrid_cache.save_library("/facebook/react", "react")
        sec = hybrid_cache.save_section("/facebook/react", "Hooks", "alpha beta")
        assert [s.id for s in hybrid_cache.docs.get_sections("/facebook/react")] == [sec.id]
        assert hybrid_cache.docs.section_embeddings([sec.id]) == {}

    def test_docs_search_is_hybrid(self, hybrid_cache):
        hybrid_cache.save_library("/facebook/react", "react")
        hybrid_cache.save_section("/facebook/react", "Hooks", "alpha beta")
        ranked, meta = hybrid_cache.hybrid_search_docs("alpha")
        assert meta.search_mode == "hybrid"
        assert ranked[0].record.library_name == "react"


# ---------------------------------------------------------------------------
# Documentation helpers
# ---------------------------------------------------------------------------


class TestDocsHelpers:
    @pytest.fixture
    def docs(self, db):
        d = DocsCache(db)
        d.save_library("/facebook/react", "react")
        return d

    def test_text_mode_without_provider(self, docs):
        docs.save_section("/facebook/react", "One", "gamma words")
        ranked, meta = hybrid_search_docs(docs, HybridRanker(), "gamma")
        assert meta.search_mode == "text"
        assert meta.total == 1
        assert ranked[0].record.section.title == "One"
        assert ranked[0].semantic_similarity is None

    def test_stored_vectors_drive_ranking(self, db, docs):
        if not db.fts5_available:
            pytest.skip("FTS5 not compiled into this SQLite build")
        provider = KeywordEmbedding(VOCAB)
        one = docs.save_section("/facebook/react", "One", "gamma words")
        docs.save_section("/facebook/react", "Two", "gamma delta")
        docs.store_section_embedding(one.id, provider.embed("epsilon"))
        ranked, meta = hybrid_search_docs(docs, HybridRanker(provider), "gamma delta")
        assert meta.search_mode == "hybrid"
        assert [r.record.section.title for r in ranked] == ["Two", "One"]
        assert ranked[1].semantic_similarity == 0.0

    def test_filters_and_limit(self, docs):
        docs.save_library("/colinhacks/zod", "zod")
        for i in range(4):
            docs.save_section("/facebook/react", f"R{i}", "gamma")
        docs.save_section("/colinhacks/zod", "Z", "gamma")
        ranked, _ = hybrid_search_docs(docs, HybridRanker(), "gamma", library="zod")
        assert [r.record.library_name for r in ranked] == ["zod"]
        ranked, meta = hybrid_search_docs(docs, HybridRanker(), "gamma", limit=2)
        assert len(ranked) == meta.total == 2

    def test_backfill_sections(self, docs):
        for i in range(3):
            docs.save_section("/facebook/react", f"S{i}", f"alpha {i}")
        provider = KeywordEmbedding(VOCAB)
        assert backfill_section_embeddings(docs, provider, batch_size=2) == 3
        assert docs.missing_section_embeddings() == []
        assert docs.stats()["embeddings_count"] == 3
        assert backfill_section_embeddings(docs, provider) == 0


# ---------------------------------------------------------------------------
# Concurrent searches
# ---------------------------------------------------------------------------


class TestConcurrentSearches:
    def test_each_call_gets_its_own_meta(self, db):
        store = MemoryStore(db)
        for i in range(3):
            store.save("observation", f"alpha note {i}")
        store.save("observation", "beta note")
        errors = []
        barrier = threading.Barrier(2)

        def run(query, expected):
            barrier.wait()
            for _ in range(50):
                ranked, meta = hybrid_search(store, HybridRanker(), query)
                if meta.query != query or meta.total != expected or len(ranked) != expected:
                    errors.append((query, meta.query, meta.total, len(ranked)))

        threads = [
            threading.Thread(target=run, args=("alpha", 3)),
            threading.Thread(target=run, args=("beta", 1)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
