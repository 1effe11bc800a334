"""
Tests for kcache.resolver and kcache.registry — deterministic scoring,
confidence threshold, lookup order and persistence of dynamic results.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import pytest

from kcache.errors import ResolutionBackendError
from kcache.registry import (
    DEFAULT_MAPPINGS,
    LibraryRegistry,
    match_default,
    normalize_name,
)
from kcache.resolver import (
    MIN_CONFIDENCE_THRESHOLD,
    LibraryResolver,
    pick_best,
    rank_candidates,
    score_candidate,
)
from kcache.types import RemoteCandidate


class FakeSearchClient:
    """Returns canned candidates and counts calls."""

    def __init__(self, candidates=None, error=None):
        self.candidates = list(candidates or [])
        self.error = error
        self.calls = []

    def search(self, query):
        self.calls.append(query)
        if self.error is not None:
            raise self.error
        return list(self.candidates)


POPULAR = RemoteCandidate(id="/popular/lib", title="popular", stars=100, total_snippets=50)
DOCUMENTED = RemoteCandidate(id="/documented/lib", title="documented", stars=10, total_snippets=500)
STRONG = RemoteCandidate(
    id="/strong/lib", title="strong", stars=50_000, total_snippets=3_000,
    trust_score=9.0, benchmark_score=80.0,
)


@pytest.fixture
def registry(db):
    return LibraryRegistry(db)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class TestScoring:
    def test_reference_values(self):
        assert score_candidate(POPULAR) == pytest.approx(0.2897, abs=1e-4)
        assert score_candidate(DOCUMENTED) == pytest.approx(0.3091, abs=1e-4)

    def test_higher_composite_wins_repeatedly(self):
        for _ in range(5):
            best, _score = pick_best([POPULAR, DOCUMENTED])
            assert best.id == "/documented/lib"

    def test_below_threshold_is_no_match(self):
        assert score_candidate(POPULAR) < MIN_CONFIDENCE_THRESHOLD
        assert pick_best([POPULAR]) is None

    def test_empty_candidates(self):
        assert pick_best([]) is None

    def test_signals_saturate(self):
        huge = RemoteCandidate(
            id="/x", stars=10**9, total_snippets=10**9,
            trust_score=50.0, benchmark_score=1000.0,
        )
        assert score_candidate(huge) == pytest.approx(1.0)

    def test_missing_signals_count_zero(self):
        assert score_candidate(RemoteCandidate(id="/bare")) == 0.0
        assert score_candidate(RemoteCandidate(id="/neg", stars=-5)) == 0.0

    def test_ties_keep_remote_order(self):
        a = RemoteCandidate(id="/a", stars=1000, total_snippets=1000)
        b = RemoteCandidate(id="/b", stars=1000, total_snippets=1000)
        assert [c.id for c, _ in rank_candidates([a, b])] == ["/a", "/b"]
        assert [c.id for c, _ in rank_candidates([b, a])] == ["/b", "/a"]


# ---------------------------------------------------------------------------
# Static table
# ---------------------------------------------------------------------------


class TestDefaults:
    def test_normalize(self):
        assert normalize_name("  Next.JS ") == "next.js"
        assert normalize_name(None) == ""

    @pytest.mark.parametrize("name,expected", [
        ("next", "/vercel/next.js"),
        ("Next.js", "/vercel/next.js"),
        ("@next/font", "/vercel/next.js"),
        ("@prisma/client", "/prisma/prisma"),
        ("react-native", "/facebook/react-native"),
        ("@tanstack/react-query", "/tanstack/query"),
    ])
    def test_match(self, name, expected):
        mapping = match_default(name)
        assert mapping.canonical_id == expected
        assert mapping.source == "default"
        assert mapping.confidence == 1.0

    def test_no_match(self):
        assert match_default("left-pad") is None
        assert match_default("") is None


# ---------------------------------------------------------------------------
# Resolver lookup order
# ---------------------------------------------------------------------------


class TestResolve:
    def test_default_skips_remote(self, registry):
        client = FakeSearchClient([STRONG])
        mapping = LibraryResolver(registry, client).resolve("React")
        assert mapping.canonical_id == "/facebook/react"
        assert client.calls == []

    def test_no_client_no_match(self, registry):
        assert LibraryResolver(registry).resolve("left-pad") is None

    def test_empty_name(self, registry):
        client = FakeSearchClient([STRONG])
        assert LibraryResolver(registry, client).resolve("   ") is None
        assert client.calls == []

    def test_remote_result_persisted(self, registry):
        client = FakeSearchClient([POPULAR, STRONG])
        resolver = LibraryResolver(registry, client)
        first = resolver.resolve("  Strong-Lib ")
        assert first.canonical_id == "/strong/lib"
        assert first.source == "api"
        assert client.calls == ["strong-lib"]

        second = resolver.resolve("strong-lib")
        assert second.canonical_id == "/strong/lib"
        assert second.source == "cache"
        assert len(client.calls) == 1

    def test_cache_survives_new_resolver(self, registry):
        LibraryResolver(registry, FakeSearchClient([STRONG])).resolve("strong-lib")
        mapping = LibraryResolver(registry).resolve("strong-lib")
        assert mapping.canonical_id == "/strong/lib"

    def test_low_confidence_not_persisted(self, registry):
        client = FakeSearchClient([POPULAR])
        resolver = LibraryResolver(registry, client)
        assert resolver.resolve("popular") is None
        assert registry.get_mapping("popular") is None
        resolver.resolve("popular")
        assert len(client.calls) == 2

    def test_backend_error_is_no_match(self, registry):
        client = FakeSearchClient(error=ResolutionBackendError("remote_search", "HTTP 503"))
        assert LibraryResolver(registry, client).resolve("left-pad") is None

    def test_custom_threshold(self, registry):
        client = FakeSearchClient([POPULAR])
        mapping = LibraryResolver(registry, client, min_confidence=0.2).resolve("popular")
        assert mapping.canonical_id == "/popular/lib"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_seed_idempotent(self, registry):
        first = registry.seed_defaults()
        total_patterns = sum(len(e["patterns"]) for e in DEFAULT_MAPPINGS)
        assert first["mappings"] == total_patterns
        assert first["topics"] > 0
        assert registry.seed_defaults() == {"mappings": 0, "topics": 0}

    def test_seeded_mapping_reports_default(self, registry):
        registry.seed_defaults()
        assert registry.get_mapping("zod").source == "default"

    def test_save_mapping_normalizes(self, registry):
        registry.save_mapping(" Left-Pad ", "/left/pad", "left-pad", is_manual=True)
        assert registry.get_mapping("left-pad").canonical_id == "/left/pad"
        assert registry.stats()["manual"] == 1

    def test_save_mapping_replaces(self, registry):
        registry.save_mapping("lib", "/a/lib", "lib")
        registry.save_mapping("lib", "/b/lib", "lib")
        assert registry.get_mapping("lib").canonical_id == "/b/lib"
        assert registry.stats()["mappings"] == 1

    def test_empty_name_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.save_mapping("  ", "/a/lib", "lib")

    def test_topics_by_usage(self, registry, clock):
        registry.seed_defaults()
        registry.record_topic("/facebook/react", "state")
        registry.record_topic("/facebook/react", "state")
        registry.record_topic("/facebook/react", "suspense")
        topics = registry.get_topics("/facebook/react")
        assert topics[0].topic == "state"
        assert topics[0].usage_count == 2
        assert topics[0].is_default is True
        suspense = next(t for t in topics if t.topic == "suspense")
        assert suspense.is_default is False
        assert suspense.last_used_at_epoch == clock.now

    def test_clear(self, registry):
        registry.seed_defaults()
        registry.clear()
        assert registry.stats()["mappings"] == 0
        assert registry.stats()["topics"] == 0
