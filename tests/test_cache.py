"""
End-to-end tests through the KnowledgeCache facade.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import pytest

from kcache import KnowledgeCache, NotFound, SCHEMA_VERSION
from kcache.config import KCacheConfig, DocsConfig, MemoryConfig, ResolverConfig
from kcache.remote import API_KEY_ENV
from kcache.types import MemoryFilters, RemoteCandidate

from conftest import DAY


class StubClient:
    def __init__(self, candidates):
        self.candidates = candidates
        self.calls = 0

    def search(self, query):
        self.calls += 1
        return list(self.candidates)


class TestDocsLifecycle:
    def test_save_search_expire_sweep(self, cache, clock):
        cache.save_library("/vercel/next.js", "next.js", "14.1.0")
        cache.save_section(
            "/vercel/next.js", "App Router",
            "The App Router supports layouts and nested routes.",
            code_snippets=["export default function Layout() {}", "app/page.tsx"],
        )
        hits = cache.search_docs("app router")
        assert len(hits) == 1
        assert hits[0].section.title == "App Router"
        assert hits[0].relevance > 0
        assert len(hits[0].section.code_snippets) == 2

        clock.advance(7 * DAY + 1)
        expired = cache.list_libraries(expired_only=True)
        assert [lib.external_id for lib in expired] == ["/vercel/next.js"]

        assert cache.sweep_expired_docs() == {"libraries_deleted": 1, "sections_deleted": 1}
        assert cache.list_libraries() == []
        assert cache.search_docs("app router") == []

    def test_custom_ttl(self, clock):
        config = KCacheConfig(docs=DocsConfig(ttl_days=1), resolver=ResolverConfig(enabled=False))
        with KnowledgeCache(config=config, db_path=":memory:", clock=clock) as kc:
            kc.save_library("/colinhacks/zod", "zod")
            clock.advance(DAY + 1)
            assert len(kc.list_libraries(expired_only=True)) == 1

    def test_section_for_unknown_library(self, cache):
        with pytest.raises(NotFound):
            cache.save_section("/nope/nope", "t", "c")

    def test_delete_library(self, cache):
        cache.save_library("/facebook/react", "react")
        cache.save_section("/facebook/react", "Hooks", "useEffect")
        assert cache.delete_library("/facebook/react")["sections_deleted"] == 1


class TestMemoryLifecycle:
    def test_save_search_recent(self, cache, clock):
        cache.save_memory("decision", "Adopt zod for validation", project="shop",
                          tags=["validation"])
        clock.advance(1)
        cache.save_memory("pattern", "Parse at the validation boundary")
        ranked, meta = cache.search_memory("validation", MemoryFilters(project="shop"))
        assert meta.search_mode == "text"
        assert meta.total == len(ranked) == 2
        recent = cache.recent_memory(project="shop", limit=1)
        assert [m.title for m in recent] == ["Parse at the validation boundary"]

    def test_supersession_chain(self, cache):
        old = cache.save_memory("decision", "Use REST")
        new = cache.save_memory("decision", "Use tRPC")
        cache.create_link(new.id, old.id, "supersedes")
        chain = cache.traverse_chain(new.id, "forward", 2)
        assert [(n.memory.id, n.depth) for n in chain] == [(old.id, 1)]
        superseded = cache.list_superseded()
        assert superseded[0].memory.id == old.id
        assert superseded[0].superseded_by == [new.id]
        assert cache.delete_link(new.id, old.id) == 1
        assert cache.list_superseded() == []


class TestResolution:
    def test_default_mapping(self, cache):
        assert cache.resolve_library_id("Next.js").canonical_id == "/vercel/next.js"

    def test_unknown_without_client(self, cache):
        assert cache.resolve_library_id("left-pad") is None

    def test_injected_client(self, clock):
        client = StubClient([RemoteCandidate(id="/sindresorhus/ky", title="ky",
                                             stars=12000, total_snippets=800)])
        with KnowledgeCache(db_path=":memory:", client=client, clock=clock) as kc:
            assert kc.resolve_library_id("ky").canonical_id == "/sindresorhus/ky"
            assert kc.resolve_library_id("ky").source == "cache"
            assert client.calls == 1

    def test_disabled_resolver_ignores_client(self, clock):
        client = StubClient([RemoteCandidate(id="/a/b", stars=10**6, total_snippets=10**5)])
        config = KCacheConfig(resolver=ResolverConfig(enabled=False))
        with KnowledgeCache(config=config, db_path=":memory:", client=client, clock=clock) as kc:
            assert kc.resolve_library_id("b") is None
        assert client.calls == 0

    def test_no_api_key_no_client(self, monkeypatch, clock):
        monkeypatch.delenv(API_KEY_ENV, raising=False)
        with KnowledgeCache(db_path=":memory:", clock=clock) as kc:
            assert kc.client is None


class TestFacade:
    def test_stats(self, cache):
        cache.save_library("/facebook/react", "react")
        cache.save_memory("decision", "x")
        stats = cache.stats()
        assert stats["schema_version"] == SCHEMA_VERSION
        assert stats["docs"]["total_libraries"] == 1
        assert stats["memories"]["total_memories"] == 1
        assert stats["links"]["total"] == 0
        assert stats["registry"]["mappings"] > 0

    def test_initialize_idempotent(self, cache):
        assert cache.initialize() == {"mappings": 0, "topics": 0}

    def test_persistence_across_instances(self, tmp_path, clock):
        path = str(tmp_path / "cache.db")
        config = KCacheConfig(resolver=ResolverConfig(enabled=False))
        with KnowledgeCache(config=config, db_path=path, clock=clock) as kc:
            kc.save_library("/colinhacks/zod", "zod")
            mem = kc.save_memory("bugfix", "Fix parse error")
        with KnowledgeCache(config=config, db_path=path, clock=clock) as kc:
            assert kc.list_libraries()[0].external_id == "/colinhacks/zod"
            assert kc.memories.get(mem.id).title == "Fix parse error"

    def test_close(self, clock):
        kc = KnowledgeCache(
            KCacheConfig(resolver=ResolverConfig(enabled=False)),
            db_path=":memory:", clock=clock,
        )
        kc.close()
        assert kc.closed


class TestLimits:
    def test_zero_limit_returns_nothing(self, cache):
        cache.save_library("/facebook/react", "react")
        for i in range(12):
            cache.save_section("/facebook/react", f"Hooks {i}", "useEffect hook")
            cache.save_memory("observation", f"hook note {i}")
        assert cache.search_docs("hook", limit=0) == []
        ranked, meta = cache.search_memory("hook", limit=0)
        assert ranked == []
        assert meta.total == 0
        assert cache.hybrid_search_docs("hook", limit=0)[0] == []
        assert cache.smart_search_memory("hook", limit=0) == []

    def test_none_uses_configured_default(self, cache):
        cache.save_library("/facebook/react", "react")
        for i in range(12):
            cache.save_section("/facebook/react", f"Hooks {i}", "useEffect hook")
        assert len(cache.search_docs("hook")) == cache.config.search.default_limit


class TestMemoryFeatures:
    def test_auto_enrich_from_config(self, clock):
        config = KCacheConfig(
            resolver=ResolverConfig(enabled=False), memory=MemoryConfig(auto_enrich=True),
        )
        with KnowledgeCache(config=config, db_path=":memory:", clock=clock) as kc:
            m = kc.save_memory("decision", "Use redis cache", description="urgent")
            assert "cache" in m.tags
            assert m.importance == "critical"
            plain = kc.save_memory("decision", "Use redis cache", auto_enrich=False)
            assert plain.tags == []

    def test_auto_enrich_off_by_default(self, cache):
        m = cache.save_memory("decision", "Use redis cache")
        assert m.tags == []

    def test_consolidation_uses_config(self, cache, clock):
        old = cache.save_memory("observation", "old note", importance="low", project="p")
        clock.advance(100 * DAY)
        assert [m.id for m in cache.find_stale_memories("p")] == [old.id]
        # cleanup threshold (180 days) not reached yet
        assert cache.cleanup_stale_memories("p", dry_run=False)["count"] == 0
        assert cache.consolidation_report("p")["stale_count"] == 1

    def test_merge_through_facade(self, cache):
        keep = cache.save_memory("decision", "Use zod", tags=["zod"])
        other = cache.save_memory("decision", "Use zod schemas", tags=["schema"])
        merged = cache.merge_memories(keep.id, other.id)
        assert merged.tags == ["zod", "schema"]
        assert [s.memory.id for s in cache.list_superseded()] == [other.id]

    def test_merge_unknown(self, cache):
        keep = cache.save_memory("decision", "Use zod")
        with pytest.raises(NotFound):
            cache.merge_memories(keep.id, "MEM-missing")

    def test_smart_shortcuts(self, cache):
        crit = cache.save_memory("bugfix", "never skip migrations", importance="critical",
                                 project="p")
        decision = cache.save_memory("decision", "adopt zod", project="p")
        assert [r.memory.id for r in cache.critical_memories("p")] == [crit.id]
        assert [r.memory.id for r in cache.recent_decisions("p")] == [decision.id]
