"""
KnowledgeCache — the facade constructed once at startup

Wires every component (docs cache, memory store, link graph, library
registry and resolver, hybrid ranker) to one Database handle.  Outer
surfaces (CLI, MCP tools) call into the core only through this object.

Usage:
    with KnowledgeCache(db_path=".kcache/cache.db") as cache:
        cache.initialize()
        cache.save_library("/vercel/next.js", "Next.js")
        hits = cache.search_docs("routing", library="Next.js")

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from kcache.config import KCacheConfig
from kcache.db import Database
from kcache.docs import DocsCache
from kcache.links import LinkGraph
from kcache.memory import MemoryStore
from kcache import smart
from kcache.ranker import (
    EmbeddingProvider,
    HybridRanker,
    backfill_embeddings,
    backfill_section_embeddings,
    hybrid_search,
    hybrid_search_docs,
)
from kcache.registry import LibraryRegistry
from kcache.remote import Context7Client
from kcache.resolver import LibraryResolver, SearchClient
from kcache.types import (
    ChainNode,
    DocSearchResult,
    LibraryRecord,
    LinkRecord,
    MemoryFilters,
    MemoryRecord,
    RankedResult,
    ResolutionMapping,
    SearchMeta,
    SectionRecord,
    SimilarityMatch,
    SmartSearchResult,
    SupersededRecord,
)

logger = logging.getLogger(__name__)


class KnowledgeCache:
    """Context object owning the storage handle and every component."""

    def __init__(
        self,
        config: Optional[KCacheConfig] = None,
        db_path: Optional[str] = None,
        client: Optional[SearchClient] = None,
        provider: Optional[EmbeddingProvider] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            config: Full configuration (defaults when None).
            db_path: Overrides ``config.store.db_path``.
            client: Remote search client for the resolver.  When None and
                the resolver is enabled, one is built from the API key
                (config or $CONTEXT7_API_KEY); without a key, resolution
                stays local.
            provider: Optional embedding capability for hybrid search.
            clock: Epoch-seconds source passed to the handle.
        """
        self.config = config or KCacheConfig()
        store_cfg = self.config.store
        self.db = Database(
            db_path or store_cfg.db_path,
            wal_mode=store_cfg.wal_mode,
            fts_tokenizer=store_cfg.fts_tokenizer,
            backup_on_migrate=store_cfg.backup_on_migrate,
            max_backups=store_cfg.max_backups,
            clock=clock,
        )
        search_cfg = self.config.search
        self.docs = DocsCache(
            self.db,
            ttl_seconds=self.config.docs.ttl_days * 86400,
            fallback_relevance=search_cfg.fallback_relevance,
        )
        self.memories = MemoryStore(self.db, search_cfg.fallback_relevance)
        self.links = LinkGraph(self.db, self.memories)
        self.registry = LibraryRegistry(self.db)

        resolver_cfg = self.config.resolver
        self._owns_client = False
        if client is None and resolver_cfg.enabled:
            client = Context7Client.from_env(
                api_key=resolver_cfg.api_key,
                base_url=resolver_cfg.api_url,
                timeout=resolver_cfg.timeout,
            )
            self._owns_client = client is not None
        self.client = client if resolver_cfg.enabled else None
        self.resolver = LibraryResolver(
            self.registry, self.client, resolver_cfg.min_confidence,
        )
        self.ranker = HybridRanker(
            provider,
            bm25_weight=search_cfg.bm25_weight,
            semantic_weight=search_cfg.semantic_weight,
            min_similarity=search_cfg.min_similarity,
        )

    # -- Lifecycle ---------------------------------------------------------

    def initialize(self) -> Dict[str, int]:
        """Seed the static library registry (idempotent)."""
        seeded = self.registry.seed_defaults()
        logger.info(
            f"Registry seeded: {seeded['mappings']} mappings, {seeded['topics']} topics"
        )
        return seeded

    @property
    def closed(self) -> bool:
        return self.db.closed

    def close(self) -> None:
        if self._owns_client and self.client is not None:
            self.client.close()
        self.db.close()

    def __enter__(self) -> KnowledgeCache:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- Documentation -----------------------------------------------------

    def save_library(
        self, external_id: str, display_name: str, version: Optional[str] = None,
    ) -> LibraryRecord:
        return self.docs.save_library(external_id, display_name, version)

    def save_section(
        self,
        external_id: str,
        title: str,
        content: str,
        code_snippets: Optional[Iterable[str]] = None,
        page_number: int = 1,
        topic: Optional[str] = None,
    ) -> SectionRecord:
        """Store a section; an embedding is stored when a provider is set."""
        section = self.docs.save_section(
            external_id, title, content, code_snippets, page_number, topic,
        )
        vector = self._embed(section.id, section.text)
        if vector is not None:
            self.docs.store_section_embedding(
                section.id, vector, getattr(self.ranker.provider, "model_name", ""),
            )
        return section

    def search_docs(
        self,
        query: str,
        library: Optional[str] = None,
        topic: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[DocSearchResult]:
        return self.docs.search_docs(query, library, topic, self._limit(limit))

    def hybrid_search_docs(
        self,
        query: str,
        library: Optional[str] = None,
        topic: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Tuple[List[RankedResult], SearchMeta]:
        """Section search through the hybrid ranker (text-only without provider)."""
        return hybrid_search_docs(
            self.docs, self.ranker, query, library, topic, self._limit(limit),
        )

    def backfill_section_embeddings(self, batch_size: int = 50) -> int:
        if self.ranker.provider is None:
            return 0
        return backfill_section_embeddings(self.docs, self.ranker.provider, batch_size)

    def list_libraries(self, expired_only: bool = False) -> List[LibraryRecord]:
        return self.docs.list_libraries(expired_only)

    def delete_library(self, external_id: str) -> Dict[str, int]:
        return self.docs.delete_library(external_id)

    def sweep_expired_docs(self) -> Dict[str, int]:
        return self.docs.sweep_expired()

    # -- Memory ------------------------------------------------------------

    def save_memory(self, type: str, title: str, **fields: Any) -> MemoryRecord:
        """Create a memory; an embedding is stored when a provider is set.

        ``auto_enrich`` defaults to ``config.memory.auto_enrich``.
        """
        fields.setdefault("auto_enrich", self.config.memory.auto_enrich)
        record = self.memories.save(type, title, **fields)
        vector = self._embed(record.id, record.text)
        if vector is not None:
            self.memories.store_embedding(
                record.id, vector, getattr(self.ranker.provider, "model_name", ""),
            )
            record.has_embedding = True
        return record

    def search_memory(
        self,
        query: str,
        filters: Optional[MemoryFilters] = None,
        limit: Optional[int] = None,
    ) -> Tuple[List[RankedResult], SearchMeta]:
        """Memory search through the hybrid ranker (text-only without provider)."""
        return hybrid_search(
            self.memories, self.ranker, query, filters, self._limit(limit),
        )

    def smart_search_memory(
        self,
        query: str = "",
        filters: Optional[MemoryFilters] = None,
        limit: Optional[int] = None,
        **context: Any,
    ) -> List[SmartSearchResult]:
        """Context-aware memory ranking (see smart.py for the factors)."""
        return smart.smart_search(
            self.memories, query, filters, self._limit(limit), **context,
        )

    def critical_memories(
        self, project: Optional[str] = None, limit: int = 3,
    ) -> List[SmartSearchResult]:
        return smart.critical_memories(self.memories, project, limit)

    def recent_decisions(
        self, project: Optional[str] = None, feature: Optional[str] = None, limit: int = 5,
    ) -> List[SmartSearchResult]:
        return smart.recent_decisions(self.memories, project, feature, limit)

    def recent_memory(
        self,
        project: Optional[str] = None,
        limit: int = 10,
        type: Optional[str] = None,
    ) -> List[MemoryRecord]:
        return self.memories.recent(project=project, limit=limit, type=type)

    def backfill_embeddings(self, batch_size: int = 50) -> int:
        if self.ranker.provider is None:
            return 0
        return backfill_embeddings(self.memories, self.ranker.provider, batch_size)

    # -- Consolidation -----------------------------------------------------

    def find_similar_memories(
        self, project: Optional[str] = None, threshold: Optional[float] = None, limit: int = 20,
    ) -> List[SimilarityMatch]:
        if threshold is None:
            threshold = self.config.memory.similarity_threshold
        return self.memories.find_similar(project, threshold, limit)

    def find_stale_memories(
        self, project: Optional[str] = None, max_age_days: Optional[float] = None, limit: int = 20,
    ) -> List[MemoryRecord]:
        if max_age_days is None:
            max_age_days = self.config.memory.stale_days
        return self.memories.find_stale(project, max_age_days, limit)

    def merge_memories(self, keep_id: str, other_id: str) -> MemoryRecord:
        return self.memories.merge(keep_id, other_id)

    def cleanup_stale_memories(
        self,
        project: Optional[str] = None,
        max_age_days: Optional[float] = None,
        dry_run: bool = True,
    ) -> Dict[str, Any]:
        if max_age_days is None:
            max_age_days = self.config.memory.cleanup_days
        return self.memories.cleanup_stale(project, max_age_days, dry_run)

    def consolidation_report(self, project: Optional[str] = None) -> Dict[str, Any]:
        mem_cfg = self.config.memory
        return self.memories.consolidation_report(
            project, mem_cfg.similarity_threshold, mem_cfg.stale_days,
        )

    # -- Links -------------------------------------------------------------

    def create_link(self, from_id: str, to_id: str, link_type: str) -> LinkRecord:
        return self.links.create_link(from_id, to_id, link_type)

    def delete_link(
        self, from_id: str, to_id: str, link_type: Optional[str] = None,
    ) -> int:
        return self.links.delete_link(from_id, to_id, link_type)

    def traverse_chain(
        self, start_id: str, direction: str = "forward", max_depth: int = 3,
    ) -> List[ChainNode]:
        return self.links.traverse(start_id, direction, max_depth)

    def list_superseded(self, project: Optional[str] = None) -> List[SupersededRecord]:
        return self.links.list_superseded(project)

    # -- Resolution --------------------------------------------------------

    def resolve_library_id(self, name: str) -> Optional[ResolutionMapping]:
        return self.resolver.resolve(name)

    # -- Stats -------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        return {
            "db_path": self.db.db_path,
            "schema_version": self.db.schema_version,
            "fts5": self.db.fts5_available,
            "docs": self.docs.stats(),
            "memories": self.memories.stats(),
            "links": self.links.stats(),
            "registry": self.registry.stats(),
        }

    # -- Internal helpers --------------------------------------------------

    def _limit(self, limit: Optional[int]) -> int:
        return self.config.search.default_limit if limit is None else limit

    def _embed(self, record_id: str, text: str):
        """Vector for ``text``, or None without a provider or on failure."""
        provider = self.ranker.provider
        if provider is None:
            return None
        try:
            return provider.embed(text)
        except Exception as exc:
            # Embeddings are optional: the record is kept without one.
            logger.warning(f"Embedding failed for {record_id}: {exc}")
            return None
