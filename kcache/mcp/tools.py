"""
kcache MCP Tools — 11 knowledge cache tools for MCP integration.

Thin wrappers around KnowledgeCache.  Every tool returns a dict with a
``status`` key; structured failures come back as

    {"status": "error", "error": {"code", "operation", "reason", "details"}}

Tool hierarchy:
    DOCS:     docs_search, docs_list, docs_sweep
    RESOLVE:  library_resolve
    MEMORY:   memory_save, memory_search, memory_recent
    GRAPH:    memory_link, memory_chain, memory_superseded
    ADMIN:    cache_stats

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from kcache.cache import KnowledgeCache
from kcache.errors import KCacheError
from kcache.types import MemoryFilters

logger = logging.getLogger(__name__)


def _csv(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [v.strip() for v in value.split(",") if v.strip()]


def _error(tool: str, exc: Exception) -> Dict[str, Any]:
    """Uniform error payload; KCacheError keeps its structure."""
    if isinstance(exc, KCacheError):
        return {"status": "error", "error": exc.to_dict()}
    if isinstance(exc, ValueError):
        return {
            "status": "error",
            "error": {
                "code": "invalid_argument", "operation": tool,
                "reason": str(exc), "details": {},
            },
        }
    logger.exception(f"[mcp] {tool} failed")
    return {"status": "error", "message": f"{tool} failed: {exc}"}


def register_cache_tools(mcp, cache: KnowledgeCache) -> None:
    """
    Register all 11 knowledge cache MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance (anything with a ``tool()`` decorator).
        cache: Open KnowledgeCache shared by every tool.
    """

    # =====================================================================
    # DOCS
    # =====================================================================

    @mcp.tool()
    def docs_search(
        query: str,
        library: Optional[str] = None,
        topic: Optional[str] = None,
        k: int = 10,
    ) -> Dict[str, Any]:
        """Search cached library documentation.

        Args:
            query: Search text (FTS5 BM25 ranked, substring fallback).
            library: Restrict to one library (display name or canonical id).
            topic: Restrict to sections fetched for this topic.
            k: Max results (default 10).

        Returns:
            count, results [{section, library_name, relevance}].
        """
        try:
            hits = cache.search_docs(query, library=library, topic=topic, limit=k)
            return {
                "status": "ok",
                "count": len(hits),
                "results": [h.to_dict() for h in hits],
            }
        except Exception as e:
            return _error("docs_search", e)

    @mcp.tool()
    def docs_list(expired_only: bool = False) -> Dict[str, Any]:
        """List cached libraries with their expiry state."""
        try:
            libs = cache.list_libraries(expired_only)
            return {
                "status": "ok",
                "count": len(libs),
                "libraries": [lib.to_dict() for lib in libs],
            }
        except Exception as e:
            return _error("docs_list", e)

    @mcp.tool()
    def docs_sweep() -> Dict[str, Any]:
        """Delete expired libraries and their sections."""
        try:
            return {"status": "ok", **cache.sweep_expired_docs()}
        except Exception as e:
            return _error("docs_sweep", e)

    # =====================================================================
    # RESOLVE
    # =====================================================================

    @mcp.tool()
    def library_resolve(name: str) -> Dict[str, Any]:
        """Resolve a package or library name to its canonical documentation id.

        Static defaults first, then cached resolutions, then the remote
        search service when configured.  ``status`` is ``not_found`` when no
        candidate reaches the confidence threshold.
        """
        try:
            mapping = cache.resolve_library_id(name)
            if mapping is None:
                return {"status": "not_found", "name": name}
            return {"status": "ok", **mapping.to_dict()}
        except Exception as e:
            return _error("library_resolve", e)

    # =====================================================================
    # MEMORY
    # =====================================================================

    @mcp.tool()
    def memory_save(
        type: str,
        title: str,
        description: str = "",
        importance: Optional[str] = None,
        tags: Optional[str] = None,
        files: Optional[str] = None,
        features: Optional[str] = None,
        scope: Optional[str] = None,
        project: Optional[str] = None,
        auto_enrich: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Record a memory (observation, decision, bugfix, pattern, ...).

        Args:
            type: observation|decision|bugfix|feature|pattern|library-note|snippet|anti-pattern.
            title: Short title.
            description: Body text.
            importance: low|medium|high|critical (default medium).
            tags: Comma-separated tags.
            files: Comma-separated related file paths.
            features: Comma-separated feature names.
            scope: project|global (default inferred from type).
            project: Project the memory belongs to.
            auto_enrich: Infer missing tags, features, files and importance
                from the text (default from config).
        """
        try:
            extra = {} if auto_enrich is None else {"auto_enrich": auto_enrich}
            mem = cache.save_memory(
                type, title,
                description=description,
                importance=importance,
                tags=_csv(tags),
                files=_csv(files),
                features=_csv(features),
                scope=scope,
                project=project,
                **extra,
            )
            return {"status": "ok", "memory": mem.to_dict()}
        except Exception as e:
            return _error("memory_save", e)

    @mcp.tool()
    def memory_search(
        query: str,
        project: Optional[str] = None,
        type_filter: Optional[str] = None,
        scope: Optional[str] = None,
        tags: Optional[str] = None,
        include_global: bool = True,
        k: int = 10,
    ) -> Dict[str, Any]:
        """Search memories; hybrid ranking when embeddings are available.

        An empty query returns the most recent memories.
        """
        try:
            filters = MemoryFilters(
                project=project,
                include_global=include_global,
                scope=scope,
                type=type_filter,
                tags=_csv(tags),
            )
            ranked, meta = cache.search_memory(query, filters, k)
            return {
                "status": "ok",
                "count": len(ranked),
                "search_mode": meta.search_mode,
                "results": [r.to_dict() for r in ranked],
            }
        except Exception as e:
            return _error("memory_search", e)

    @mcp.tool()
    def memory_recent(
        project: Optional[str] = None,
        type_filter: Optional[str] = None,
        k: int = 10,
    ) -> Dict[str, Any]:
        """Most recently recorded memories, newest first."""
        try:
            items = cache.recent_memory(project=project, limit=k, type=type_filter)
            return {
                "status": "ok",
                "count": len(items),
                "memories": [m.to_dict() for m in items],
            }
        except Exception as e:
            return _error("memory_recent", e)

    # =====================================================================
    # GRAPH
    # =====================================================================

    @mcp.tool()
    def memory_link(from_id: str, to_id: str, link_type: str) -> Dict[str, Any]:
        """Link two memories (caused|related|supersedes|implements|contradicts)."""
        try:
            link = cache.create_link(from_id, to_id, link_type)
            return {"status": "ok", "link": link.to_dict()}
        except Exception as e:
            return _error("memory_link", e)

    @mcp.tool()
    def memory_chain(
        memory_id: str, direction: str = "forward", max_depth: int = 3,
    ) -> Dict[str, Any]:
        """Memories reachable from ``memory_id`` (breadth-first, start excluded)."""
        try:
            chain = cache.traverse_chain(memory_id, direction, max_depth)
            return {
                "status": "ok",
                "count": len(chain),
                "chain": [node.to_dict() for node in chain],
            }
        except Exception as e:
            return _error("memory_chain", e)

    @mcp.tool()
    def memory_superseded(project: Optional[str] = None) -> Dict[str, Any]:
        """Memories replaced by a newer one, with their replacement."""
        try:
            records = cache.list_superseded(project)
            return {
                "status": "ok",
                "count": len(records),
                "superseded": [r.to_dict() for r in records],
            }
        except Exception as e:
            return _error("memory_superseded", e)

    # =====================================================================
    # ADMIN
    # =====================================================================

    @mcp.tool()
    def cache_stats() -> Dict[str, Any]:
        """Counts for docs, memories, links and the library registry."""
        try:
            return {"status": "ok", **cache.stats()}
        except Exception as e:
            return _error("cache_stats", e)

    logger.debug("Registered 11 knowledge cache MCP tools")
