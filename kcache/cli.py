"""
kcache CLI — Knowledge Cache Commands

Commands:
    kcache init   [PATH]                          — create store + seed registry
    kcache docs   save|section|search|list|show|delete|sweep|stats
    kcache mem    save|search|recent|show|update|delete|promote|smart|similar|merge|cleanup|stats
    kcache link   add|rm|chain|superseded|stats
    kcache resolve NAME | --list                  — library name → canonical id
    kcache detect [package.json]                  — libraries to fetch/refresh
    kcache schema status|rollback VERSION         — migration state
    kcache reindex                                — rebuild FTS5 indexes
    kcache serve                                  — start MCP server (foreground)

Environment variables:
    KCACHE_DB          Path to SQLite database (default: .kcache/cache.db)
    KCACHE_CONFIG      Path to a JSON config file (optional)
    CONTEXT7_API_KEY   Enables remote library resolution

Precedence (invariant):
    CLI --flag  >  KCACHE_* env var  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (not found, conflict, bad input)
    2  Internal failure (unexpected exception, I/O error)

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from kcache.errors import KCacheError

logger = logging.getLogger(__name__)

_DEFAULT_DB = ".kcache/cache.db"


# ---------------------------------------------------------------------------
# Env parsing: a bad export falls back to the default
# ---------------------------------------------------------------------------


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    """Parse string env var with fallback (empty counts as unset)."""
    return os.environ.get(name) or default


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_db(args: Optional[argparse.Namespace] = None) -> str:
    """Resolve database path: CLI --db > KCACHE_DB > .kcache/cache.db."""
    if args and getattr(args, "db", None):
        return args.db
    return _env_str("KCACHE_DB", _DEFAULT_DB)


def _resolve_config_path(args: Optional[argparse.Namespace] = None) -> Optional[str]:
    """Resolve config path: CLI --config > KCACHE_CONFIG > none."""
    if args and getattr(args, "config", None):
        return args.config
    return _env_str("KCACHE_CONFIG", None)


def _csv(value: Optional[str]) -> Optional[List[str]]:
    """Split a comma-separated flag value (None stays None)."""
    if value is None:
        return None
    return [v.strip() for v in value.split(",") if v.strip()]


def _fmt_epoch(ts: Optional[float]) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Cache factory
# ---------------------------------------------------------------------------


def _open_cache(args: argparse.Namespace):
    """Open a KnowledgeCache. Creates the DB and parent dirs if needed."""
    from kcache.cache import KnowledgeCache
    from kcache.config import load_config

    config = load_config(_resolve_config_path(args), strict=True)
    return KnowledgeCache(config=config, db_path=_resolve_db(args))


# ---------------------------------------------------------------------------
# Output helpers (respect --quiet / --json)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _wants_json(args: argparse.Namespace) -> bool:
    return bool(getattr(args, "json", False))


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


# ===========================================================================
# Command: init
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Create the store directory, schema and seeded registry."""
    target = Path(args.path).resolve()
    db_path = Path(args.db).resolve() if getattr(args, "db", None) else target / "cache.db"
    existed = db_path.exists()

    target.mkdir(parents=True, exist_ok=True)
    args.db = str(db_path)
    with _open_cache(args) as cache:
        seeded = cache.initialize()
        version = cache.db.schema_version

    gitignore_path = target / ".gitignore"
    if not gitignore_path.exists():
        gitignore_path.write_text("*.db\n*.db-wal\n*.db-shm\n*.backup-*\n", encoding="utf-8")

    if existed:
        _info(f"Cache exists: {db_path} (schema v{version})")
    else:
        _info(f"Knowledge cache initialized: {target}")
        _info(f"  Database:  {db_path}")
        _info(f"  Schema:    v{version}")
        _info(f"  Registry:  {seeded['mappings']} mappings, {seeded['topics']} topics")
    print(f'export KCACHE_DB="{db_path}"')


# ===========================================================================
# Commands: docs
# ===========================================================================


def cmd_docs_save(args: argparse.Namespace) -> None:
    """Insert or refresh a library entry."""
    with _open_cache(args) as cache:
        lib = cache.save_library(args.external_id, args.name, args.version)
    if _wants_json(args):
        _print_json(lib.to_dict())
    else:
        print(f"{lib.id}  {lib.external_id}  expires {_fmt_epoch(lib.expires_at_epoch)}")


def cmd_docs_section(args: argparse.Namespace) -> None:
    """Store one documentation section (content from --content or stdin)."""
    content = args.content
    if content is None:
        if sys.stdin.isatty():
            _warn("No content: pass --content or pipe text on stdin.")
            sys.exit(1)
        content = sys.stdin.read()
    with _open_cache(args) as cache:
        section = cache.save_section(
            args.external_id, args.title, content,
            code_snippets=args.snippet or [],
            page_number=args.page,
            topic=args.topic,
        )
    if _wants_json(args):
        _print_json(section.to_dict())
    else:
        print(f"{section.id}  {section.title}")


def cmd_docs_search(args: argparse.Namespace) -> None:
    """Search cached documentation sections."""
    with _open_cache(args) as cache:
        hits = cache.search_docs(args.query, library=args.library, topic=args.topic, limit=args.k)

    if _wants_json(args):
        _print_json({
            "count": len(hits),
            "results": [h.to_dict() for h in hits],
        })
        return
    if not hits:
        _info("No results found.")
        return
    print(f"Found {len(hits)} section(s):\n")
    for h in hits:
        topic = f" [{h.section.topic}]" if h.section.topic else ""
        print(f"  {h.relevance:7.3f}  {h.library_name}{topic}  {h.section.title}")


def cmd_docs_list(args: argparse.Namespace) -> None:
    """List cached libraries."""
    with _open_cache(args) as cache:
        libs = cache.list_libraries(expired_only=args.expired)
    if _wants_json(args):
        _print_json([lib.to_dict() for lib in libs])
        return
    if not libs:
        _info("No libraries cached.")
        return
    for lib in libs:
        state = "EXPIRED" if lib.is_expired else "fresh"
        version = f"@{lib.version}" if lib.version else ""
        print(
            f"  {lib.external_id}{version}  {lib.display_name}  "
            f"sections={lib.section_count}  {state}  fetched {_fmt_epoch(lib.fetched_at_epoch)}"
        )


def cmd_docs_show(args: argparse.Namespace) -> None:
    """Show a library with its sections."""
    with _open_cache(args) as cache:
        lib = cache.docs.get_library(args.external_id)
        if lib is None:
            _warn(f"Library not found: {args.external_id}")
            sys.exit(1)
        sections = cache.docs.get_sections(args.external_id, args.topic)

    if _wants_json(args):
        _print_json({"library": lib.to_dict(), "sections": [s.to_dict() for s in sections]})
        return
    print(f"ID:        {lib.id}")
    print(f"External:  {lib.external_id}")
    print(f"Name:      {lib.display_name}")
    print(f"Version:   {lib.version if lib.version is not None else '(none)'}")
    print(f"Fetched:   {_fmt_epoch(lib.fetched_at_epoch)}")
    print(f"Expires:   {_fmt_epoch(lib.expires_at_epoch)}{' (expired)' if lib.is_expired else ''}")
    print(f"Sections:  {lib.section_count}")
    for s in sections:
        topic = f"[{s.topic}] " if s.topic else ""
        print(f"\n--- {topic}{s.title} (p.{s.page_number}) ---\n{s.content}")


def cmd_docs_delete(args: argparse.Namespace) -> None:
    """Delete a library and its sections."""
    with _open_cache(args) as cache:
        result = cache.delete_library(args.external_id)
    if _wants_json(args):
        _print_json({"status": "ok", **result})
    elif result["libraries_deleted"]:
        _info(f"Deleted {args.external_id} ({result['sections_deleted']} sections)")
    else:
        _info(f"Nothing to delete: {args.external_id}")


def cmd_docs_sweep(args: argparse.Namespace) -> None:
    """Delete every expired library."""
    with _open_cache(args) as cache:
        result = cache.sweep_expired_docs()
    if _wants_json(args):
        _print_json({"status": "ok", **result})
    else:
        _info(
            f"Swept {result['libraries_deleted']} expired libraries "
            f"({result['sections_deleted']} sections)"
        )


def cmd_docs_stats(args: argparse.Namespace) -> None:
    """Documentation cache statistics."""
    with _open_cache(args) as cache:
        stats = cache.docs.stats()
    if _wants_json(args):
        _print_json(stats)
        return
    print("Documentation Cache")
    print("=" * 40)
    print(f"  Libraries: {stats['total_libraries']}")
    print(f"  Sections:  {stats['total_sections']}")
    print(f"  Expired:   {stats['expired_count']}")
    print(f"  Oldest:    {_fmt_epoch(stats['oldest_fetch'])}")
    print(f"  Newest:    {_fmt_epoch(stats['newest_fetch'])}")


# ===========================================================================
# Commands: mem
# ===========================================================================


def _print_memory_line(mem, score: Optional[float] = None) -> None:
    prefix = f"{score:7.3f}  " if score is not None else ""
    print(f"  {prefix}{mem.id}  {mem.type:13s} [{mem.importance}] {mem.title}")
    if mem.tags:
        print(f"    tags: {', '.join(mem.tags)}")


def cmd_mem_save(args: argparse.Namespace) -> None:
    """Record a memory."""
    with _open_cache(args) as cache:
        mem = cache.save_memory(
            args.type, args.title,
            description=args.description or "",
            importance=args.importance,
            tags=_csv(args.tags),
            files=_csv(args.files),
            features=_csv(args.features),
            scope=args.scope,
            project=args.project,
            **({} if args.auto is None else {"auto_enrich": True}),
        )
    if _wants_json(args):
        _print_json(mem.to_dict())
    else:
        print(mem.id)
        _info(f"[mem] Saved {mem.type} ({mem.scope}): {mem.title}")


def cmd_mem_search(args: argparse.Namespace) -> None:
    """Search memories (hybrid when embeddings are available)."""
    from kcache.types import MemoryFilters

    filters = MemoryFilters(
        project=args.project,
        include_global=not args.no_global,
        scope=args.scope,
        type=args.type,
        importance=args.importance,
        tags=_csv(args.tags),
    )
    with _open_cache(args) as cache:
        ranked, meta = cache.search_memory(args.query, filters, args.k)

    if _wants_json(args):
        _print_json({
            "search_mode": meta.search_mode,
            "count": len(ranked),
            "results": [r.to_dict() for r in ranked],
        })
        return
    if not ranked:
        _info("No results found.")
        return
    print(f"Found {len(ranked)} memory item(s):\n")
    for r in ranked:
        _print_memory_line(r.record, r.score)
    _info(f"\n(mode: {meta.search_mode})")


def cmd_mem_recent(args: argparse.Namespace) -> None:
    """Most recent memories."""
    with _open_cache(args) as cache:
        items = cache.recent_memory(project=args.project, limit=args.k, type=args.type)
    if _wants_json(args):
        _print_json([m.to_dict() for m in items])
        return
    if not items:
        _info("No memories recorded.")
        return
    for m in items:
        _print_memory_line(m)


def cmd_mem_show(args: argparse.Namespace) -> None:
    """Show one memory with its links."""
    with _open_cache(args) as cache:
        mem = cache.memories.get(args.id)
        if mem is None:
            _warn(f"Memory not found: {args.id}")
            sys.exit(1)
        links = cache.links.all_links(args.id)
        superseded_by = cache.links.superseding_memory(args.id)

    if _wants_json(args):
        _print_json({
            "memory": mem.to_dict(),
            "links": [link.to_dict() for link in links],
            "superseded_by": superseded_by.id if superseded_by else None,
        })
        return
    print(f"ID:          {mem.id}")
    print(f"Type:        {mem.type}")
    print(f"Title:       {mem.title}")
    print(f"Importance:  {mem.importance}")
    print(f"Scope:       {mem.scope}")
    print(f"Project:     {mem.project or '(none)'}")
    print(f"Source:      {mem.source}")
    print(f"Tags:        {', '.join(mem.tags) if mem.tags else '(none)'}")
    print(f"Features:    {', '.join(mem.features) if mem.features else '(none)'}")
    print(f"Files:       {', '.join(mem.related_files) if mem.related_files else '(none)'}")
    print(f"Created:     {_fmt_epoch(mem.created_at_epoch)}")
    print(f"Usage:       {mem.usage_count}")
    print(f"Embedding:   {'yes' if mem.has_embedding else 'no'}")
    if superseded_by:
        print(f"Superseded:  {superseded_by.id}")
    for link in links:
        print(f"  link: {link.from_id} -[{link.link_type}]-> {link.to_id}")
    if mem.description:
        print(f"\n--- Description ---\n{mem.description}")


def cmd_mem_update(args: argparse.Namespace) -> None:
    """Patch mutable fields of a memory."""
    fields = {
        "title": args.title,
        "description": args.description,
        "type": args.type,
        "importance": args.importance,
        "scope": args.scope,
        "project": args.project,
        "tags": _csv(args.tags),
        "related_files": _csv(args.files),
        "features": _csv(args.features),
    }
    fields = {k: v for k, v in fields.items() if v is not None}
    if not fields:
        _warn("Nothing to update: pass at least one field flag.")
        sys.exit(1)
    with _open_cache(args) as cache:
        mem = cache.memories.update(args.id, **fields)
    if _wants_json(args):
        _print_json(mem.to_dict())
    else:
        _info(f"[mem] Updated {mem.id}: {', '.join(sorted(fields))}")


def cmd_mem_delete(args: argparse.Namespace) -> None:
    """Delete a memory (its links cascade)."""
    with _open_cache(args) as cache:
        deleted = cache.memories.delete(args.id)
    if not deleted:
        _warn(f"Memory not found: {args.id}")
        sys.exit(1)
    if _wants_json(args):
        _print_json({"status": "ok", "deleted": args.id})
    else:
        _info(f"[mem] Deleted {args.id}")


def cmd_mem_promote(args: argparse.Namespace) -> None:
    """Copy a project memory into global scope."""
    with _open_cache(args) as cache:
        mem = cache.memories.promote(args.id)
    if _wants_json(args):
        _print_json(mem.to_dict())
    else:
        _info(f"[mem] Promoted {args.id} -> {mem.id} (global)")


def cmd_mem_smart(args: argparse.Namespace) -> None:
    """Memories ranked by text match, age, importance, type and context."""
    from kcache.types import MemoryFilters

    with _open_cache(args) as cache:
        results = cache.smart_search_memory(
            args.query,
            MemoryFilters(project=args.project),
            args.k,
            current_feature=args.feature,
            current_file=args.file,
            min_relevance=args.min,
            include_reasoning=args.why,
        )
    if _wants_json(args):
        _print_json({"count": len(results), "results": [r.to_dict() for r in results]})
        return
    if not results:
        _info("No results found.")
        return
    for r in results:
        _print_memory_line(r.memory, r.relevance)
        if r.reasoning:
            b = r.reasoning
            print(
                f"    text={b.text_match} decay={b.time_decay} importance={b.importance_boost} "
                f"type={b.type_boost} context={b.context_boost} fresh={b.freshness_bonus}"
            )


def cmd_mem_similar(args: argparse.Namespace) -> None:
    """List near-duplicate memory pairs."""
    with _open_cache(args) as cache:
        matches = cache.find_similar_memories(args.project, args.threshold, args.k)
    if _wants_json(args):
        _print_json([m.to_dict() for m in matches])
        return
    if not matches:
        _info("No similar memories.")
        return
    for m in matches:
        print(f"  {m.similarity:.2f}  {m.memory1.id}  {m.memory2.id}  [{m.suggested_action}]")
        print(f"        {m.reason}")


def cmd_mem_merge(args: argparse.Namespace) -> None:
    """Fold OTHER into KEEP; KEEP supersedes OTHER."""
    with _open_cache(args) as cache:
        mem = cache.merge_memories(args.keep_id, args.other_id)
    if _wants_json(args):
        _print_json(mem.to_dict())
    else:
        _info(f"[mem] Merged {args.other_id} into {mem.id}")


def cmd_mem_cleanup(args: argparse.Namespace) -> None:
    """Delete stale low/medium importance memories (dry run without --yes)."""
    with _open_cache(args) as cache:
        result = cache.cleanup_stale_memories(args.project, args.days, dry_run=not args.yes)
    if _wants_json(args):
        _print_json({
            "status": "ok",
            "count": result["count"],
            "dry_run": result["dry_run"],
            "memories": [m.to_dict() for m in result["memories"]],
        })
        return
    for m in result["memories"]:
        _print_memory_line(m)
    verb = "Would delete" if result["dry_run"] else "Deleted"
    _info(f"[mem] {verb} {result['count']} stale memories")


def cmd_mem_stats(args: argparse.Namespace) -> None:
    """Memory store statistics."""
    with _open_cache(args) as cache:
        stats = cache.memories.stats()
    if _wants_json(args):
        _print_json(stats)
        return
    print("Memory Store")
    print("=" * 40)
    print(f"  Total:      {stats['total_memories']}")
    print(f"  Embeddings: {stats['embeddings_count']}")
    print("  By type:")
    for typ, count in sorted(stats["by_type"].items()):
        print(f"    {typ:13s}: {count}")
    print("  By scope:")
    for scope, count in sorted(stats["by_scope"].items()):
        print(f"    {scope:13s}: {count}")


# ===========================================================================
# Commands: link
# ===========================================================================


def cmd_link_add(args: argparse.Namespace) -> None:
    """Create a typed link between two memories."""
    with _open_cache(args) as cache:
        link = cache.create_link(args.from_id, args.to_id, args.link_type)
    if _wants_json(args):
        _print_json(link.to_dict())
    else:
        _info(f"[link] {link.from_id} -[{link.link_type}]-> {link.to_id}")


def cmd_link_rm(args: argparse.Namespace) -> None:
    """Remove links between two memories."""
    with _open_cache(args) as cache:
        removed = cache.delete_link(args.from_id, args.to_id, args.type)
    if _wants_json(args):
        _print_json({"status": "ok", "removed": removed})
    else:
        _info(f"[link] Removed {removed} link(s)")


def cmd_link_chain(args: argparse.Namespace) -> None:
    """Walk the link graph from a memory."""
    with _open_cache(args) as cache:
        chain = cache.traverse_chain(args.id, args.direction, args.depth)
    if _wants_json(args):
        _print_json([node.to_dict() for node in chain])
        return
    if not chain:
        _info(f"No linked memories from {args.id}.")
        return
    for node in chain:
        indent = "  " * node.depth
        via = f"({node.via.link_type}) "
        print(f"{indent}{via}{node.memory.id}  {node.memory.title}")


def cmd_link_superseded(args: argparse.Namespace) -> None:
    """List memories replaced by a newer one."""
    with _open_cache(args) as cache:
        records = cache.list_superseded(args.project)
    if _wants_json(args):
        _print_json([r.to_dict() for r in records])
        return
    if not records:
        _info("No superseded memories.")
        return
    for r in records:
        print(f"  {r.memory.id}  {r.memory.title}  -> {', '.join(r.superseded_by)}")


def cmd_link_stats(args: argparse.Namespace) -> None:
    """Link counts by type."""
    with _open_cache(args) as cache:
        stats = cache.links.stats()
    if _wants_json(args):
        _print_json(stats)
        return
    print(f"Links: {stats['total']}")
    for typ, count in stats["by_type"].items():
        print(f"  {typ:12s}: {count}")


# ===========================================================================
# Command: resolve
# ===========================================================================


def cmd_resolve(args: argparse.Namespace) -> None:
    """Resolve a library name to its canonical id (or list cached mappings)."""
    if args.list:
        with _open_cache(args) as cache:
            mappings = cache.registry.all_mappings()
        if _wants_json(args):
            _print_json([m.to_dict() for m in mappings])
            return
        for m in mappings:
            print(f"  {m.patterns[0]:24s} {m.canonical_id}  ({m.source})")
        _info(f"\n{len(mappings)} mapping(s)")
        return
    if not args.name:
        _warn("Pass a library name, or --list to show cached mappings.")
        sys.exit(1)
    with _open_cache(args) as cache:
        mapping = cache.resolve_library_id(args.name)
    if mapping is None:
        if _wants_json(args):
            _print_json({"status": "not_found", "name": args.name})
        _warn(f"No confident match for: {args.name}")
        sys.exit(1)
    if _wants_json(args):
        _print_json(mapping.to_dict())
    else:
        print(mapping.canonical_id)
        _info(f"  {mapping.display_name} (source={mapping.source}, confidence={mapping.confidence:.2f})")


# ===========================================================================
# Command: detect
# ===========================================================================


def cmd_detect(args: argparse.Namespace) -> None:
    """Report supported libraries of a package.json and their cache status."""
    from kcache.detector import cache_suggestions, read_package_json

    path = Path(args.path)
    if not path.is_file():
        _warn(f"File not found: {path}")
        sys.exit(1)
    deps = read_package_json(str(path))
    with _open_cache(args) as cache:
        suggestions = cache_suggestions(deps, cache.docs)

    if _wants_json(args):
        _print_json({k: [lib.to_dict() for lib in v] for k, v in suggestions.items()})
        return
    for key, label in (("to_fetch", "To fetch"), ("to_refresh", "To refresh")):
        libs = suggestions[key]
        print(f"{label}: {len(libs)}")
        for lib in libs:
            version = f"@{lib.version}" if lib.version else ""
            print(f"  {lib.canonical_id}  ({lib.dependency}{version})")


# ===========================================================================
# Commands: schema / reindex
# ===========================================================================


def cmd_schema_status(args: argparse.Namespace) -> None:
    """Show applied and pending migrations."""
    with _open_cache(args) as cache:
        status = cache.db.schema_status()
    if _wants_json(args):
        _print_json(status)
        return
    print(f"Schema version: {status['version']} (latest {status['latest']})")
    print(f"FTS5: {'available' if status['fts5'] else 'unavailable'} ({status['fts_tokenizer']})")
    for step in status["applied"]:
        print(f"  [x] {step['version']:3d}  {step['name']}  {step['applied_at']}")
    for step in status["pending"]:
        print(f"  [ ] {step['version']:3d}  {step['name']}")


def cmd_schema_rollback(args: argparse.Namespace) -> None:
    """Undo migrations above VERSION (destructive)."""
    if not args.yes:
        _warn("Rollback drops tables and data. Re-run with --yes to confirm.")
        sys.exit(1)
    from kcache.db import Database

    # Opened without migrating, or pending steps would be re-applied first.
    db = Database(_resolve_db(args), migrate=False)
    try:
        version = db.rollback_schema(args.version)
    finally:
        db.close()
    if _wants_json(args):
        _print_json({"status": "ok", "version": version})
    else:
        _info(f"Schema rolled back to v{version}")


def cmd_reindex(args: argparse.Namespace) -> None:
    """Rebuild the full-text indexes from their base tables."""
    with _open_cache(args) as cache:
        counts = cache.db.rebuild_index()
        consistency = cache.db.index_consistency()
    if _wants_json(args):
        _print_json({"status": "ok", "indexed": counts, "consistency": consistency})
    else:
        for table, n in counts.items():
            _info(f"[reindex] {table}: {n} rows")


# ===========================================================================
# Command: serve  (start MCP server)
# ===========================================================================


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the kcache MCP server in foreground."""
    try:
        from kcache.mcp.server import build_parser as mcp_parser, create_server
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install kcache[mcp]")
        sys.exit(1)

    server_argv = ["--db", _resolve_db(args)]
    config_path = _resolve_config_path(args)
    if config_path:
        server_argv.extend(["--config", config_path])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")
    server_args = mcp_parser().parse_args(server_argv)

    try:
        mcp, cache = create_server(server_args)
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install kcache[mcp]")
        sys.exit(1)

    _info(f"kcache MCP server (db={server_args.db})")
    _info("Press Ctrl+C to stop.")
    try:
        mcp.run()
    finally:
        cache.close()


# ===========================================================================
# Parser
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the kcache argument parser."""
    # SUPPRESS defaults prevent subparser defaults from overriding
    # values parsed at the main-parser level (argparse parents quirk).
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help=f"Path to SQLite database (default: $KCACHE_DB or {_DEFAULT_DB})",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: $KCACHE_CONFIG)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="kcache",
        description="kcache — persistent knowledge cache (library docs + memories)",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- init --------------------------------------------------------------
    p_init = sub.add_parser("init", parents=[_common], help="Initialize a knowledge cache")
    p_init.add_argument(
        "path", nargs="?", default=".kcache",
        help="Cache directory (default: .kcache)",
    )
    p_init.set_defaults(func=cmd_init)

    # -- docs --------------------------------------------------------------
    p_docs = sub.add_parser("docs", parents=[_common], help="Library documentation cache")
    docs = p_docs.add_subparsers(dest="docs_command")

    p = docs.add_parser("save", parents=[_common], help="Insert or refresh a library")
    p.add_argument("external_id", help="Canonical library id (e.g. /vercel/next.js)")
    p.add_argument("name", help="Display name")
    p.add_argument("--version", default=None, help="Library version")
    p.set_defaults(func=cmd_docs_save)

    p = docs.add_parser("section", parents=[_common], help="Store a documentation section")
    p.add_argument("external_id", help="Canonical library id")
    p.add_argument("title", help="Section title")
    p.add_argument("--content", default=None, help="Section text (default: stdin)")
    p.add_argument("--topic", default=None, help="Topic the section was fetched for")
    p.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
    p.add_argument(
        "--snippet", action="append", default=None,
        help="Code snippet (repeatable, order kept)",
    )
    p.set_defaults(func=cmd_docs_section)

    p = docs.add_parser("search", parents=[_common], help="Search documentation sections")
    p.add_argument("query", help="Search query")
    p.add_argument("--library", default=None, help="Restrict to a library (name or id)")
    p.add_argument("--topic", default=None, help="Restrict to a topic")
    p.add_argument("-k", type=int, default=10, help="Max results (default: 10)")
    p.set_defaults(func=cmd_docs_search)

    p = docs.add_parser("list", parents=[_common], help="List cached libraries")
    p.add_argument("--expired", action="store_true", help="Only expired libraries")
    p.set_defaults(func=cmd_docs_list)

    p = docs.add_parser("show", parents=[_common], help="Show a library and its sections")
    p.add_argument("external_id", help="Canonical library id")
    p.add_argument("--topic", default=None, help="Only sections of this topic")
    p.set_defaults(func=cmd_docs_show)

    p = docs.add_parser("delete", parents=[_common], help="Delete a library")
    p.add_argument("external_id", help="Canonical library id")
    p.set_defaults(func=cmd_docs_delete)

    p = docs.add_parser("sweep", parents=[_common], help="Delete expired libraries")
    p.set_defaults(func=cmd_docs_sweep)

    p = docs.add_parser("stats", parents=[_common], help="Documentation cache statistics")
    p.set_defaults(func=cmd_docs_stats)

    # -- mem ---------------------------------------------------------------
    p_mem = sub.add_parser("mem", parents=[_common], help="Memory store")
    mem = p_mem.add_subparsers(dest="mem_command")

    p = mem.add_parser("save", parents=[_common], help="Record a memory")
    p.add_argument("type", help="observation|decision|bugfix|feature|pattern|library-note|snippet|anti-pattern")
    p.add_argument("title", help="Short title")
    p.add_argument("--description", "-d", default=None, help="Body text")
    p.add_argument("--importance", default=None, help="low|medium|high|critical (default: medium)")
    p.add_argument("--tags", default=None, help="Comma-separated tags")
    p.add_argument("--files", default=None, help="Comma-separated related files")
    p.add_argument("--features", default=None, help="Comma-separated features")
    p.add_argument("--scope", default=None, help="project|global (default: from type)")
    p.add_argument("--project", default=None, help="Project name")
    p.add_argument("--auto", action="store_true", default=None,
                   help="Infer missing tags/features/files/importance from the text")
    p.set_defaults(func=cmd_mem_save)

    p = mem.add_parser("search", parents=[_common], help="Search memories")
    p.add_argument("query", help="Search query (empty = recent)")
    p.add_argument("--project", default=None, help="Project filter")
    p.add_argument("--no-global", action="store_true", help="Exclude global memories")
    p.add_argument("--scope", default=None, help="Scope filter")
    p.add_argument("--type", default=None, help="Type filter")
    p.add_argument("--importance", default=None, help="Importance filter")
    p.add_argument("--tags", default=None, help="Comma-separated tags (any matches)")
    p.add_argument("-k", type=int, default=10, help="Max results (default: 10)")
    p.set_defaults(func=cmd_mem_search)

    p = mem.add_parser("recent", parents=[_common], help="Most recent memories")
    p.add_argument("--project", default=None, help="Project filter")
    p.add_argument("--type", default=None, help="Type filter")
    p.add_argument("-k", type=int, default=10, help="Max results (default: 10)")
    p.set_defaults(func=cmd_mem_recent)

    p = mem.add_parser("show", parents=[_common], help="Show a memory")
    p.add_argument("id", help="Memory id")
    p.set_defaults(func=cmd_mem_show)

    p = mem.add_parser("update", parents=[_common], help="Patch a memory")
    p.add_argument("id", help="Memory id")
    p.add_argument("--title", default=None)
    p.add_argument("--description", "-d", default=None)
    p.add_argument("--type", default=None)
    p.add_argument("--importance", default=None)
    p.add_argument("--scope", default=None)
    p.add_argument("--project", default=None)
    p.add_argument("--tags", default=None, help="Comma-separated, replaces existing")
    p.add_argument("--files", default=None, help="Comma-separated, replaces existing")
    p.add_argument("--features", default=None, help="Comma-separated, replaces existing")
    p.set_defaults(func=cmd_mem_update)

    p = mem.add_parser("delete", parents=[_common], help="Delete a memory")
    p.add_argument("id", help="Memory id")
    p.set_defaults(func=cmd_mem_delete)

    p = mem.add_parser("promote", parents=[_common], help="Promote a memory to global scope")
    p.add_argument("id", help="Memory id")
    p.set_defaults(func=cmd_mem_promote)

    p = mem.add_parser("smart", parents=[_common], help="Context-aware memory ranking")
    p.add_argument("query", nargs="?", default="", help="Search query (empty = recent)")
    p.add_argument("--project", default=None, help="Project filter")
    p.add_argument("--feature", default=None, help="Current feature (boost)")
    p.add_argument("--file", default=None, help="Current file (boost)")
    p.add_argument("--min", type=float, default=None, help="Minimum score (0-100)")
    p.add_argument("--why", action="store_true", help="Show the score breakdown")
    p.add_argument("-k", type=int, default=10, help="Max results (default: 10)")
    p.set_defaults(func=cmd_mem_smart)

    p = mem.add_parser("similar", parents=[_common], help="Near-duplicate memory pairs")
    p.add_argument("--project", default=None, help="Project filter")
    p.add_argument("--threshold", type=float, default=None, help="Minimum similarity (0-1)")
    p.add_argument("-k", type=int, default=20, help="Max pairs (default: 20)")
    p.set_defaults(func=cmd_mem_similar)

    p = mem.add_parser("merge", parents=[_common], help="Fold one memory into another")
    p.add_argument("keep_id", help="Memory kept (receives the merged content)")
    p.add_argument("other_id", help="Memory folded in (marked superseded)")
    p.set_defaults(func=cmd_mem_merge)

    p = mem.add_parser("cleanup", parents=[_common], help="Delete old low-importance memories")
    p.add_argument("--project", default=None, help="Project filter")
    p.add_argument("--days", type=float, default=None, help="Age threshold in days")
    p.add_argument("--yes", action="store_true", help="Actually delete (default: dry run)")
    p.set_defaults(func=cmd_mem_cleanup)

    p = mem.add_parser("stats", parents=[_common], help="Memory statistics")
    p.set_defaults(func=cmd_mem_stats)

    # -- link --------------------------------------------------------------
    p_link = sub.add_parser("link", parents=[_common], help="Memory relationship graph")
    link = p_link.add_subparsers(dest="link_command")

    p = link.add_parser("add", parents=[_common], help="Link two memories")
    p.add_argument("from_id", help="Source memory id")
    p.add_argument("to_id", help="Target memory id")
    p.add_argument("link_type", help="caused|related|supersedes|implements|contradicts")
    p.set_defaults(func=cmd_link_add)

    p = link.add_parser("rm", parents=[_common], help="Remove links")
    p.add_argument("from_id", help="Source memory id")
    p.add_argument("to_id", help="Target memory id")
    p.add_argument("--type", default=None, help="Only this link type")
    p.set_defaults(func=cmd_link_rm)

    p = link.add_parser("chain", parents=[_common], help="Walk linked memories")
    p.add_argument("id", help="Start memory id")
    p.add_argument(
        "--direction", default="forward", choices=["forward", "backward", "both"],
        help="Edge direction (default: forward)",
    )
    p.add_argument("--depth", type=int, default=3, help="Max hops (default: 3)")
    p.set_defaults(func=cmd_link_chain)

    p = link.add_parser("superseded", parents=[_common], help="List superseded memories")
    p.add_argument("--project", default=None, help="Project filter")
    p.set_defaults(func=cmd_link_superseded)

    p = link.add_parser("stats", parents=[_common], help="Link statistics")
    p.set_defaults(func=cmd_link_stats)

    # -- resolve / detect --------------------------------------------------
    p = sub.add_parser("resolve", parents=[_common], help="Resolve a library name")
    p.add_argument("name", nargs="?", help="Library or package name")
    p.add_argument("--list", action="store_true", help="List cached name mappings")
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("detect", parents=[_common], help="Detect libraries from package.json")
    p.add_argument("path", nargs="?", default="package.json", help="package.json path")
    p.set_defaults(func=cmd_detect)

    # -- schema / reindex --------------------------------------------------
    p_schema = sub.add_parser("schema", parents=[_common], help="Schema migrations")
    schema_sub = p_schema.add_subparsers(dest="schema_command")

    p = schema_sub.add_parser("status", parents=[_common], help="Migration status")
    p.set_defaults(func=cmd_schema_status)

    p = schema_sub.add_parser("rollback", parents=[_common], help="Undo migrations")
    p.add_argument("version", type=int, help="Target version")
    p.add_argument("--yes", action="store_true", help="Confirm destructive rollback")
    p.set_defaults(func=cmd_schema_rollback)

    p = sub.add_parser("reindex", parents=[_common], help="Rebuild FTS5 indexes")
    p.set_defaults(func=cmd_reindex)

    # -- serve -------------------------------------------------------------
    p = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p.set_defaults(func=cmd_serve)

    return parser


# ===========================================================================
# Entry point
# ===========================================================================


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: kcache <command> [args]."""
    global _quiet

    parser = build_parser()
    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not getattr(args, "func", None):
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        # Handle broken pipe gracefully (e.g. kcache docs list | head)
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except KCacheError as e:
        if _wants_json(args):
            _print_json({"status": "error", "error": e.to_dict()})
        _warn(f"Error: {e}")
        sys.exit(1)
    except ValueError as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
