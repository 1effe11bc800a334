"""
kcache MCP Server — Knowledge Cache for Coding Assistants

Standalone MCP server exposing the knowledge cache (library documentation
and durable memories) via the Model Context Protocol.

Architecture: thin MCP layer delegating to KnowledgeCache.
Zero business logic in this module — all logic lives in kcache/*.

Usage:
    python -m kcache.mcp.server --db /path/to/cache.db
    python -m kcache.mcp.server --config kcache.json -v

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import argparse
import logging
import os

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP — always visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Persistent knowledge cache (11 tools).\n"
    "\n"
    "DOCS:    Use library_resolve to map a package name to its canonical id,\n"
    "         then docs_search to query cached documentation.\n"
    "         Cached docs expire after 7 days (docs_list shows state).\n"
    "MEMORY:  Use memory_save for decisions, bugfixes and patterns worth\n"
    "         keeping; memory_search / memory_recent to recall them.\n"
    "GRAPH:   Use memory_link (supersedes, caused, related, ...) and\n"
    "         memory_chain to follow related memories.\n"
    "\n"
    "Rules:\n"
    "- Store distilled knowledge, NOT raw documentation excerpts\n"
    "- Link a newer decision to the one it replaces with 'supersedes'\n"
    "- NEVER store secrets or credentials\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the knowledge cache MCP server."""
    p = argparse.ArgumentParser(
        prog="kcache-mcp",
        description="kcache MCP Server — persistent knowledge cache",
    )
    p.add_argument(
        "--db",
        default=os.environ.get("KCACHE_DB") or ".kcache/cache.db",
        help="SQLite database path (default: .kcache/cache.db or $KCACHE_DB)",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("KCACHE_CONFIG"),
        help="JSON config file (default: $KCACHE_CONFIG)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with knowledge cache tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, cache) tuple.  The caller closes the cache.
    """
    from mcp.server.fastmcp import FastMCP

    from kcache.cache import KnowledgeCache
    from kcache.config import load_config
    from kcache.mcp.tools import register_cache_tools

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config, strict=True)
    cache = KnowledgeCache(config=config, db_path=args.db)
    cache.initialize()

    mcp = FastMCP(
        name="kcache Knowledge Cache",
        instructions=_MCP_INSTRUCTIONS,
    )
    register_cache_tools(mcp, cache)

    logger.info(
        "kcache MCP server ready: db=%s, fts5=%s, resolver=%s",
        args.db,
        "yes" if cache.db.fts5_available else "no",
        "remote" if cache.client is not None else "local",
    )
    return mcp, cache


def log_level(verbose: bool) -> int:
    """Root log level for the server: DEBUG with -v, otherwise WARNING."""
    return logging.DEBUG if verbose else logging.WARNING


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=log_level(args.verbose),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, cache = create_server(args)
    try:
        mcp.run()
    finally:
        cache.close()


if __name__ == "__main__":
    main()
