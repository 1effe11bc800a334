"""
Library Registry — static defaults, cached mappings and topics

Tables:
    library_mappings  - normalized library name -> canonical id
    library_topics    - documentation topics per canonical id, with usage

The static DEFAULT_MAPPINGS table is answered without touching the
database.  initialize() seeds the defaults into the tables once, so that
listings and topic suggestions include them.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from kcache.db import Database
from kcache.types import LibraryTopic, ResolutionMapping

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Static defaults
# ---------------------------------------------------------------------------

# Patterns ending in "/" match any scoped package under that prefix.
DEFAULT_MAPPINGS: List[Dict[str, Any]] = [
    {"patterns": ["next", "next.js", "nextjs", "@next/"],
     "canonical_id": "/vercel/next.js", "display_name": "next.js"},
    {"patterns": ["prisma", "@prisma/client"],
     "canonical_id": "/prisma/prisma", "display_name": "prisma"},
    {"patterns": ["trpc", "@trpc/"],
     "canonical_id": "/trpc/trpc", "display_name": "trpc"},
    {"patterns": ["react", "react-dom"],
     "canonical_id": "/facebook/react", "display_name": "react"},
    {"patterns": ["zod"],
     "canonical_id": "/colinhacks/zod", "display_name": "zod"},
    {"patterns": ["tailwindcss", "tailwind"],
     "canonical_id": "/tailwindlabs/tailwindcss", "display_name": "tailwindcss"},
    {"patterns": ["drizzle-orm", "drizzle"],
     "canonical_id": "/drizzle-team/drizzle-orm", "display_name": "drizzle-orm"},
    {"patterns": ["typescript"],
     "canonical_id": "/microsoft/typescript", "display_name": "typescript"},
    {"patterns": ["expo"],
     "canonical_id": "/expo/expo", "display_name": "expo"},
    {"patterns": ["react-native"],
     "canonical_id": "/facebook/react-native", "display_name": "react-native"},
    {"patterns": ["zustand"],
     "canonical_id": "/pmndrs/zustand", "display_name": "zustand"},
    {"patterns": ["@tanstack/react-query", "@tanstack/query-core", "tanstack-query"],
     "canonical_id": "/tanstack/query", "display_name": "tanstack-query"},
]

DEFAULT_TOPICS: Dict[str, List[str]] = {
    "/vercel/next.js": ["app-router", "routing", "data-fetching", "server-actions"],
    "/prisma/prisma": ["schema", "client", "migrations", "relations"],
    "/trpc/trpc": ["routers", "procedures", "middleware"],
    "/facebook/react": ["hooks", "components", "state"],
    "/colinhacks/zod": ["schemas", "parsing", "refinements"],
    "/tailwindlabs/tailwindcss": ["configuration", "utilities", "responsive"],
    "/drizzle-team/drizzle-orm": ["schema", "queries", "migrations"],
    "/tanstack/query": ["queries", "mutations", "caching"],
}


def normalize_name(name: str) -> str:
    """Lowercase + trim (the registry key)."""
    return (name or "").strip().lower()


def _pattern_matches(name: str, pattern: str) -> bool:
    if pattern.endswith("/"):
        return name.startswith(pattern)
    return name == pattern


def match_default(name: str) -> Optional[ResolutionMapping]:
    """Look ``name`` up in the static table (already normalized or not)."""
    key = normalize_name(name)
    if not key:
        return None
    for entry in DEFAULT_MAPPINGS:
        if any(_pattern_matches(key, p) for p in entry["patterns"]):
            return ResolutionMapping(
                canonical_id=entry["canonical_id"],
                display_name=entry["display_name"],
                source="default",
                confidence=1.0,
                patterns=list(entry["patterns"]),
            )
    return None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class LibraryRegistry:
    """Cached name mappings and per-library topics."""

    def __init__(self, db: Database):
        self.db = db

    # -- Mappings ----------------------------------------------------------

    def get_mapping(self, name: str) -> Optional[ResolutionMapping]:
        """Cached mapping for a name (normalized), or None."""
        key = normalize_name(name)
        if not key:
            return None
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM library_mappings WHERE name=?", (key,)
            ).fetchone()
        if row is None:
            return None
        mapping = self._row_to_mapping(row)
        if mapping.source != "default":
            mapping.source = "cache"
        return mapping

    def save_mapping(
        self,
        name: str,
        canonical_id: str,
        display_name: str,
        *,
        stars: int = 0,
        benchmark_score: float = 0.0,
        confidence: float = 1.0,
        source: str = "api",
        is_manual: bool = False,
    ) -> ResolutionMapping:
        """Insert or replace the mapping for a normalized name."""
        key = normalize_name(name)
        if not key:
            raise ValueError("mapping name must not be empty")
        with self.db.transaction() as conn:
            conn.execute(
                """INSERT INTO library_mappings
                   (name, canonical_id, display_name, stars, benchmark_score,
                    confidence, source, is_manual, resolved_at_epoch)
                   VALUES (?,?,?,?,?,?,?,?,?)
                   ON CONFLICT(name) DO UPDATE SET
                       canonical_id=excluded.canonical_id,
                       display_name=excluded.display_name,
                       stars=excluded.stars,
                       benchmark_score=excluded.benchmark_score,
                       confidence=excluded.confidence,
                       source=excluded.source,
                       is_manual=excluded.is_manual,
                       resolved_at_epoch=excluded.resolved_at_epoch""",
                (key, canonical_id, display_name, stars, benchmark_score,
                 confidence, source, int(is_manual), self.db.now()),
            )
        logger.debug(f"Mapping cached: {key} -> {canonical_id} ({source})")
        return ResolutionMapping(
            canonical_id=canonical_id, display_name=display_name,
            source=source, confidence=confidence, patterns=[key],
        )

    def all_mappings(self) -> List[ResolutionMapping]:
        """Every cached mapping, by name."""
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM library_mappings ORDER BY name"
            ).fetchall()
        return [self._row_to_mapping(r) for r in rows]

    # -- Topics ------------------------------------------------------------

    def get_topics(self, canonical_id: str) -> List[LibraryTopic]:
        """Topics of a library, most used first."""
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM library_topics WHERE canonical_id=? "
                "ORDER BY usage_count DESC, is_default DESC, topic",
                (canonical_id,),
            ).fetchall()
        return [
            LibraryTopic(
                canonical_id=r["canonical_id"],
                topic=r["topic"],
                usage_count=r["usage_count"],
                last_used_at_epoch=r["last_used_at_epoch"],
                is_default=bool(r["is_default"]),
            )
            for r in rows
        ]

    def record_topic(
        self, canonical_id: str, topic: str, is_default: bool = False,
    ) -> None:
        """Count one use of a topic (creating it when new)."""
        with self.db.transaction() as conn:
            conn.execute(
                """INSERT INTO library_topics
                   (canonical_id, topic, usage_count, last_used_at_epoch, is_default)
                   VALUES (?,?,1,?,?)
                   ON CONFLICT(canonical_id, topic) DO UPDATE SET
                       usage_count=usage_count+1,
                       last_used_at_epoch=excluded.last_used_at_epoch""",
                (canonical_id, topic, self.db.now(), int(is_default)),
            )

    # -- Lifecycle ---------------------------------------------------------

    def seed_defaults(self) -> Dict[str, int]:
        """Insert default mappings and topics that are not there yet."""
        now = self.db.now()
        mappings = topics = 0
        with self.db.transaction() as conn:
            for entry in DEFAULT_MAPPINGS:
                for pattern in entry["patterns"]:
                    cur = conn.execute(
                        """INSERT OR IGNORE INTO library_mappings
                           (name, canonical_id, display_name, confidence,
                            source, is_manual, resolved_at_epoch)
                           VALUES (?,?,?,1.0,'default',0,?)""",
                        (pattern, entry["canonical_id"], entry["display_name"], now),
                    )
                    mappings += cur.rowcount
            for canonical_id, names in DEFAULT_TOPICS.items():
                for topic in names:
                    cur = conn.execute(
                        """INSERT OR IGNORE INTO library_topics
                           (canonical_id, topic, usage_count, is_default)
                           VALUES (?,?,0,1)""",
                        (canonical_id, topic),
                    )
                    topics += cur.rowcount
        if mappings or topics:
            logger.info(f"Registry seeded: {mappings} mappings, {topics} topics")
        return {"mappings": mappings, "topics": topics}

    def clear(self) -> Dict[str, int]:
        """Delete every mapping and topic."""
        with self.db.transaction() as conn:
            mappings = conn.execute("DELETE FROM library_mappings").rowcount
            topics = conn.execute("DELETE FROM library_topics").rowcount
        return {"mappings": mappings, "topics": topics}

    def stats(self) -> Dict[str, Any]:
        with self.db.read() as conn:
            row = conn.execute(
                """SELECT COUNT(*) AS total,
                          SUM(is_manual) AS manual,
                          SUM(CASE WHEN source='api' THEN 1 ELSE 0 END) AS resolved
                   FROM library_mappings"""
            ).fetchone()
            topics = conn.execute("SELECT COUNT(*) FROM library_topics").fetchone()[0]
        return {
            "mappings": row["total"],
            "manual": row["manual"] or 0,
            "resolved": row["resolved"] or 0,
            "topics": topics,
        }

    @staticmethod
    def _row_to_mapping(row: sqlite3.Row) -> ResolutionMapping:
        return ResolutionMapping(
            canonical_id=row["canonical_id"],
            display_name=row["display_name"],
            source=row["source"],
            confidence=row["confidence"],
            patterns=[row["name"]],
        )
