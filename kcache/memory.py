"""
Memory Store — durable notes, decisions and patterns

Tables:
    memories           - memory records (created_at_epoch is immutable)
    memories_fts       - FTS5 shadow index over title/description/tags/features
    memory_embeddings  - opaque float32 vectors (one per memory)

Memories are never removed by another record's lifecycle.  Supersession is
expressed through links (see links.py) and never hides a record from search.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import sqlite3
import struct
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from kcache import consolidate
from kcache.autotag import enrich
from kcache.db import Database
from kcache.errors import NotFound
from kcache.fts import build_fts_query, like_pattern, ranked_search
from kcache.types import (
    FALLBACK_RELEVANCE,
    MemoryFilters,
    MemoryRecord,
    MemorySearchResult,
    SimilarityMatch,
    _generate_id,
    infer_scope,
)

logger = logging.getLogger(__name__)

# Fields a partial update may touch
_MUTABLE_FIELDS = {
    "type", "title", "description", "importance", "scope", "project",
    "tags", "related_files", "features", "metadata", "source",
    "usage_count", "last_used_at_epoch",
}
_JSON_FIELDS = {"tags", "related_files", "features", "metadata"}


# ---------------------------------------------------------------------------
# Vector packing helpers
# ---------------------------------------------------------------------------

def _pack_vector(vec: Sequence[float]) -> bytes:
    """Pack float sequence to bytes (float32)."""
    return struct.pack(f"{len(vec)}f", *vec)


def _unpack_vector(data: bytes, dim: int) -> List[float]:
    """Unpack bytes to float list (float32)."""
    return list(struct.unpack(f"{dim}f", data))


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def _filter_clause(filters: MemoryFilters) -> Tuple[List[str], list]:
    """SQL conditions (on alias ``m``) and params for a MemoryFilters."""
    conditions: List[str] = []
    params: list = []
    if filters.project:
        if filters.include_global:
            conditions.append("(m.project=? OR m.scope='global')")
        else:
            conditions.append("m.project=?")
        params.append(filters.project)
    for column in ("scope", "type", "importance", "source"):
        value = getattr(filters, column)
        if value:
            conditions.append(f"m.{column}=?")
            params.append(value)
    for column in ("tags", "features"):
        values = list(getattr(filters, column) or [])
        if values:
            marks = ",".join("?" for _ in values)
            conditions.append(
                f"EXISTS (SELECT 1 FROM json_each(m.{column}) j "
                f"WHERE j.value IN ({marks}))"
            )
            params.extend(values)
    return conditions, params


class MemoryStore:
    """
    Memory namespace of the knowledge cache.

    Thread-safe through the shared Database handle.
    """

    def __init__(
        self,
        db: Database,
        fallback_relevance: float = FALLBACK_RELEVANCE,
    ):
        self.db = db
        self.fallback_relevance = fallback_relevance

    # -- Write operations --------------------------------------------------

    def save(
        self,
        type: str,
        title: str,
        description: str = "",
        importance: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        files: Optional[Iterable[str]] = None,
        features: Optional[Iterable[str]] = None,
        scope: Optional[str] = None,
        project: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        source: str = "manual",
        auto_enrich: bool = False,
    ) -> MemoryRecord:
        """Create a memory.  Scope defaults from the type when absent.

        With ``auto_enrich``, tags, features, files and importance the caller
        left out are inferred from the title and description (see autotag.py).
        Explicitly passed values, even empty lists, are kept as given.
        """
        if auto_enrich:
            found = enrich(title, description)
            if tags is None:
                tags = found.tags
            if features is None:
                features = found.features
            if files is None:
                files = found.files
            if importance is None:
                importance = found.suggested_importance
        record = MemoryRecord(
            type=type,
            title=title,
            description=description,
            importance=importance or "medium",
            scope=scope or infer_scope(type),
            project=project,
            tags=list(tags or []),
            related_files=list(files or []),
            features=list(features or []),
            created_at_epoch=self.db.now(),
            metadata=dict(metadata or {}),
            source=source,
        )
        with self.db.transaction() as conn:
            self._insert(conn, record)
        logger.debug(f"Memory saved: {record.id} ({record.type}) {record.title!r}")
        return record

    def update(self, memory_id: str, **fields: Any) -> MemoryRecord:
        """Patch fields in place.  ``id`` and ``created_at_epoch`` are immutable.

        Raises:
            NotFound: unknown memory id.
            ValueError: unknown or immutable field, or invalid value.
        """
        bad = set(fields) - _MUTABLE_FIELDS
        if bad:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(bad))}")
        with self.db.transaction() as conn:
            current = self._fetch(conn, memory_id)
            if current is None:
                raise NotFound(
                    "update_memory", f"memory not found: {memory_id}",
                    {"memory_id": memory_id},
                )
            merged = current.to_dict()
            merged.update(fields)
            record = MemoryRecord.from_dict(merged)  # re-validates enums
            assignments = ", ".join(f"{k}=?" for k in sorted(fields))
            values = [
                self._column_value(k, getattr(record, k)) for k in sorted(fields)
            ]
            if assignments:
                conn.execute(
                    f"UPDATE memories SET {assignments} WHERE id=?",
                    values + [memory_id],
                )
        logger.debug(f"Memory updated: {memory_id} ({', '.join(sorted(fields))})")
        return record

    def delete(self, memory_id: str) -> bool:
        """Remove a memory with its links and embedding. False if absent."""
        with self.db.transaction() as conn:
            cur = conn.execute("DELETE FROM memories WHERE id=?", (memory_id,))
            deleted = cur.rowcount > 0
        if deleted:
            logger.info(f"Memory deleted: {memory_id}")
        return deleted

    def increment_usage(self, memory_id: str) -> None:
        """Bump usage_count and last_used_at_epoch."""
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE memories SET usage_count=usage_count+1, "
                "last_used_at_epoch=? WHERE id=?",
                (self.db.now(), memory_id),
            )
            if cur.rowcount == 0:
                raise NotFound(
                    "increment_usage", f"memory not found: {memory_id}",
                    {"memory_id": memory_id},
                )

    def promote(self, memory_id: str) -> MemoryRecord:
        """Copy a project memory into global scope (source ``promoted``).

        A memory that is already global is returned unchanged.
        """
        with self.db.transaction() as conn:
            original = self._fetch(conn, memory_id)
            if original is None:
                raise NotFound(
                    "promote_memory", f"memory not found: {memory_id}",
                    {"memory_id": memory_id},
                )
            if original.scope == "global":
                return original
            metadata = dict(original.metadata)
            metadata["original_project"] = original.project
            metadata["original_id"] = original.id
            copy = MemoryRecord(
                type=original.type,
                title=original.title,
                description=original.description,
                importance=original.importance,
                scope="global",
                project=None,
                tags=list(original.tags),
                related_files=list(original.related_files),
                features=list(original.features),
                created_at_epoch=self.db.now(),
                metadata=metadata,
                source="promoted",
            )
            self._insert(conn, copy)
        logger.info(f"Memory promoted: {memory_id} -> {copy.id}")
        return copy

    # -- Read operations ---------------------------------------------------

    def get(self, memory_id: str) -> Optional[MemoryRecord]:
        """Read a single memory by ID."""
        with self.db.read() as conn:
            return self._fetch(conn, memory_id)

    def get_many(self, memory_ids: Iterable[str]) -> Dict[str, MemoryRecord]:
        """Read several memories; missing ids are simply absent."""
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        marks = ",".join("?" for _ in ids)
        with self.db.read() as conn:
            rows = conn.execute(
                f"SELECT m.*, (e.memory_id IS NOT NULL) AS has_embedding "
                f"FROM memories m LEFT JOIN memory_embeddings e ON e.memory_id = m.id "
                f"WHERE m.id IN ({marks})",
                ids,
            ).fetchall()
        return {r["id"]: self._row_to_memory(r) for r in rows}

    def exists(self, memory_id: str) -> bool:
        with self.db.read() as conn:
            return conn.execute(
                "SELECT 1 FROM memories WHERE id=?", (memory_id,)
            ).fetchone() is not None

    def recent(
        self,
        project: Optional[str] = None,
        limit: int = 10,
        type: Optional[str] = None,
        include_global: bool = True,
    ) -> List[MemoryRecord]:
        """Most recently created memories, newest first."""
        filters = MemoryFilters(
            project=project, type=type, include_global=include_global,
        )
        return [r.memory for r in self._recent(filters, limit)]

    def search(
        self,
        query: str,
        filters: Optional[MemoryFilters] = None,
        limit: int = 10,
    ) -> List[MemorySearchResult]:
        """Ranked memory search with the substring fallback.

        An empty query lists recent memories (relevance 0).
        """
        filters = filters or MemoryFilters()
        if limit <= 0:
            return []
        if not query.strip():
            return self._recent(filters, limit)

        conditions, params = _filter_clause(filters)
        extra = "".join(f" AND {c}" for c in conditions)
        ranked_sql = (
            "SELECT m.*, (e.memory_id IS NOT NULL) AS has_embedding, "
            "bm25(memories_fts) AS bm25_score "
            "FROM memories_fts f "
            "JOIN memories m ON m.seq = f.rowid "
            "LEFT JOIN memory_embeddings e ON e.memory_id = m.id "
            f"WHERE memories_fts MATCH ?{extra} "
            "ORDER BY bm25_score LIMIT ?"
        )
        like_sql = (
            "SELECT m.*, (e.memory_id IS NOT NULL) AS has_embedding "
            "FROM memories m LEFT JOIN memory_embeddings e ON e.memory_id = m.id "
            "WHERE (m.title LIKE ? ESCAPE '\\' OR m.description LIKE ? ESCAPE '\\')"
            f"{extra} ORDER BY m.created_at_epoch, m.seq LIMIT ?"
        )
        pattern = like_pattern(query)
        with self.db.read() as conn:
            hits, strategy = ranked_search(
                conn,
                fts5_available=self.db.fts5_available,
                ranked_sql=ranked_sql,
                ranked_params=[build_fts_query(query), *params, limit],
                like_sql=like_sql,
                like_params=[pattern, pattern, *params, limit],
                fallback_relevance=self.fallback_relevance,
            )
        results = [
            MemorySearchResult(memory=self._row_to_memory(row), relevance=rel)
            for row, rel in hits
        ]
        logger.debug(f"[memory] search {query!r} -> {len(results)} hits ({strategy})")
        return results

    # -- Consolidation -----------------------------------------------------

    def find_similar(
        self,
        project: Optional[str] = None,
        threshold: float = consolidate.MERGE_THRESHOLD,
        limit: int = 20,
        window: int = 100,
    ) -> List[SimilarityMatch]:
        """Pairs of near-duplicate memories among the ``window`` most recent.

        Pairs scoring at least ``threshold`` are returned, most similar first.
        Nothing is modified.
        """
        candidates = [
            r.memory for r in self._recent(
                MemoryFilters(project=project, include_global=False), window,
            )
        ]
        matches: List[SimilarityMatch] = []
        for i, m1 in enumerate(candidates):
            for m2 in candidates[i + 1:]:
                sim = consolidate.memory_similarity(m1, m2)
                if sim < threshold:
                    continue
                matches.append(SimilarityMatch(
                    memory1=m1,
                    memory2=m2,
                    similarity=round(sim, 2),
                    reason=consolidate.similarity_reason(m1, m2, sim),
                    suggested_action=consolidate.suggest_action(m1, m2, sim),
                ))
        matches.sort(key=lambda m: -m.similarity)
        return matches[:limit]

    def find_stale(
        self,
        project: Optional[str] = None,
        max_age_days: float = 90,
        limit: int = 20,
    ) -> List[MemoryRecord]:
        """Low/medium importance memories older than ``max_age_days``, oldest first."""
        cutoff = self.db.now() - max_age_days * 86400
        conditions, params = _filter_clause(
            MemoryFilters(project=project, include_global=False)
        )
        conditions += ["m.created_at_epoch < ?", "m.importance IN ('low', 'medium')"]
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT m.*, (e.memory_id IS NOT NULL) AS has_embedding "
                "FROM memories m LEFT JOIN memory_embeddings e ON e.memory_id = m.id "
                f"WHERE {' AND '.join(conditions)} "
                "ORDER BY m.created_at_epoch, m.seq LIMIT ?",
                params + [cutoff, limit],
            ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def merge(self, keep_id: str, other_id: str) -> MemoryRecord:
        """Fold ``other`` into ``keep`` and link ``keep`` supersedes ``other``.

        Tags, features and files become unions; a differing description is
        appended under a ``[Merged from: <title>]`` marker.  ``other`` stays
        in place (its supersession is visible through the link graph).

        Raises:
            NotFound: either id is unknown.
            ValueError: both ids are the same.
        """
        if keep_id == other_id:
            raise ValueError("cannot merge a memory into itself")
        details = {"keep_id": keep_id, "other_id": other_id}
        with self.db.transaction() as conn:
            keep = self._fetch(conn, keep_id)
            other = self._fetch(conn, other_id)
            for memory_id, record in ((keep_id, keep), (other_id, other)):
                if record is None:
                    raise NotFound(
                        "merge_memories", f"memory not found: {memory_id}", details,
                    )
            keep.description = consolidate.merged_description(keep, other)
            keep.tags = consolidate.merged_lists(keep.tags, other.tags)
            keep.features = consolidate.merged_lists(keep.features, other.features)
            keep.related_files = consolidate.merged_lists(
                keep.related_files, other.related_files,
            )
            conn.execute(
                "UPDATE memories SET description=?, tags=?, features=?, "
                "related_files=? WHERE id=?",
                (
                    keep.description,
                    self._column_value("tags", keep.tags),
                    self._column_value("features", keep.features),
                    self._column_value("related_files", keep.related_files),
                    keep_id,
                ),
            )
            conn.execute(
                """INSERT OR IGNORE INTO memory_links
                   (from_id, to_id, link_type, created_at_epoch)
                   VALUES (?,?,'supersedes',?)""",
                (keep_id, other_id, self.db.now()),
            )
        logger.info(f"Memory merged: {other_id} -> {keep_id}")
        return keep

    def cleanup_stale(
        self,
        project: Optional[str] = None,
        max_age_days: float = 180,
        dry_run: bool = True,
    ) -> Dict[str, Any]:
        """Delete stale memories (see find_stale); ``dry_run`` only lists them."""
        stale = self.find_stale(project, max_age_days, limit=100)
        if stale and not dry_run:
            with self.db.transaction() as conn:
                conn.executemany(
                    "DELETE FROM memories WHERE id=?", [(m.id,) for m in stale],
                )
            logger.info(f"Stale memories deleted: {len(stale)} (> {max_age_days} days)")
        return {"count": len(stale), "dry_run": dry_run, "memories": stale}

    def consolidation_report(
        self,
        project: Optional[str] = None,
        threshold: float = consolidate.MERGE_THRESHOLD,
        stale_days: float = 90,
    ) -> Dict[str, Any]:
        """Duplicate groups, mergeable pairs and stale count for a project."""
        matches = self.find_similar(project, threshold, limit=20)
        dup = consolidate.DUPLICATE_THRESHOLD
        return {
            "duplicate_groups": sum(1 for m in matches if m.similarity > dup),
            "similar_matches": [m for m in matches if m.similarity <= dup],
            "stale_count": len(self.find_stale(project, stale_days, limit=50)),
        }

    # -- Embeddings --------------------------------------------------------

    def store_embedding(
        self, memory_id: str, vector: Sequence[float], model_name: str = "",
    ) -> None:
        """Store or replace the vector of a memory."""
        with self.db.transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM memories WHERE id=?", (memory_id,)
            ).fetchone() is None:
                raise NotFound(
                    "store_embedding", f"memory not found: {memory_id}",
                    {"memory_id": memory_id},
                )
            conn.execute(
                """INSERT INTO memory_embeddings
                   (memory_id, model_name, dimension, vector, created_at_epoch)
                   VALUES (?,?,?,?,?)
                   ON CONFLICT(memory_id) DO UPDATE SET
                       model_name=excluded.model_name,
                       dimension=excluded.dimension,
                       vector=excluded.vector,
                       created_at_epoch=excluded.created_at_epoch""",
                (memory_id, model_name, len(vector), _pack_vector(vector),
                 self.db.now()),
            )

    def get_embedding(self, memory_id: str) -> Optional[List[float]]:
        """Vector of a memory, or None."""
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT vector, dimension FROM memory_embeddings WHERE memory_id=?",
                (memory_id,),
            ).fetchone()
        return _unpack_vector(row["vector"], row["dimension"]) if row else None

    def embeddings(self, memory_ids: Iterable[str]) -> Dict[str, List[float]]:
        """Vectors for the given ids (ids without a vector are absent)."""
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        marks = ",".join("?" for _ in ids)
        with self.db.read() as conn:
            rows = conn.execute(
                f"SELECT memory_id, vector, dimension FROM memory_embeddings "
                f"WHERE memory_id IN ({marks})",
                ids,
            ).fetchall()
        return {
            r["memory_id"]: _unpack_vector(r["vector"], r["dimension"]) for r in rows
        }

    def missing_embeddings(self, limit: int = 100) -> List[MemoryRecord]:
        """Memories that have no stored vector yet (oldest first)."""
        with self.db.read() as conn:
            rows = conn.execute(
                """SELECT m.*, 0 AS has_embedding FROM memories m
                   LEFT JOIN memory_embeddings e ON e.memory_id = m.id
                   WHERE e.memory_id IS NULL
                   ORDER BY m.seq LIMIT ?""",
                (limit,),
            ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    # -- Stats -------------------------------------------------------------

    def counts_by_scope(self) -> Dict[str, int]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT scope, COUNT(*) AS cnt FROM memories GROUP BY scope"
            ).fetchall()
        return {r["scope"]: r["cnt"] for r in rows}

    def counts_by_source(self) -> Dict[str, int]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT source, COUNT(*) AS cnt FROM memories GROUP BY source"
            ).fetchall()
        return {r["source"]: r["cnt"] for r in rows}

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the memory namespace."""
        with self.db.read() as conn:
            total = conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            by_type = {
                r["type"]: r["cnt"] for r in conn.execute(
                    "SELECT type, COUNT(*) AS cnt FROM memories GROUP BY type"
                ).fetchall()
            }
            embeddings_count = conn.execute(
                "SELECT COUNT(*) FROM memory_embeddings"
            ).fetchone()[0]
        return {
            "total_memories": total,
            "by_type": by_type,
            "by_scope": self.counts_by_scope(),
            "by_source": self.counts_by_source(),
            "embeddings_count": embeddings_count,
        }

    # -- Internal helpers --------------------------------------------------

    def _recent(self, filters: MemoryFilters, limit: int) -> List[MemorySearchResult]:
        conditions, params = _filter_clause(filters)
        where = " AND ".join(conditions) if conditions else "1=1"
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT m.*, (e.memory_id IS NOT NULL) AS has_embedding "
                "FROM memories m LEFT JOIN memory_embeddings e ON e.memory_id = m.id "
                f"WHERE {where} ORDER BY m.created_at_epoch DESC, m.seq DESC LIMIT ?",
                params + [limit],
            ).fetchall()
        return [MemorySearchResult(memory=self._row_to_memory(r), relevance=0.0)
                for r in rows]

    @staticmethod
    def _column_value(name: str, value: Any) -> Any:
        if name in _JSON_FIELDS:
            return json.dumps(value, ensure_ascii=False)
        return value

    def _insert(self, conn: sqlite3.Connection, record: MemoryRecord) -> None:
        conn.execute(
            """INSERT INTO memories
               (id, type, title, description, importance, scope, project,
                tags, related_files, features, metadata, source,
                usage_count, last_used_at_epoch, created_at_epoch)
               VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
            (
                record.id, record.type, record.title, record.description,
                record.importance, record.scope, record.project,
                json.dumps(record.tags, ensure_ascii=False),
                json.dumps(record.related_files, ensure_ascii=False),
                json.dumps(record.features, ensure_ascii=False),
                json.dumps(record.metadata, ensure_ascii=False),
                record.source, record.usage_count, record.last_used_at_epoch,
                record.created_at_epoch,
            ),
        )

    def _fetch(self, conn: sqlite3.Connection, memory_id: str) -> Optional[MemoryRecord]:
        row = conn.execute(
            "SELECT m.*, (e.memory_id IS NOT NULL) AS has_embedding "
            "FROM memories m LEFT JOIN memory_embeddings e ON e.memory_id = m.id "
            "WHERE m.id=?",
            (memory_id,),
        ).fetchone()
        return self._row_to_memory(row) if row else None

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> MemoryRecord:
        """Convert a SQLite Row to MemoryRecord."""
        return MemoryRecord(
            id=row["id"],
            type=row["type"],
            title=row["title"],
            description=row["description"],
            importance=row["importance"],
            scope=row["scope"],
            project=row["project"],
            tags=json.loads(row["tags"]),
            related_files=json.loads(row["related_files"]),
            features=json.loads(row["features"]),
            created_at_epoch=row["created_at_epoch"],
            metadata=json.loads(row["metadata"]),
            source=row["source"],
            usage_count=row["usage_count"],
            last_used_at_epoch=row["last_used_at_epoch"],
            has_embedding=bool(row["has_embedding"]),
        )
