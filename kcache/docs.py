"""
Documentation Cache — TTL-bounded library docs store

Tables:
    library_docs   - one row per canonical library (unique external_id)
    doc_sections   - sections owned by a library (cascade-deleted with it)
    docs_fts       - FTS5 shadow index over doc_sections

Saving a library is an upsert that keeps its internal id and refreshes the
fetch/expiry pair.  Expiry is advisory until sweep_expired() runs: reads
never delete.  Saving a section for an unknown library raises NotFound.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Sequence

from kcache.db import Database
from kcache.errors import NotFound
from kcache.fts import build_fts_query, like_pattern, ranked_search
from kcache.memory import _pack_vector, _unpack_vector
from kcache.types import (
    FALLBACK_RELEVANCE,
    TTL_SECONDS,
    DocSearchResult,
    LibraryRecord,
    SectionRecord,
    _generate_id,
)

logger = logging.getLogger(__name__)

# fetched_at never moves backwards, and a refresh always moves it forward
_MIN_REFRESH_STEP = 1e-6


class DocsCache:
    """
    Library documentation namespace of the knowledge cache.

    All mutations of one logical operation share one transaction.
    """

    def __init__(
        self,
        db: Database,
        ttl_seconds: float = TTL_SECONDS,
        fallback_relevance: float = FALLBACK_RELEVANCE,
    ):
        self.db = db
        self.ttl_seconds = ttl_seconds
        self.fallback_relevance = fallback_relevance

    # -- Libraries ---------------------------------------------------------

    def save_library(
        self,
        external_id: str,
        display_name: str,
        version: Optional[str] = None,
    ) -> LibraryRecord:
        """Insert or refresh a library, preserving its internal id.

        ``version=None`` stores an absent version; ``""`` is kept as-is.
        """
        if not external_id:
            raise ValueError("external_id must not be empty")
        now = self.db.now()
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT id, fetched_at_epoch FROM library_docs WHERE external_id=?",
                (external_id,),
            ).fetchone()
            if row is None:
                lib_id = _generate_id("LIB")
                conn.execute(
                    """INSERT INTO library_docs
                       (id, external_id, display_name, version,
                        fetched_at_epoch, expires_at_epoch, section_count)
                       VALUES (?,?,?,?,?,?,0)""",
                    (lib_id, external_id, display_name, version,
                     now, now + self.ttl_seconds),
                )
                logger.debug(f"Library cached: {external_id} ({lib_id})")
            else:
                lib_id = row["id"]
                fetched = max(now, row["fetched_at_epoch"] + _MIN_REFRESH_STEP)
                conn.execute(
                    """UPDATE library_docs
                       SET display_name=?, version=?,
                           fetched_at_epoch=?, expires_at_epoch=?
                       WHERE id=?""",
                    (display_name, version, fetched,
                     fetched + self.ttl_seconds, lib_id),
                )
                logger.debug(f"Library refreshed: {external_id} ({lib_id})")
            saved = conn.execute(
                "SELECT * FROM library_docs WHERE id=?", (lib_id,)
            ).fetchone()
        return self._row_to_library(saved, now)

    def get_library(self, external_id: str) -> Optional[LibraryRecord]:
        """Library by canonical id, with a derived ``is_expired``."""
        now = self.db.now()
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM library_docs WHERE external_id=?", (external_id,)
            ).fetchone()
        return self._row_to_library(row, now) if row else None

    def get_library_by_name(self, name: str) -> Optional[LibraryRecord]:
        """Library by display name (case-insensitive)."""
        now = self.db.now()
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM library_docs WHERE lower(display_name)=lower(?) "
                "ORDER BY fetched_at_epoch DESC LIMIT 1",
                (name.strip(),),
            ).fetchone()
        return self._row_to_library(row, now) if row else None

    def list_libraries(self, expired_only: bool = False) -> List[LibraryRecord]:
        """All libraries (most recently fetched first), optionally expired only."""
        now = self.db.now()
        sql = "SELECT * FROM library_docs"
        params: list = []
        if expired_only:
            sql += " WHERE expires_at_epoch < ?"
            params.append(now)
        sql += " ORDER BY fetched_at_epoch DESC, seq DESC"
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_library(r, now) for r in rows]

    def delete_library(self, external_id: str) -> Dict[str, int]:
        """Delete a library and its sections.

        Returns ``{"libraries_deleted": 0|1, "sections_deleted": n}``.
        """
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT id FROM library_docs WHERE external_id=?", (external_id,)
            ).fetchone()
            if row is None:
                return {"libraries_deleted": 0, "sections_deleted": 0}
            sections = conn.execute(
                "SELECT COUNT(*) FROM doc_sections WHERE library_id=?", (row["id"],)
            ).fetchone()[0]
            conn.execute("DELETE FROM library_docs WHERE id=?", (row["id"],))
        logger.info(f"Library deleted: {external_id} ({sections} sections)")
        return {"libraries_deleted": 1, "sections_deleted": sections}

    def sweep_expired(self) -> Dict[str, int]:
        """Delete every library with ``expires_at_epoch < now`` (and sections)."""
        now = self.db.now()
        with self.db.transaction() as conn:
            sections = conn.execute(
                """SELECT COUNT(*) FROM doc_sections
                   WHERE library_id IN
                       (SELECT id FROM library_docs WHERE expires_at_epoch < ?)""",
                (now,),
            ).fetchone()[0]
            cur = conn.execute(
                "DELETE FROM library_docs WHERE expires_at_epoch < ?", (now,)
            )
            libraries = cur.rowcount
        if libraries:
            logger.info(
                f"Swept expired docs: {libraries} libraries, {sections} sections"
            )
        return {"libraries_deleted": libraries, "sections_deleted": sections}

    # -- Sections ----------------------------------------------------------

    def save_section(
        self,
        external_id: str,
        title: str,
        content: str,
        code_snippets: Optional[List[str]] = None,
        page_number: int = 1,
        topic: Optional[str] = None,
    ) -> SectionRecord:
        """Insert or update a section keyed by (library, topic, title).

        Recomputes the library's ``section_count`` in the same transaction.

        Raises:
            NotFound: the library is not cached.
        """
        snippets = list(code_snippets or [])
        with self.db.transaction() as conn:
            lib = conn.execute(
                "SELECT id FROM library_docs WHERE external_id=?", (external_id,)
            ).fetchone()
            if lib is None:
                raise NotFound(
                    "save_section", f"library not cached: {external_id}",
                    {"external_id": external_id},
                )
            lib_id = lib["id"]
            existing = conn.execute(
                "SELECT id FROM doc_sections "
                "WHERE library_id=? AND title=? AND topic IS ?",
                (lib_id, title, topic),
            ).fetchone()
            if existing is None:
                sec_id = _generate_id("SEC")
                conn.execute(
                    """INSERT INTO doc_sections
                       (id, library_id, topic, title, content, code_snippets, page_number)
                       VALUES (?,?,?,?,?,?,?)""",
                    (sec_id, lib_id, topic, title, content,
                     json.dumps(snippets, ensure_ascii=False), page_number),
                )
            else:
                sec_id = existing["id"]
                conn.execute(
                    """UPDATE doc_sections
                       SET content=?, code_snippets=?, page_number=?
                       WHERE id=?""",
                    (content, json.dumps(snippets, ensure_ascii=False),
                     page_number, sec_id),
                )
            self._recount_sections(conn, lib_id)
        return SectionRecord(
            id=sec_id, library_id=lib_id, title=title, content=content,
            code_snippets=snippets, page_number=page_number, topic=topic,
        )

    def get_sections(
        self, external_id: str, topic: Optional[str] = None,
    ) -> List[SectionRecord]:
        """Sections of a library in page order (empty if not cached)."""
        sql = (
            "SELECT s.* FROM doc_sections s "
            "JOIN library_docs l ON l.id = s.library_id WHERE l.external_id=?"
        )
        params: list = [external_id]
        if topic is not None:
            sql += " AND s.topic=?"
            params.append(topic)
        sql += " ORDER BY s.page_number, s.seq"
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_section(r) for r in rows]

    # -- Search ------------------------------------------------------------

    def search_docs(
        self,
        query: str,
        library: Optional[str] = None,
        topic: Optional[str] = None,
        limit: int = 10,
    ) -> List[DocSearchResult]:
        """Ranked section search with the substring fallback.

        Args:
            query: Free text; tokens become OR-joined prefix terms.
            library: Display name or external id (case-insensitive).
                An unknown library yields no results.
            topic: Exact topic filter.
            limit: Maximum results.
        """
        if not query.strip() or limit <= 0:
            return []

        with self.db.read() as conn:
            conditions: List[str] = []
            params: list = []
            if library:
                lib = conn.execute(
                    "SELECT id FROM library_docs "
                    "WHERE lower(display_name)=lower(?) OR lower(external_id)=lower(?) "
                    "ORDER BY fetched_at_epoch DESC LIMIT 1",
                    (library.strip(), library.strip()),
                ).fetchone()
                if lib is None:
                    return []
                conditions.append("s.library_id=?")
                params.append(lib["id"])
            if topic is not None:
                conditions.append("s.topic=?")
                params.append(topic)
            extra = "".join(f" AND {c}" for c in conditions)

            ranked_sql = (
                "SELECT s.*, l.display_name AS library_name, bm25(docs_fts) AS bm25_score "
                "FROM docs_fts f "
                "JOIN doc_sections s ON s.seq = f.rowid "
                "JOIN library_docs l ON l.id = s.library_id "
                f"WHERE docs_fts MATCH ?{extra} "
                "ORDER BY bm25_score LIMIT ?"
            )
            like_sql = (
                "SELECT s.*, l.display_name AS library_name "
                "FROM doc_sections s JOIN library_docs l ON l.id = s.library_id "
                "WHERE (s.title LIKE ? ESCAPE '\\' OR s.content LIKE ? ESCAPE '\\')"
                f"{extra} ORDER BY s.page_number, s.seq LIMIT ?"
            )
            pattern = like_pattern(query)
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
            DocSearchResult(
                section=self._row_to_section(row),
                library_name=row["library_name"],
                relevance=relevance,
            )
            for row, relevance in hits
        ]
        logger.debug(f"[docs] search {query!r} -> {len(results)} hits ({strategy})")
        return results

    # -- Section embeddings ------------------------------------------------

    def store_section_embedding(
        self, section_id: str, vector: Sequence[float], model_name: str = "",
    ) -> None:
        """Store or replace the vector of a section (dropped with the section)."""
        with self.db.transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM doc_sections WHERE id=?", (section_id,)
            ).fetchone() is None:
                raise NotFound(
                    "store_section_embedding", f"section not found: {section_id}",
                    {"section_id": section_id},
                )
            conn.execute(
                """INSERT INTO section_embeddings
                   (section_id, model_name, dimension, vector, created_at_epoch)
                   VALUES (?,?,?,?,?)
                   ON CONFLICT(section_id) DO UPDATE SET
                       model_name=excluded.model_name,
                       dimension=excluded.dimension,
                       vector=excluded.vector,
                       created_at_epoch=excluded.created_at_epoch""",
                (section_id, model_name, len(vector), _pack_vector(vector),
                 self.db.now()),
            )

    def section_embeddings(self, section_ids: Iterable[str]) -> Dict[str, List[float]]:
        """Vectors for the given section ids (ids without a vector are absent)."""
        ids = list(dict.fromkeys(section_ids))
        if not ids:
            return {}
        marks = ",".join("?" for _ in ids)
        with self.db.read() as conn:
            rows = conn.execute(
                f"SELECT section_id, vector, dimension FROM section_embeddings "
                f"WHERE section_id IN ({marks})",
                ids,
            ).fetchall()
        return {
            r["section_id"]: _unpack_vector(r["vector"], r["dimension"]) for r in rows
        }

    def missing_section_embeddings(self, limit: int = 100) -> List[SectionRecord]:
        """Sections without a stored vector, in insertion order."""
        with self.db.read() as conn:
            rows = conn.execute(
                """SELECT s.* FROM doc_sections s
                   LEFT JOIN section_embeddings e ON e.section_id = s.id
                   WHERE e.section_id IS NULL
                   ORDER BY s.seq LIMIT ?""",
                (limit,),
            ).fetchall()
        return [self._row_to_section(r) for r in rows]

    # -- Stats -------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Summary statistics for the documentation namespace."""
        now = self.db.now()
        with self.db.read() as conn:
            row = conn.execute(
                """SELECT COUNT(*) AS libs,
                          SUM(CASE WHEN expires_at_epoch < ? THEN 1 ELSE 0 END) AS expired,
                          MIN(fetched_at_epoch) AS oldest,
                          MAX(fetched_at_epoch) AS newest
                   FROM library_docs""",
                (now,),
            ).fetchone()
            sections = conn.execute("SELECT COUNT(*) FROM doc_sections").fetchone()[0]
            embedded = conn.execute("SELECT COUNT(*) FROM section_embeddings").fetchone()[0]
        return {
            "total_libraries": row["libs"],
            "total_sections": sections,
            "embeddings_count": embedded,
            "expired_count": row["expired"] or 0,
            "oldest_fetch": row["oldest"],
            "newest_fetch": row["newest"],
        }

    # -- Internal helpers --------------------------------------------------

    @staticmethod
    def _recount_sections(conn: sqlite3.Connection, lib_id: str) -> None:
        conn.execute(
            """UPDATE library_docs SET section_count =
                   (SELECT COUNT(*) FROM doc_sections WHERE library_id=?)
               WHERE id=?""",
            (lib_id, lib_id),
        )

    @staticmethod
    def _row_to_library(row: sqlite3.Row, now: float) -> LibraryRecord:
        """Convert a SQLite Row to LibraryRecord, deriving expiry from now."""
        lib = LibraryRecord(
            id=row["id"],
            external_id=row["external_id"],
            display_name=row["display_name"],
            version=row["version"],
            fetched_at_epoch=row["fetched_at_epoch"],
            expires_at_epoch=row["expires_at_epoch"],
            section_count=row["section_count"],
        )
        lib.is_expired = lib.expired_at(now)
        return lib

    @staticmethod
    def _row_to_section(row: sqlite3.Row) -> SectionRecord:
        """Convert a SQLite Row to SectionRecord."""
        return SectionRecord(
            id=row["id"],
            library_id=row["library_id"],
            title=row["title"],
            content=row["content"],
            code_snippets=json.loads(row["code_snippets"]),
            page_number=row["page_number"],
            topic=row["topic"],
        )
