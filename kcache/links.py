"""
Relationship Graph — typed, directed links between memories

Link types: caused | related | supersedes | implements | contradicts.
The triple (from_id, to_id, link_type) is unique and cycles are legal.
``supersedes`` marks its target as outdated without deleting or hiding it.

Traversal is breadth-first with a visited set, so every node is reported
once (at its shortest hop distance) even on cyclic graphs, and never past
``max_depth`` hops.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import sqlite3
from collections import deque
from typing import Any, Dict, List, Optional

from kcache.db import Database
from kcache.errors import Conflict, InvalidLink, NotFound
from kcache.memory import MemoryStore
from kcache.types import (
    VALID_DIRECTIONS,
    VALID_LINK_TYPES,
    ChainNode,
    LinkRecord,
    SupersededRecord,
)

logger = logging.getLogger(__name__)


class LinkGraph:
    """Relationship graph over the memory namespace."""

    def __init__(self, db: Database, memories: MemoryStore):
        self.db = db
        self.memories = memories

    # -- Write operations --------------------------------------------------

    def create_link(self, from_id: str, to_id: str, link_type: str) -> LinkRecord:
        """Create a directed link.

        Raises:
            InvalidLink: self-link or unknown link type.
            NotFound: either endpoint does not exist.
            Conflict: the exact triple already exists.
        """
        details = {"from_id": from_id, "to_id": to_id, "link_type": link_type}
        if link_type not in VALID_LINK_TYPES:
            raise InvalidLink(
                "create_link", f"unknown link type: {link_type!r}", details,
            )
        if from_id == to_id:
            raise InvalidLink("create_link", "self-links are not allowed", details)
        link = LinkRecord(
            from_id=from_id, to_id=to_id, link_type=link_type,
            created_at_epoch=self.db.now(),
        )
        with self.db.transaction() as conn:
            for endpoint in (from_id, to_id):
                if conn.execute(
                    "SELECT 1 FROM memories WHERE id=?", (endpoint,)
                ).fetchone() is None:
                    raise NotFound(
                        "create_link", f"memory not found: {endpoint}", details,
                    )
            try:
                conn.execute(
                    """INSERT INTO memory_links
                       (from_id, to_id, link_type, created_at_epoch)
                       VALUES (?,?,?,?)""",
                    (from_id, to_id, link_type, link.created_at_epoch),
                )
            except sqlite3.IntegrityError as exc:
                raise Conflict("create_link", "link already exists", details) from exc
        logger.debug(f"Link created: {from_id} -[{link_type}]-> {to_id}")
        return link

    def delete_link(
        self, from_id: str, to_id: str, link_type: Optional[str] = None,
    ) -> int:
        """Remove one link (or every type between the pair). Returns count."""
        sql = "DELETE FROM memory_links WHERE from_id=? AND to_id=?"
        params: list = [from_id, to_id]
        if link_type is not None:
            sql += " AND link_type=?"
            params.append(link_type)
        with self.db.transaction() as conn:
            removed = conn.execute(sql, params).rowcount
        return removed

    def delete_all_links(self, memory_id: str) -> int:
        """Remove every link touching a memory. Returns count."""
        with self.db.transaction() as conn:
            return conn.execute(
                "DELETE FROM memory_links WHERE from_id=? OR to_id=?",
                (memory_id, memory_id),
            ).rowcount

    # -- Lookups -----------------------------------------------------------

    def get_link(self, from_id: str, to_id: str, link_type: str) -> Optional[LinkRecord]:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM memory_links WHERE from_id=? AND to_id=? AND link_type=?",
                (from_id, to_id, link_type),
            ).fetchone()
        return self._row_to_link(row) if row else None

    def links_from(self, memory_id: str, link_type: Optional[str] = None) -> List[LinkRecord]:
        """Outgoing links, oldest first."""
        return self._select("from_id", memory_id, link_type)

    def links_to(self, memory_id: str, link_type: Optional[str] = None) -> List[LinkRecord]:
        """Incoming links, oldest first."""
        return self._select("to_id", memory_id, link_type)

    def all_links(self, memory_id: str) -> List[LinkRecord]:
        """Links in either direction."""
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM memory_links WHERE from_id=? OR to_id=? ORDER BY seq",
                (memory_id, memory_id),
            ).fetchall()
        return [self._row_to_link(r) for r in rows]

    # -- Traversal ---------------------------------------------------------

    def traverse(
        self, start_id: str, direction: str = "forward", max_depth: int = 3,
    ) -> List[ChainNode]:
        """Breadth-first walk from ``start_id`` (excluded from the result).

        Args:
            start_id: Memory to start from.
            direction: ``forward`` (outgoing), ``backward`` (incoming), ``both``.
            max_depth: Maximum hops; 0 returns an empty chain.

        Raises:
            NotFound: unknown start memory.
            ValueError: invalid direction or negative depth.
        """
        if direction not in VALID_DIRECTIONS:
            raise ValueError(f"Invalid direction: {direction!r}")
        if max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")
        if not self.memories.exists(start_id):
            raise NotFound(
                "traverse_chain", f"memory not found: {start_id}",
                {"memory_id": start_id},
            )

        visited = {start_id}
        order: List[tuple] = []  # (memory_id, depth, via)
        frontier = deque([(start_id, 0)])
        with self.db.read() as conn:
            while frontier:
                node, depth = frontier.popleft()
                if depth >= max_depth:
                    continue
                for neighbour, link in self._neighbours(conn, node, direction):
                    if neighbour in visited:
                        continue
                    visited.add(neighbour)
                    order.append((neighbour, depth + 1, link))
                    frontier.append((neighbour, depth + 1))

        records = self.memories.get_many(mid for mid, _, _ in order)
        return [
            ChainNode(memory=records[mid], depth=depth, via=via)
            for mid, depth, via in order
            if mid in records
        ]

    # -- Supersession ------------------------------------------------------

    def list_superseded(self, project: Optional[str] = None) -> List[SupersededRecord]:
        """Memories targeted by at least one ``supersedes`` link.

        With ``project``, only that project's memories (and global ones).
        """
        sql = (
            "SELECT l.to_id, l.from_id FROM memory_links l "
            "JOIN memories m ON m.id = l.to_id "
            "WHERE l.link_type='supersedes'"
        )
        params: list = []
        if project:
            sql += " AND (m.project=? OR m.scope='global')"
            params.append(project)
        sql += " ORDER BY l.seq"
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        by_target: Dict[str, List[str]] = {}
        for r in rows:
            by_target.setdefault(r["to_id"], []).append(r["from_id"])
        records = self.memories.get_many(by_target)
        return [
            SupersededRecord(memory=records[tid], superseded_by=sources)
            for tid, sources in by_target.items()
            if tid in records
        ]

    def superseding_memory(self, memory_id: str):
        """The most recent memory that supersedes ``memory_id``, or None."""
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT from_id FROM memory_links "
                "WHERE to_id=? AND link_type='supersedes' ORDER BY seq DESC LIMIT 1",
                (memory_id,),
            ).fetchone()
        return self.memories.get(row["from_id"]) if row else None

    def is_superseded(self, memory_id: str) -> bool:
        with self.db.read() as conn:
            return conn.execute(
                "SELECT 1 FROM memory_links WHERE to_id=? AND link_type='supersedes'",
                (memory_id,),
            ).fetchone() is not None

    # -- Stats -------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Link counts: {"total": n, "by_type": {type: n}}."""
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT link_type, COUNT(*) AS cnt FROM memory_links GROUP BY link_type"
            ).fetchall()
        by_type = {t: 0 for t in sorted(VALID_LINK_TYPES)}
        for r in rows:
            by_type[r["link_type"]] = r["cnt"]
        return {"total": sum(by_type.values()), "by_type": by_type}

    # -- Internal helpers --------------------------------------------------

    def _select(self, column: str, memory_id: str, link_type: Optional[str]) -> List[LinkRecord]:
        sql = f"SELECT * FROM memory_links WHERE {column}=?"
        params: list = [memory_id]
        if link_type is not None:
            sql += " AND link_type=?"
            params.append(link_type)
        sql += " ORDER BY seq"
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_link(r) for r in rows]

    def _neighbours(self, conn: sqlite3.Connection, node: str, direction: str):
        """(neighbour_id, link) pairs in link creation order."""
        out = []
        if direction in ("forward", "both"):
            for r in conn.execute(
                "SELECT * FROM memory_links WHERE from_id=? ORDER BY seq", (node,)
            ).fetchall():
                out.append((r["to_id"], self._row_to_link(r)))
        if direction in ("backward", "both"):
            for r in conn.execute(
                "SELECT * FROM memory_links WHERE to_id=? ORDER BY seq", (node,)
            ).fetchall():
                out.append((r["from_id"], self._row_to_link(r)))
        return out

    @staticmethod
    def _row_to_link(row: sqlite3.Row) -> LinkRecord:
        return LinkRecord(
            from_id=row["from_id"],
            to_id=row["to_id"],
            link_type=row["link_type"],
            created_at_epoch=row["created_at_epoch"],
        )
