"""
Full-Text Index — ranked query with a deterministic substring fallback

Both namespaces keep an external-content FTS5 table in sync with their base
table through triggers (see schema.py), so the index is updated in the same
transaction as every insert, update and delete.

Query building:
    1. strip quote characters
    2. split on whitespace
    3. each token becomes a prefix term (``token*``)
    4. terms are joined with OR

Relevance is ``abs(bm25)`` (higher = more relevant).  When the ranked query
cannot be evaluated (FTS5 missing, malformed syntax, any engine error) the
search falls back to ``LIKE '%query%'`` over the same filters and returns
every match with the constant ``FALLBACK_RELEVANCE`` (0.5), ordered by a
secondary key (page number or creation order) instead of relevance.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import sqlite3
from typing import List, Sequence, Tuple

from kcache.errors import SearchBackendError
from kcache.types import FALLBACK_RELEVANCE, SearchStrategy

logger = logging.getLogger(__name__)

_QUOTES = str.maketrans("", "", "'\"")


def build_fts_query(query: str) -> str:
    """Turn free text into an FTS5 MATCH expression (prefix terms, OR-joined).

    Returns "" when the query has no tokens.

    >>> build_fts_query('app "router"')
    'app* OR router*'
    """
    tokens = query.translate(_QUOTES).split()
    return " OR ".join(f"{t}*" for t in tokens)


def like_pattern(query: str) -> str:
    """``%query%`` with LIKE wildcards escaped (use with ``ESCAPE '\\'``)."""
    escaped = (
        query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )
    return f"%{escaped}%"


def _run_ranked(
    conn: sqlite3.Connection, sql: str, params: Sequence,
) -> List[sqlite3.Row]:
    """Execute the ranked query; engine errors become SearchBackendError."""
    try:
        return conn.execute(sql, list(params)).fetchall()
    except (sqlite3.OperationalError, sqlite3.DatabaseError) as exc:
        raise SearchBackendError(
            "fts_search", str(exc), {"params": [str(p) for p in params]},
        ) from exc


def ranked_search(
    conn: sqlite3.Connection,
    *,
    fts5_available: bool,
    ranked_sql: str,
    ranked_params: Sequence,
    like_sql: str,
    like_params: Sequence,
    fallback_relevance: float = FALLBACK_RELEVANCE,
) -> Tuple[List[Tuple[sqlite3.Row, float]], SearchStrategy]:
    """Run the ranked query, or the substring query if it cannot be evaluated.

    ``ranked_sql`` must select a ``bm25_score`` column holding the bm25 score
    (lower is better, as FTS5 returns it).  ``like_sql`` must already carry
    the secondary ordering.  The caller holds the connection lock.

    Returns:
        ([(row, relevance), ...], strategy)
    """
    if fts5_available:
        try:
            rows = _run_ranked(conn, ranked_sql, ranked_params)
            return [(r, abs(r["bm25_score"] or 0.0)) for r in rows], "fts5"
        except SearchBackendError as exc:
            logger.warning(
                f"[search] ranked query failed, falling back to LIKE: {exc.reason}"
            )
    rows = conn.execute(like_sql, list(like_params)).fetchall()
    return [(r, fallback_relevance) for r in rows], "like"
