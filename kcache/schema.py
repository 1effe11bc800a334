"""
Schema Manager — numbered, idempotent migrations

Tables:
    schema_versions     - one row per applied migration step
    memories            - memory namespace (+ memories_fts shadow index)
    library_docs        - documentation namespace parents
    doc_sections        - documentation sections (+ docs_fts shadow index)
    memory_links        - typed relationships between memories
    memory_embeddings   - opaque vectors supplied by an embedding provider
    library_mappings    - resolved library names (normalized name -> id)
    library_topics      - documentation topics per canonical library
    section_embeddings  - opaque vectors for documentation sections

Each step is applied in its own transaction together with its version row,
so a failure leaves the stored version at the last fully applied step.
A stored version above the known maximum is left alone.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from kcache.errors import SchemaMigrationFailure

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# FTS5 tokenizer validation
# ---------------------------------------------------------------------------

# Conservative whitelist: the tokenizer string is interpolated into DDL.
_FTS_TOKENIZER_PATTERN = re.compile(r"^[a-zA-Z0-9_ .\-]+$")

# Well-known presets for the --fts-tokenizer flag
FTS_TOKENIZER_PRESETS = {
    "en": "porter unicode61",
    "fr": "unicode61 remove_diacritics 2",
    "raw": "unicode61",
}

DEFAULT_FTS_TOKENIZER = FTS_TOKENIZER_PRESETS["en"]


def validate_fts_tokenizer(tokenizer: str) -> str:
    """Validate and return a safe FTS5 tokenizer string."""
    tokenizer = tokenizer.strip()
    if not tokenizer:
        raise ValueError("FTS5 tokenizer string cannot be empty")
    if not _FTS_TOKENIZER_PATTERN.match(tokenizer):
        raise ValueError(
            f"Unsafe FTS5 tokenizer string: {tokenizer!r} "
            "(only [a-zA-Z0-9_ .-] characters allowed)"
        )
    return tokenizer


def detect_fts5(conn: sqlite3.Connection) -> bool:
    """Return True if this SQLite build ships the FTS5 module."""
    try:
        conn.execute("CREATE VIRTUAL TABLE temp._fts5_check USING fts5(x)")
        conn.execute("DROP TABLE temp._fts5_check")
        return True
    except sqlite3.OperationalError as exc:
        # Typical message: "no such module: fts5"
        logger.info(f"FTS5 not available, searches will use LIKE: {exc}")
        return False


# ---------------------------------------------------------------------------
# Migration steps
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Migration:
    """One schema step. ``fts_up``/``fts_down`` run only when FTS5 exists."""

    version: int
    name: str
    up: str
    down: str
    fts_up: str = ""
    fts_down: str = ""


_MEMORIES_SQL = """
CREATE TABLE IF NOT EXISTS memories (
    seq                INTEGER PRIMARY KEY,   -- stable rowid for the FTS index
    id                 TEXT NOT NULL UNIQUE,
    type               TEXT NOT NULL CHECK(type IN (
                           'observation','decision','bugfix','feature',
                           'pattern','library-note','snippet','anti-pattern')),
    title              TEXT NOT NULL,
    description        TEXT NOT NULL DEFAULT '',
    importance         TEXT NOT NULL DEFAULT 'medium'
                           CHECK(importance IN ('low','medium','high','critical')),
    scope              TEXT NOT NULL DEFAULT 'project'
                           CHECK(scope IN ('project','global')),
    project            TEXT,
    tags               TEXT NOT NULL DEFAULT '[]',   -- JSON array
    related_files      TEXT NOT NULL DEFAULT '[]',   -- JSON array
    features           TEXT NOT NULL DEFAULT '[]',   -- JSON array
    metadata           TEXT NOT NULL DEFAULT '{}',   -- JSON object
    source             TEXT NOT NULL DEFAULT 'manual',
    usage_count        INTEGER NOT NULL DEFAULT 0,
    last_used_at_epoch REAL,
    created_at_epoch   REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_project ON memories(project);
CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(type);
CREATE INDEX IF NOT EXISTS idx_memories_scope ON memories(scope);
CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at_epoch DESC);
"""

_MEMORIES_FTS_SQL = """
CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
    title, description, tags, features,
    content='memories',
    content_rowid='seq',
    tokenize='{tokenizer}'
);

CREATE TRIGGER IF NOT EXISTS memories_fts_ai
AFTER INSERT ON memories BEGIN
    INSERT INTO memories_fts(rowid, title, description, tags, features)
    VALUES (new.seq, new.title, new.description, new.tags, new.features);
END;

CREATE TRIGGER IF NOT EXISTS memories_fts_ad
AFTER DELETE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, title, description, tags, features)
    VALUES ('delete', old.seq, old.title, old.description, old.tags, old.features);
END;

CREATE TRIGGER IF NOT EXISTS memories_fts_au
AFTER UPDATE ON memories BEGIN
    INSERT INTO memories_fts(memories_fts, rowid, title, description, tags, features)
    VALUES ('delete', old.seq, old.title, old.description, old.tags, old.features);
    INSERT INTO memories_fts(rowid, title, description, tags, features)
    VALUES (new.seq, new.title, new.description, new.tags, new.features);
END;
"""

_DOCS_SQL = """
CREATE TABLE IF NOT EXISTS library_docs (
    seq              INTEGER PRIMARY KEY,
    id               TEXT NOT NULL UNIQUE,
    external_id      TEXT NOT NULL UNIQUE,
    display_name     TEXT NOT NULL,
    version          TEXT,                        -- NULL = absent
    fetched_at_epoch REAL NOT NULL,
    expires_at_epoch REAL NOT NULL,
    section_count    INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_library_docs_name ON library_docs(lower(display_name));
CREATE INDEX IF NOT EXISTS idx_library_docs_expires ON library_docs(expires_at_epoch);

CREATE TABLE IF NOT EXISTS doc_sections (
    seq           INTEGER PRIMARY KEY,
    id            TEXT NOT NULL UNIQUE,
    library_id    TEXT NOT NULL REFERENCES library_docs(id) ON DELETE CASCADE,
    topic         TEXT,                           -- NULL = absent
    title         TEXT NOT NULL,
    content       TEXT NOT NULL DEFAULT '',
    code_snippets TEXT NOT NULL DEFAULT '[]',     -- JSON array
    page_number   INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_doc_sections_key ON doc_sections(library_id, title, topic);
CREATE INDEX IF NOT EXISTS idx_doc_sections_topic ON doc_sections(topic);
"""

_DOCS_FTS_SQL = """
CREATE VIRTUAL TABLE IF NOT EXISTS docs_fts USING fts5(
    title, content, topic,
    content='doc_sections',
    content_rowid='seq',
    tokenize='{tokenizer}'
);

CREATE TRIGGER IF NOT EXISTS docs_fts_ai
AFTER INSERT ON doc_sections BEGIN
    INSERT INTO docs_fts(rowid, title, content, topic)
    VALUES (new.seq, new.title, new.content, new.topic);
END;

CREATE TRIGGER IF NOT EXISTS docs_fts_ad
AFTER DELETE ON doc_sections BEGIN
    INSERT INTO docs_fts(docs_fts, rowid, title, content, topic)
    VALUES ('delete', old.seq, old.title, old.content, old.topic);
END;

CREATE TRIGGER IF NOT EXISTS docs_fts_au
AFTER UPDATE ON doc_sections BEGIN
    INSERT INTO docs_fts(docs_fts, rowid, title, content, topic)
    VALUES ('delete', old.seq, old.title, old.content, old.topic);
    INSERT INTO docs_fts(rowid, title, content, topic)
    VALUES (new.seq, new.title, new.content, new.topic);
END;
"""

_GRAPH_SQL = """
CREATE TABLE IF NOT EXISTS memory_links (
    seq              INTEGER PRIMARY KEY,
    from_id          TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    to_id            TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    link_type        TEXT NOT NULL CHECK(link_type IN (
                         'caused','related','supersedes','implements','contradicts')),
    created_at_epoch REAL NOT NULL,
    UNIQUE(from_id, to_id, link_type)
);
CREATE INDEX IF NOT EXISTS idx_memory_links_from ON memory_links(from_id);
CREATE INDEX IF NOT EXISTS idx_memory_links_to ON memory_links(to_id);
CREATE INDEX IF NOT EXISTS idx_memory_links_type ON memory_links(link_type);

CREATE TABLE IF NOT EXISTS memory_embeddings (
    memory_id        TEXT PRIMARY KEY REFERENCES memories(id) ON DELETE CASCADE,
    model_name       TEXT NOT NULL DEFAULT '',
    dimension        INTEGER NOT NULL,
    vector           BLOB NOT NULL,               -- float32 packed bytes
    created_at_epoch REAL NOT NULL
);
"""

_REGISTRY_SQL = """
CREATE TABLE IF NOT EXISTS library_mappings (
    name              TEXT PRIMARY KEY,           -- normalized (lower, trimmed)
    canonical_id      TEXT NOT NULL,
    display_name      TEXT NOT NULL,
    stars             INTEGER NOT NULL DEFAULT 0,
    benchmark_score   REAL NOT NULL DEFAULT 0,
    confidence        REAL NOT NULL DEFAULT 1.0,
    source            TEXT NOT NULL DEFAULT 'api',
    is_manual         INTEGER NOT NULL DEFAULT 0,
    resolved_at_epoch REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_library_mappings_canonical ON library_mappings(canonical_id);

CREATE TABLE IF NOT EXISTS library_topics (
    canonical_id       TEXT NOT NULL,
    topic              TEXT NOT NULL,
    usage_count        INTEGER NOT NULL DEFAULT 0,
    last_used_at_epoch REAL,
    is_default         INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (canonical_id, topic)
);
CREATE INDEX IF NOT EXISTS idx_library_topics_usage ON library_topics(usage_count DESC);
"""

_SECTION_EMBEDDINGS_SQL = """
CREATE TABLE IF NOT EXISTS section_embeddings (
    section_id       TEXT PRIMARY KEY REFERENCES doc_sections(id) ON DELETE CASCADE,
    model_name       TEXT NOT NULL DEFAULT '',
    dimension        INTEGER NOT NULL,
    vector           BLOB NOT NULL,               -- float32 packed bytes
    created_at_epoch REAL NOT NULL
);
"""

MIGRATIONS: List[Migration] = [
    Migration(
        version=1,
        name="memories",
        up=_MEMORIES_SQL,
        down="DROP TABLE IF EXISTS memories;",
        fts_up=_MEMORIES_FTS_SQL,
        fts_down=(
            "DROP TRIGGER IF EXISTS memories_fts_ai;"
            "DROP TRIGGER IF EXISTS memories_fts_ad;"
            "DROP TRIGGER IF EXISTS memories_fts_au;"
            "DROP TABLE IF EXISTS memories_fts;"
        ),
    ),
    Migration(
        version=2,
        name="library_docs",
        up=_DOCS_SQL,
        down="DROP TABLE IF EXISTS doc_sections; DROP TABLE IF EXISTS library_docs;",
        fts_up=_DOCS_FTS_SQL,
        fts_down=(
            "DROP TRIGGER IF EXISTS docs_fts_ai;"
            "DROP TRIGGER IF EXISTS docs_fts_ad;"
            "DROP TRIGGER IF EXISTS docs_fts_au;"
            "DROP TABLE IF EXISTS docs_fts;"
        ),
    ),
    Migration(
        version=3,
        name="links_and_embeddings",
        up=_GRAPH_SQL,
        down="DROP TABLE IF EXISTS memory_embeddings; DROP TABLE IF EXISTS memory_links;",
    ),
    Migration(
        version=4,
        name="library_registry",
        up=_REGISTRY_SQL,
        down="DROP TABLE IF EXISTS library_topics; DROP TABLE IF EXISTS library_mappings;",
    ),
    Migration(
        version=5,
        name="section_embeddings",
        up=_SECTION_EMBEDDINGS_SQL,
        down="DROP TABLE IF EXISTS section_embeddings;",
    ),
]

SCHEMA_VERSION = MIGRATIONS[-1].version

_VERSIONS_SQL = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version    INTEGER PRIMARY KEY,
    name       TEXT NOT NULL DEFAULT '',
    applied_at TEXT NOT NULL
)
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def split_statements(script: str) -> List[str]:
    """Split a DDL script into complete statements (trigger bodies kept whole)."""
    statements: List[str] = []
    buf = ""
    for piece in script.split(";"):
        buf += piece + ";"
        if sqlite3.complete_statement(buf):
            stmt = buf.strip()
            if stmt != ";":
                statements.append(stmt)
            buf = ""
    return statements


def _step_statements(step: Migration, fts5: bool, tokenizer: str, down: bool = False) -> List[str]:
    if down:
        script = (step.fts_down if fts5 else "") + step.down
    else:
        script = step.up + (step.fts_up.replace("{tokenizer}", tokenizer) if fts5 else "")
    return split_statements(script)


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Highest applied migration version (0 for a fresh database)."""
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_versions").fetchone()
    except sqlite3.OperationalError:
        return 0
    return int(row[0]) if row and row[0] is not None else 0


def applied_migrations(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    """Applied steps in order: [{version, name, applied_at}]."""
    try:
        rows = conn.execute(
            "SELECT version, name, applied_at FROM schema_versions ORDER BY version"
        ).fetchall()
    except sqlite3.OperationalError:
        return []
    return [{"version": r[0], "name": r[1], "applied_at": r[2]} for r in rows]


def pending_migrations(
    conn: sqlite3.Connection, migrations: Sequence[Migration] = MIGRATIONS,
) -> List[Migration]:
    """Steps whose version exceeds the stored version."""
    current = get_schema_version(conn)
    return [m for m in migrations if m.version > current]


# ---------------------------------------------------------------------------
# Apply / rollback
# ---------------------------------------------------------------------------


def ensure_schema(
    conn: sqlite3.Connection,
    *,
    fts5: bool = True,
    tokenizer: str = DEFAULT_FTS_TOKENIZER,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> int:
    """Apply every pending step. Idempotent; returns the resulting version.

    The connection must be in autocommit mode (``isolation_level=None``):
    each step runs inside its own explicit BEGIN/COMMIT.

    Raises:
        SchemaMigrationFailure: a step failed; earlier steps stay applied.
    """
    safe_tok = validate_fts_tokenizer(tokenizer)
    conn.execute(_VERSIONS_SQL)
    current = get_schema_version(conn)
    known_max = max((m.version for m in migrations), default=0)
    if current > known_max:
        logger.info(
            f"Schema version {current} is newer than this build ({known_max}); "
            "leaving it untouched"
        )
        return current

    for step in sorted(migrations, key=lambda m: m.version):
        if step.version <= current:
            continue
        conn.execute("BEGIN")
        try:
            for stmt in _step_statements(step, fts5, safe_tok):
                conn.execute(stmt)
            conn.execute(
                "INSERT INTO schema_versions (version, name, applied_at) VALUES (?,?,?)",
                (step.version, step.name, datetime.now(timezone.utc).isoformat()),
            )
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            conn.execute("ROLLBACK")
            logger.error(f"Migration {step.version} ({step.name}) failed: {exc}")
            raise SchemaMigrationFailure(
                "ensure_schema",
                f"migration {step.version} ({step.name}) failed: {exc}",
                {"version": step.version, "name": step.name},
                applied_version=current,
            ) from exc
        current = step.version
        logger.info(f"Applied migration {step.version}: {step.name}")
    return current


def rollback_schema(
    conn: sqlite3.Connection,
    target_version: int,
    *,
    fts5: bool = True,
    migrations: Sequence[Migration] = MIGRATIONS,
) -> int:
    """Undo applied steps above ``target_version``, newest first.

    Returns the resulting version.  Each step is undone atomically.
    """
    if target_version < 0:
        raise ValueError(f"Invalid target version: {target_version}")
    current = get_schema_version(conn)
    for step in sorted(migrations, key=lambda m: m.version, reverse=True):
        if step.version <= target_version or step.version > current:
            continue
        conn.execute("BEGIN")
        try:
            for stmt in _step_statements(step, fts5, "", down=True):
                conn.execute(stmt)
            conn.execute("DELETE FROM schema_versions WHERE version=?", (step.version,))
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            conn.execute("ROLLBACK")
            raise SchemaMigrationFailure(
                "rollback_schema",
                f"rollback of migration {step.version} ({step.name}) failed: {exc}",
                {"version": step.version, "name": step.name},
                applied_version=get_schema_version(conn),
            ) from exc
        logger.info(f"Rolled back migration {step.version}: {step.name}")
    return get_schema_version(conn)


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


def backup_database(
    conn: sqlite3.Connection, db_path: str, max_backups: int = 3,
) -> Optional[Path]:
    """Snapshot a disk database next to itself, keeping ``max_backups`` copies.

    Uses the SQLite online backup API, so WAL content is included.
    Returns the backup path, or None for in-memory databases.
    """
    if db_path == ":memory:" or max_backups <= 0:
        return None
    src = Path(db_path)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    dest = src.with_name(f"{src.name}.backup-{stamp}")
    target = sqlite3.connect(str(dest))
    try:
        conn.backup(target)
    finally:
        target.close()
    logger.info(f"Database backed up to {dest}")

    backups = sorted(src.parent.glob(f"{src.name}.backup-*"))
    for old in backups[:-max_backups]:
        old.unlink(missing_ok=True)
        logger.debug(f"Removed old backup {old}")
    return dest
