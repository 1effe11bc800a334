"""
Storage Handle — one SQLite connection per process

The handle is constructed once at startup and passed to every component.
It owns the connection, the lock serializing access to it, and the clock
used for TTL arithmetic.  Migrations run in the constructor, before any
other operation is possible.

Thread safety: sqlite3 check_same_thread=False with explicit serialization.
Disk databases run in WAL mode (many readers, one writer).

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

from kcache import schema

logger = logging.getLogger(__name__)


class Database:
    """Explicit storage handle (connection + lock + clock)."""

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        fts_tokenizer: Optional[str] = None,
        *,
        backup_on_migrate: bool = True,
        max_backups: int = 3,
        clock: Optional[Callable[[], float]] = None,
        migrate: bool = True,
    ):
        """Open (or create) the database and bring its schema up to date.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            fts_tokenizer: FTS5 tokenizer string.  Defaults to
                ``"porter unicode61"``.  Must match ``[a-zA-Z0-9_ .-]+``.
            backup_on_migrate: Snapshot an existing disk database before
                applying pending migrations.
            max_backups: Number of snapshots kept.
            clock: Epoch-seconds source (tests inject a fake clock).
            migrate: When False the stored schema is left exactly as found
                (no backup, no pending step applied); used by rollback.

        Raises:
            SchemaMigrationFailure: the store is unusable.
        """
        self.db_path = db_path
        self._lock = threading.Lock()
        self._clock = clock or time.time
        self._closed = False
        self.fts_tokenizer = schema.validate_fts_tokenizer(
            fts_tokenizer or schema.DEFAULT_FTS_TOKENIZER
        )
        # Auto-create parent directory for disk-backed databases.
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            db_path, check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.execute("PRAGMA busy_timeout=5000")

        fts5_module = schema.detect_fts5(self._conn)
        previous = schema.get_schema_version(self._conn)
        if not migrate:
            self.schema_version = previous
        elif (
            backup_on_migrate
            and previous > 0
            and schema.pending_migrations(self._conn)
        ):
            schema.backup_database(self._conn, db_path, max_backups)
        if migrate:
            try:
                self.schema_version = schema.ensure_schema(
                    self._conn, fts5=fts5_module, tokenizer=self.fts_tokenizer,
                )
            except Exception:
                self._conn.close()
                self._closed = True
                raise
        self._fts5_module = fts5_module
        self.fts5_available = self._fts_tables_present()
        logger.info(
            f"Knowledge cache opened: {db_path} "
            f"(schema=v{self.schema_version}, "
            f"fts5={'yes' if self.fts5_available else 'no'})"
        )

    # -- Clock -------------------------------------------------------------

    def now(self) -> float:
        """Current epoch seconds from the handle's clock."""
        return self._clock()

    # -- Access ------------------------------------------------------------

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Serialized access for read-only statements."""
        with self._lock:
            yield self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """One durable write transaction: COMMIT on success, ROLLBACK on error."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Close the underlying SQLite connection (idempotent)."""
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True
                logger.debug(f"Knowledge cache closed: {self.db_path}")

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- Maintenance -------------------------------------------------------

    def rebuild_index(self) -> Dict[str, int]:
        """Rebuild both FTS5 shadow tables from their base tables.

        Returns indexed row counts, or -1 per table when FTS5 is unavailable.
        """
        if not self.fts5_available:
            logger.warning("rebuild_index called but FTS5 is not available")
            return {"doc_sections": -1, "memories": -1}
        with self.transaction() as conn:
            conn.execute("INSERT INTO docs_fts(docs_fts) VALUES ('rebuild')")
            conn.execute("INSERT INTO memories_fts(memories_fts) VALUES ('rebuild')")
            counts = {
                "doc_sections": conn.execute(
                    "SELECT COUNT(*) FROM doc_sections").fetchone()[0],
                "memories": conn.execute(
                    "SELECT COUNT(*) FROM memories").fetchone()[0],
            }
        logger.info(f"FTS5 indexes rebuilt: {counts}")
        return counts

    def index_consistency(self) -> Dict[str, Dict[str, int]]:
        """Base vs shadow row counts for each indexed table."""
        pairs = {"doc_sections": "docs_fts", "memories": "memories_fts"}
        out: Dict[str, Dict[str, int]] = {}
        with self.read() as conn:
            for base, shadow in pairs.items():
                base_n = conn.execute(f"SELECT COUNT(*) FROM {base}").fetchone()[0]
                if self.fts5_available:
                    # the docsize shadow table holds one row per indexed document
                    shadow_n = conn.execute(
                        f"SELECT COUNT(*) FROM {shadow}_docsize"
                    ).fetchone()[0]
                else:
                    shadow_n = -1
                out[base] = {"base": base_n, "index": shadow_n}
        return out

    # -- Schema ------------------------------------------------------------

    def schema_status(self) -> Dict[str, Any]:
        """Current version, applied steps and pending steps."""
        with self.read() as conn:
            return {
                "version": schema.get_schema_version(conn),
                "latest": schema.SCHEMA_VERSION,
                "applied": schema.applied_migrations(conn),
                "pending": [
                    {"version": m.version, "name": m.name}
                    for m in schema.pending_migrations(conn)
                ],
                "fts5": self.fts5_available,
                "fts_tokenizer": self.fts_tokenizer,
            }

    def rollback_schema(self, target_version: int) -> int:
        """Undo migrations above ``target_version``. Returns the new version."""
        with self._lock:
            self.schema_version = schema.rollback_schema(
                self._conn, target_version, fts5=self._fts5_module,
            )
            self.fts5_available = self._fts_tables_present()
        logger.warning(f"Schema rolled back to v{self.schema_version}: {self.db_path}")
        return self.schema_version

    def _fts_tables_present(self) -> bool:
        return self._fts5_module and self._has_table("docs_fts") \
            and self._has_table("memories_fts")

    def _has_table(self, name: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (name,)
        ).fetchone()
        return row is not None
