"""
kcache — A persistent knowledge cache for coding assistants.

One SQLite + FTS5 + WAL database holds two namespaces: fetched library
documentation (TTL-bounded) and durable memories linked into a graph.
Search degrades to substring matching when the full-text index fails.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

__version__ = "0.3.0"

from kcache.errors import (
    KCacheError,
    NotFound,
    Conflict,
    InvalidLink,
    SchemaMigrationFailure,
    ResolutionBackendError,
)
from kcache.types import (
    LibraryRecord,
    SectionRecord,
    MemoryRecord,
    MemoryFilters,
    LinkRecord,
    ResolutionMapping,
)
from kcache.schema import SCHEMA_VERSION
from kcache.config import KCacheConfig, load_config
from kcache.db import Database
from kcache.cache import KnowledgeCache

__all__ = [
    "__version__",
    "KCacheError",
    "NotFound",
    "Conflict",
    "InvalidLink",
    "SchemaMigrationFailure",
    "ResolutionBackendError",
    "LibraryRecord",
    "SectionRecord",
    "MemoryRecord",
    "MemoryFilters",
    "LinkRecord",
    "ResolutionMapping",
    "KCacheConfig",
    "load_config",
    "Database",
    "KnowledgeCache",
    "SCHEMA_VERSION",
]
