"""
Error taxonomy for kcache.

Every error crossing a component boundary carries the failing operation,
a short machine-readable reason and a details mapping, so the CLI and the
MCP adapter can render diagnostics without parsing prose.

    KCacheError
    ├── NotFound                unknown key, missing parent, missing endpoint
    ├── Conflict                duplicate link triple or unique key
    ├── InvalidLink             self-link or unknown link type
    ├── SchemaMigrationFailure  fatal at startup
    ├── SearchBackendError      internal, always converted to the LIKE path
    └── ResolutionBackendError  remote lookup failed (treated as no candidates)

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class KCacheError(Exception):
    """Base class for structured kcache errors."""

    code = "error"

    def __init__(
        self,
        operation: str,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.operation = operation
        self.reason = reason
        self.details: Dict[str, Any] = dict(details or {})
        super().__init__(f"{operation}: {reason}")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a plain dict (CLI --json, MCP responses)."""
        return {
            "code": self.code,
            "operation": self.operation,
            "reason": self.reason,
            "details": dict(self.details),
        }


class NotFound(KCacheError):
    """A referenced record does not exist."""

    code = "not_found"


class Conflict(KCacheError):
    """The write would duplicate an existing unique key."""

    code = "conflict"


class InvalidLink(KCacheError):
    """A link request is malformed (self-link, unknown type)."""

    code = "invalid_link"


class SchemaMigrationFailure(KCacheError):
    """A migration step failed; the store must not be used."""

    code = "schema_migration_failure"

    def __init__(
        self,
        operation: str,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        applied_version: int = 0,
    ):
        super().__init__(operation, reason, details)
        self.applied_version = applied_version
        self.details.setdefault("applied_version", applied_version)


class SearchBackendError(KCacheError):
    """The ranked full-text query could not be evaluated."""

    code = "search_backend_error"


class ResolutionBackendError(KCacheError):
    """The remote library lookup failed (transport or payload)."""

    code = "resolution_backend_error"
