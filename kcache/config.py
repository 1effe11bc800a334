"""
Knowledge Cache Configuration

Configuration dataclasses for kcache: store, docs cache, search/ranking,
memory enrichment/consolidation and library resolution.  Includes
load_config() for reading a JSON config file with silent fallback to
compiled defaults.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from kcache.types import FALLBACK_RELEVANCE, TTL_DAYS


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = ".kcache/cache.db"
    wal_mode: bool = True
    fts_tokenizer: str = "porter unicode61"
    backup_on_migrate: bool = True
    max_backups: int = 3

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.max_backups", self.max_backups, 0, 100, int)
        return errors


@dataclass
class DocsConfig:
    """Documentation cache configuration."""
    ttl_days: int = TTL_DAYS

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "docs.ttl_days", self.ttl_days, 1, 3650, int)
        return errors


@dataclass
class SearchConfig:
    """Full-text and hybrid ranking configuration."""
    bm25_weight: float = 0.5
    semantic_weight: float = 0.5
    min_similarity: float = 0.3
    fallback_relevance: float = FALLBACK_RELEVANCE
    default_limit: int = 10

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "search.bm25_weight",
                      self.bm25_weight, 0.0, 1.0, float)
        _check_range(errors, "search.semantic_weight",
                      self.semantic_weight, 0.0, 1.0, float)
        _check_range(errors, "search.min_similarity",
                      self.min_similarity, 0.0, 1.0, float)
        _check_range(errors, "search.fallback_relevance",
                      self.fallback_relevance, 0.0, 1.0, float)
        _check_range(errors, "search.default_limit",
                      self.default_limit, 1, 1000, int)
        if not errors and abs(self.bm25_weight + self.semantic_weight - 1.0) > 1e-9:
            errors.append(
                "search: bm25_weight + semantic_weight must equal 1.0 "
                f"(got {self.bm25_weight + self.semantic_weight})"
            )
        return errors


@dataclass
class MemoryConfig:
    """Memory enrichment and consolidation configuration."""
    auto_enrich: bool = False
    similarity_threshold: float = 0.5
    stale_days: int = 90
    cleanup_days: int = 180

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "memory.similarity_threshold",
                      self.similarity_threshold, 0.0, 1.0, float)
        _check_range(errors, "memory.stale_days", self.stale_days, 1, 36500, int)
        _check_range(errors, "memory.cleanup_days", self.cleanup_days, 1, 36500, int)
        return errors


@dataclass
class ResolverConfig:
    """Library resolution configuration."""
    enabled: bool = True
    api_url: str = "https://context7.com/api/v2"
    api_key: Optional[str] = None  # falls back to $CONTEXT7_API_KEY
    timeout: float = 30.0
    min_confidence: float = 0.3

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "resolver.timeout", self.timeout, 0.1, 600.0, float)
        _check_range(errors, "resolver.min_confidence",
                      self.min_confidence, 0.0, 1.0, float)
        return errors


@dataclass
class KCacheConfig:
    """Top-level kcache configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    docs: DocsConfig = field(default_factory=DocsConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> KCacheConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "docs" in d:
            kwargs["docs"] = DocsConfig(**d["docs"])
        if "search" in d:
            kwargs["search"] = SearchConfig(**d["search"])
        if "memory" in d:
            kwargs["memory"] = MemoryConfig(**d["memory"])
        if "resolver" in d:
            kwargs["resolver"] = ResolverConfig(**d["resolver"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.docs.validate())
        errors.extend(self.search.validate())
        errors.extend(self.memory.validate())
        errors.extend(self.resolver.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> KCacheConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        KCacheConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = KCacheConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = KCacheConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = KCacheConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
