"""
Knowledge Cache Data Model

Records for the two cache namespaces (library documentation, memory), the
relationship graph, the resolver registry and search results.  Timestamps
are float epoch seconds; expiry is always derived from ``now`` and never
stored.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional

# ---------------------------------------------------------------------------
# Contract constants
# ---------------------------------------------------------------------------

TTL_DAYS = 7
TTL_SECONDS = TTL_DAYS * 24 * 60 * 60
FALLBACK_RELEVANCE = 0.5

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

MemoryType = Literal[
    "observation", "decision", "bugfix", "feature",
    "pattern", "library-note", "snippet", "anti-pattern",
]
Importance = Literal["low", "medium", "high", "critical"]
Scope = Literal["project", "global"]
MemorySource = Literal["manual", "auto", "promoted"]
LinkType = Literal["caused", "related", "supersedes", "implements", "contradicts"]
Direction = Literal["forward", "backward", "both"]
SearchStrategy = Literal["fts5", "like"]  # path taken by ranked_search; logged only
SearchMode = Literal["hybrid", "text"]
MappingSource = Literal["default", "cache", "api"]

# Valid values for runtime checks
VALID_MEMORY_TYPES: set = {
    "observation", "decision", "bugfix", "feature",
    "pattern", "library-note", "snippet", "anti-pattern",
}
VALID_IMPORTANCE: set = {"low", "medium", "high", "critical"}
VALID_SCOPES: set = {"project", "global"}
VALID_SOURCES: set = {"manual", "auto", "promoted"}
VALID_LINK_TYPES: set = {"caused", "related", "supersedes", "implements", "contradicts"}
VALID_DIRECTIONS: set = {"forward", "backward", "both"}

# Types that describe reusable knowledge rather than project history
GLOBAL_MEMORY_TYPES: set = {"pattern", "library-note", "snippet", "anti-pattern"}


def _now_epoch() -> float:
    """Current time as float epoch seconds."""
    return time.time()


def _generate_id(prefix: str = "MEM") -> str:
    """Generate a unique record ID with prefix."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}-{short}"


def infer_scope(memory_type: str) -> str:
    """Default scope for a memory type (reusable knowledge is global)."""
    return "global" if memory_type in GLOBAL_MEMORY_TYPES else "project"


def _unique(values) -> List[str]:
    """Deduplicate, keeping the order of first appearance."""
    seen: set = set()
    out: List[str] = []
    for v in values or []:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


# ---------------------------------------------------------------------------
# Documentation namespace
# ---------------------------------------------------------------------------

@dataclass
class LibraryRecord:
    """A cached library, keyed by its canonical external id."""

    id: str = field(default_factory=lambda: _generate_id("LIB"))
    external_id: str = ""
    display_name: str = ""
    version: Optional[str] = None  # None = absent, "" = explicitly empty
    fetched_at_epoch: float = 0.0
    expires_at_epoch: float = 0.0
    section_count: int = 0
    is_expired: bool = False  # derived at read time

    def expired_at(self, now: float) -> bool:
        """True once ``now`` is strictly past the expiry instant."""
        return self.expires_at_epoch < now

    def to_dict(self) -> Dict[str, Any]:
        """Serialize library to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> LibraryRecord:
        """Deserialize library from a dictionary."""
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class SectionRecord:
    """One documentation section owned by exactly one library."""

    id: str = field(default_factory=lambda: _generate_id("SEC"))
    library_id: str = ""
    title: str = ""
    content: str = ""
    code_snippets: List[str] = field(default_factory=list)
    page_number: int = 1
    topic: Optional[str] = None

    @property
    def text(self) -> str:
        return f"{self.title} {self.content}".strip()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize section to a plain dictionary."""
        return asdict(self)


@dataclass
class DocSearchResult:
    """A section hit with its owning library name and relevance."""

    section: SectionRecord
    library_name: str
    relevance: float

    @property
    def id(self) -> str:
        return self.section.id

    @property
    def text(self) -> str:
        """Text used for embedding the section."""
        return self.section.text

    def to_dict(self) -> Dict[str, Any]:
        """Serialize hit (section flattened under ``section``)."""
        return {
            "section": self.section.to_dict(),
            "library_name": self.library_name,
            "relevance": self.relevance,
        }


# ---------------------------------------------------------------------------
# Memory namespace
# ---------------------------------------------------------------------------

@dataclass
class MemoryRecord:
    """
    A durable note recorded during a work session.

    ``created_at_epoch`` is immutable; every other field may be patched via
    ``MemoryStore.update``.  Tags and features behave as sets.
    """

    id: str = field(default_factory=lambda: _generate_id("MEM"))
    type: MemoryType = "observation"
    title: str = ""
    description: str = ""
    importance: Importance = "medium"
    scope: Scope = "project"
    project: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    related_files: List[str] = field(default_factory=list)
    features: List[str] = field(default_factory=list)
    created_at_epoch: float = field(default_factory=_now_epoch)
    metadata: Dict[str, Any] = field(default_factory=dict)
    source: MemorySource = "manual"
    usage_count: int = 0
    last_used_at_epoch: Optional[float] = None
    has_embedding: bool = False

    def __post_init__(self):
        """Validate enumerations and normalize set-valued fields."""
        if self.type not in VALID_MEMORY_TYPES:
            raise ValueError(f"Invalid memory type: {self.type!r}")
        if self.importance not in VALID_IMPORTANCE:
            raise ValueError(f"Invalid importance: {self.importance!r}")
        if self.scope not in VALID_SCOPES:
            raise ValueError(f"Invalid scope: {self.scope!r}")
        if self.source not in VALID_SOURCES:
            raise ValueError(f"Invalid source: {self.source!r}")
        self.tags = _unique(self.tags)
        self.features = _unique(self.features)
        self.related_files = list(self.related_files or [])

    @property
    def text(self) -> str:
        """Text used for embedding and substring matching."""
        return f"{self.title} {self.description}".strip()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize memory to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryRecord:
        """Deserialize memory from a dictionary, filtering to known fields."""
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class MemorySearchResult:
    """A memory hit with its text relevance (0 for recency listings)."""

    memory: MemoryRecord
    relevance: float

    def to_dict(self) -> Dict[str, Any]:
        return {"memory": self.memory.to_dict(), "relevance": self.relevance}


@dataclass
class MemoryFilters:
    """Scope and attribute filters for memory search and listing."""

    project: Optional[str] = None
    include_global: bool = True
    scope: Optional[Scope] = None
    type: Optional[MemoryType] = None
    importance: Optional[Importance] = None
    source: Optional[MemorySource] = None
    tags: List[str] = field(default_factory=list)
    features: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> MemoryFilters:
        """Build filters from a dict, ignoring unknown keys."""
        d = d or {}
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


# ---------------------------------------------------------------------------
# Relationship graph
# ---------------------------------------------------------------------------

@dataclass
class LinkRecord:
    """Directed, typed link between two memories."""

    from_id: str = ""
    to_id: str = ""
    link_type: LinkType = "related"
    created_at_epoch: float = field(default_factory=_now_epoch)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize link to a plain dictionary."""
        return asdict(self)


@dataclass
class ChainNode:
    """A memory reached by traversal, with hop depth and the edge used."""

    memory: MemoryRecord
    depth: int
    via: LinkRecord

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory": self.memory.to_dict(),
            "depth": self.depth,
            "via": self.via.to_dict(),
        }


@dataclass
class SupersededRecord:
    """A memory on the ``to`` side of at least one ``supersedes`` link."""

    memory: MemoryRecord
    superseded_by: List[str] = field(default_factory=list)
    outdated: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory": self.memory.to_dict(),
            "superseded_by": list(self.superseded_by),
            "outdated": self.outdated,
        }


# ---------------------------------------------------------------------------
# Resolver registry
# ---------------------------------------------------------------------------

@dataclass
class ResolutionMapping:
    """Canonical identifier a library name resolves to."""

    canonical_id: str
    display_name: str
    source: MappingSource = "default"
    confidence: float = 1.0
    patterns: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize mapping to a plain dictionary."""
        return asdict(self)


@dataclass
class LibraryTopic:
    """A documentation topic tracked per canonical library."""

    canonical_id: str
    topic: str
    usage_count: int = 0
    last_used_at_epoch: Optional[float] = None
    is_default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RemoteCandidate:
    """One candidate returned by a remote library search."""

    id: str
    title: str = ""
    description: str = ""
    total_snippets: int = 0
    stars: Optional[int] = None
    trust_score: Optional[float] = None
    benchmark_score: Optional[float] = None
    versions: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, d: Dict[str, Any]) -> RemoteCandidate:
        """Build from a remote search payload entry (camelCase keys)."""
        return cls(
            id=str(d["id"]),
            title=d.get("title") or "",
            description=d.get("description") or "",
            total_snippets=int(d.get("totalSnippets") or 0),
            stars=d.get("stars"),
            trust_score=d.get("trustScore"),
            benchmark_score=d.get("benchmarkScore"),
            versions=list(d.get("versions") or []),
        )


# ---------------------------------------------------------------------------
# Search metadata and ranking
# ---------------------------------------------------------------------------

@dataclass
class SearchMeta:
    """How a search call was answered, built per call.

    Advisory only; callers who don't need it can ignore it.  Whether the
    ranked or the substring path ran is never exposed here; relevance is
    the only observable.
    """

    search_mode: SearchMode = "text"
    query: str = ""
    total: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict for MCP responses."""
        return asdict(self)


@dataclass
class RankedResult:
    """A candidate re-scored by the hybrid ranker."""

    record: Any
    score: float
    text_relevance: float
    semantic_similarity: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        rec = self.record.to_dict() if hasattr(self.record, "to_dict") else self.record
        return {
            "record": rec,
            "score": self.score,
            "text_relevance": self.text_relevance,
            "semantic_similarity": self.semantic_similarity,
        }


# ---------------------------------------------------------------------------
# Consolidation and smart retrieval
# ---------------------------------------------------------------------------

@dataclass
class SimilarityMatch:
    """Two memories that look alike, with a suggested resolution."""

    memory1: MemoryRecord
    memory2: MemoryRecord
    similarity: float
    reason: str
    suggested_action: str  # merge | keep-both | delete-older

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory1": self.memory1.to_dict(),
            "memory2": self.memory2.to_dict(),
            "similarity": self.similarity,
            "reason": self.reason,
            "suggested_action": self.suggested_action,
        }


@dataclass
class RelevanceBreakdown:
    """Factors behind a smart-search score."""

    text_match: float
    time_decay: float
    importance_boost: float
    type_boost: float
    context_boost: float
    freshness_bonus: float
    final: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SmartSearchResult:
    """A memory scored on a 0-100 scale by context-aware ranking."""

    memory: MemoryRecord
    relevance: float
    reasoning: Optional[RelevanceBreakdown] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"memory": self.memory.to_dict(), "relevance": self.relevance}
        if self.reasoning is not None:
            d["reasoning"] = self.reasoning.to_dict()
        return d
