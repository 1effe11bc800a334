"""
Auto-Tagging — metadata inferred from a memory's title and description

Used by MemoryStore.save(auto_enrich=True) to fill tags, features, files and
importance when the caller left them out.  Explicit values always win.

Extraction rules:
    tags        domain vocabulary, technology names, file extensions,
                PascalCase identifiers (first 3), "use X for" (max 10)
    features    path segments after features/ modules/ domains/ apps/<x>/
                and explicit "feature: x" mentions
    files       relative paths with an extension, description only (max 10)
    importance  first matching keyword tier: critical > high > low

Keywords match on word boundaries ("db" does not match "debug").

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

MAX_TAGS = 10
MAX_FILES = 10
MAX_IDENTIFIER_TAGS = 3

# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

DOMAIN_KEYWORDS: Dict[str, List[str]] = {
    # architecture
    "architecture": ["architecture", "architectural", "design pattern", "structure", "module"],
    "api": ["api", "endpoint", "route", "rest", "graphql", "trpc"],
    "database": ["database", "db", "schema", "prisma", "sql", "migration", "model"],
    "auth": ["auth", "authentication", "authorization", "login", "session", "jwt", "oauth"],
    # frontend
    "ui": ["ui", "component", "button", "form", "modal", "dialog", "layout"],
    "state": ["state", "redux", "zustand", "context", "store"],
    "css": ["css", "tailwind", "style", "theme", "responsive"],
    # backend
    "server": ["server", "backend", "middleware", "handler"],
    "cache": ["cache", "caching", "redis", "memo", "memoize"],
    "queue": ["queue", "job", "worker", "background"],
    "test": ["test", "testing", "spec", "jest", "vitest", "e2e", "unit"],
    # ops
    "deploy": ["deploy", "deployment", "ci", "cd", "docker", "kubernetes"],
    "config": ["config", "configuration", "env", "environment", "settings"],
    # quality
    "performance": ["performance", "optimization", "speed", "latency", "perf"],
    "security": ["security", "vulnerability", "xss", "csrf", "injection"],
    "refactor": ["refactor", "refactoring", "cleanup", "technical debt"],
    # product
    "booking": ["booking", "reservation", "schedule", "calendar", "slot"],
    "payment": ["payment", "stripe", "billing", "invoice", "subscription"],
    "notification": ["notification", "email", "sms", "push", "alert"],
    "i18n": ["i18n", "translation", "localization", "locale", "intl"],
}

TECH_KEYWORDS: Dict[str, str] = {
    "react": "react",
    "nextjs": "nextjs",
    "next.js": "nextjs",
    "node": "nodejs",
    "express": "express",
    "typescript": "typescript",
    "javascript": "javascript",
    "python": "python",
    "prisma": "prisma",
    "trpc": "trpc",
    "zod": "zod",
    "tailwind": "tailwind",
    "eslint": "eslint",
    "webpack": "webpack",
    "vite": "vite",
}

ACTION_KEYWORDS: Dict[str, List[str]] = {
    "decision": ["decided", "chose", "selected", "will use", "going with", "prefer"],
    "pattern": ["pattern", "convention", "standard", "always", "never", "must"],
    "bugfix": ["fixed", "bug", "issue", "error", "problem", "crash", "broken"],
    "feature": ["added", "implemented", "created", "built", "new feature"],
}

IMPORTANCE_KEYWORDS: List[tuple] = [
    ("critical", ["critical", "security", "vulnerability", "urgent", "breaking"]),
    ("high", ["important", "must", "required", "always"]),
    ("low", ["minor", "optional", "nice to have", "maybe"]),
]


def _keyword_pattern(keywords: Iterable[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(k) for k in keywords)
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


_DOMAIN_PATTERNS = {tag: _keyword_pattern(kws) for tag, kws in DOMAIN_KEYWORDS.items()}
_TECH_PATTERNS = [(_keyword_pattern([kw]), tag) for kw, tag in TECH_KEYWORDS.items()]
_ACTION_PATTERNS = {t: _keyword_pattern(kws) for t, kws in ACTION_KEYWORDS.items()}
_IMPORTANCE_PATTERNS = [(level, _keyword_pattern(kws)) for level, kws in IMPORTANCE_KEYWORDS]

_EXTENSION_RE = re.compile(r"\.(ts|tsx|js|jsx|json|md|yml|yaml|sql|prisma|py|toml)\b")
_IDENTIFIER_RE = re.compile(r"\b[A-Z][a-z]+(?:[A-Z][a-z]+)+\b")
_USE_FOR_RE = re.compile(r"\buse\s+(\w+)\s+for\b", re.IGNORECASE)

_FEATURE_PATTERNS = [
    re.compile(r"features/([a-z-]+)", re.IGNORECASE),
    re.compile(r"modules/([a-z-]+)", re.IGNORECASE),
    re.compile(r"domains/([a-z-]+)", re.IGNORECASE),
    re.compile(r"apps/\w+/([a-z-]+)", re.IGNORECASE),
]
_EXPLICIT_FEATURE_RE = re.compile(r"(?:feature|domain|module):\s*([a-z-]+)", re.IGNORECASE)

_PATH_RE = re.compile(r"(?:^|\s)((?:[\w.-]+/)+[\w.-]+\.[a-z]+)\b", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def extract_tags(text: str, existing_tags: Optional[Iterable[str]] = None) -> List[str]:
    """Tags inferred from free text, after the (lowercased) existing ones.

    >>> extract_tags("Decided to use trpc for the API routes")
    ['api', 'trpc']
    """
    tags: List[str] = []

    def add(tag: str) -> None:
        if tag and tag not in tags:
            tags.append(tag)

    for t in existing_tags or []:
        add(t.lower())
    for tag, pattern in _DOMAIN_PATTERNS.items():
        if pattern.search(text):
            add(tag)
    for pattern, tag in _TECH_PATTERNS:
        if pattern.search(text):
            add(tag)
    for ext in _EXTENSION_RE.findall(text):
        add(ext.lower())
    for ident in _IDENTIFIER_RE.findall(text)[:MAX_IDENTIFIER_TAGS]:
        add(ident.lower())
    m = _USE_FOR_RE.search(text)
    if m:
        add(m.group(1).lower())
    return tags[:MAX_TAGS]


def extract_features(text: str) -> List[str]:
    """Feature names taken from path segments and explicit mentions."""
    features: List[str] = []
    for pattern in _FEATURE_PATTERNS:
        for name in pattern.findall(text):
            name = name.lower()
            if name not in features:
                features.append(name)
    m = _EXPLICIT_FEATURE_RE.search(text)
    if m and m.group(1).lower() not in features:
        features.append(m.group(1).lower())
    return features


def extract_files(text: str) -> List[str]:
    """Relative file paths mentioned in text (first 10)."""
    return _PATH_RE.findall(text)[:MAX_FILES]


def suggest_importance(text: str) -> Optional[str]:
    """Importance implied by keywords, or None (caller keeps the default)."""
    for level, pattern in _IMPORTANCE_PATTERNS:
        if pattern.search(text):
            return level
    return None


def suggest_memory_type(text: str) -> Optional[str]:
    for memory_type, pattern in _ACTION_PATTERNS.items():
        if pattern.search(text):
            return memory_type
    return None


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------

@dataclass
class Enrichment:
    """Metadata inferred for one memory."""

    tags: List[str] = field(default_factory=list)
    features: List[str] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    suggested_type: Optional[str] = None
    suggested_importance: Optional[str] = None


def enrich(
    title: str,
    description: str,
    existing_tags: Optional[Iterable[str]] = None,
) -> Enrichment:
    """Infer tags, features, files, type and importance for a memory."""
    full_text = f"{title} {description}"
    result = Enrichment(
        tags=extract_tags(full_text, existing_tags),
        features=extract_features(full_text),
        files=extract_files(description),
        suggested_type=suggest_memory_type(full_text),
        suggested_importance=suggest_importance(full_text),
    )
    logger.debug(
        f"[autotag] {title!r}: tags={result.tags} features={result.features} "
        f"files={len(result.files)} importance={result.suggested_importance}"
    )
    return result
