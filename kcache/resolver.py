"""
Library Resolver — free-text name to canonical identifier

Lookup order:
    1. static DEFAULT_MAPPINGS        (source "default")
    2. cached library_mappings row    (source "cache")
    3. remote search + scoring        (source "api", then cached)

Scoring is a weighted sum of normalized signals with fixed weights.  Ties
keep the order the remote source returned.  The best candidate must reach
MIN_CONFIDENCE_THRESHOLD, otherwise the name is unresolved (None): a weak
match is never returned as a guess.  Remote failures count as "no
candidates"; resolve() never raises for an unknown name.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Protocol, Sequence, Tuple

from kcache.errors import ResolutionBackendError
from kcache.registry import LibraryRegistry, match_default, normalize_name
from kcache.types import RemoteCandidate, ResolutionMapping

logger = logging.getLogger(__name__)

MIN_CONFIDENCE_THRESHOLD = 0.3

SCORE_WEIGHTS = {
    "stars": 0.35,
    "snippets": 0.35,
    "trust": 0.2,
    "benchmark": 0.1,
}

# Saturation points for the log-scaled signals
STARS_CAP = 100_000
SNIPPETS_CAP = 10_000
TRUST_SCALE = 10.0
BENCHMARK_SCALE = 100.0


class SearchClient(Protocol):
    """Anything with a ``search(name) -> [RemoteCandidate]`` method."""

    def search(self, query: str) -> List[RemoteCandidate]: ...


def _log_scaled(value: Optional[float], cap: float) -> float:
    if not value or value <= 0:
        return 0.0
    return min(1.0, math.log10(1 + value) / math.log10(1 + cap))


def _linear(value: Optional[float], scale: float) -> float:
    if not value or value <= 0:
        return 0.0
    return min(1.0, value / scale)


def score_candidate(candidate: RemoteCandidate) -> float:
    """Weighted composite in [0, 1]. Missing signals count as 0."""
    return (
        SCORE_WEIGHTS["stars"] * _log_scaled(candidate.stars, STARS_CAP)
        + SCORE_WEIGHTS["snippets"] * _log_scaled(candidate.total_snippets, SNIPPETS_CAP)
        + SCORE_WEIGHTS["trust"] * _linear(candidate.trust_score, TRUST_SCALE)
        + SCORE_WEIGHTS["benchmark"] * _linear(candidate.benchmark_score, BENCHMARK_SCALE)
    )


def rank_candidates(
    candidates: Sequence[RemoteCandidate],
) -> List[Tuple[RemoteCandidate, float]]:
    """Candidates with scores, best first (stable: ties keep remote order)."""
    scored = [(c, score_candidate(c)) for c in candidates]
    return sorted(scored, key=lambda cs: -cs[1])


def pick_best(
    candidates: Sequence[RemoteCandidate],
    min_confidence: float = MIN_CONFIDENCE_THRESHOLD,
) -> Optional[Tuple[RemoteCandidate, float]]:
    """Best candidate and its score, or None when below the threshold."""
    ranked = rank_candidates(candidates)
    if not ranked:
        return None
    best, score = ranked[0]
    if score < min_confidence:
        logger.debug(
            f"[resolve] best candidate {best.id} scored {score:.3f} "
            f"< {min_confidence}, treated as no match"
        )
        return None
    return best, score


class LibraryResolver:
    """Maps library names to canonical ids, caching dynamic resolutions."""

    def __init__(
        self,
        registry: LibraryRegistry,
        client: Optional[SearchClient] = None,
        min_confidence: float = MIN_CONFIDENCE_THRESHOLD,
    ):
        self.registry = registry
        self.client = client
        self.min_confidence = min_confidence

    def resolve(self, name: str) -> Optional[ResolutionMapping]:
        """Resolve ``name``; None when no confident match exists."""
        key = normalize_name(name)
        if not key:
            return None

        static = match_default(key)
        if static is not None:
            return static

        cached = self.registry.get_mapping(key)
        if cached is not None:
            return cached

        if self.client is None:
            return None

        # Network call: no lock or transaction is held here.
        try:
            candidates = self.client.search(key)
        except ResolutionBackendError as exc:
            logger.warning(f"[resolve] remote lookup failed for {key!r}: {exc.reason}")
            candidates = []

        best = pick_best(candidates, self.min_confidence)
        if best is None:
            return None
        candidate, score = best
        mapping = self.registry.save_mapping(
            key,
            candidate.id,
            candidate.title or key,
            stars=candidate.stars or 0,
            benchmark_score=candidate.benchmark_score or 0.0,
            confidence=round(score, 6),
            source="api",
        )
        logger.info(f"[resolve] {key!r} -> {candidate.id} (confidence={score:.3f})")
        return mapping
