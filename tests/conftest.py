"""
Shared pytest fixtures for kcache tests.

A controllable clock drives every TTL assertion, and a deterministic
keyword embedding provider stands in for a real model so that hybrid
ranking is reproducible without any download.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import math

import pytest

from kcache.cache import KnowledgeCache
from kcache.config import KCacheConfig, ResolverConfig
from kcache.db import Database

START = 1_700_000_000.0
DAY = 86400.0


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class KeywordEmbedding:
    """
    Bag-of-keywords vectors over a fixed vocabulary.

    Texts sharing vocabulary words get a cosine similarity > 0; texts with
    none in common get 0.  ``fail=True`` makes every call raise.
    """

    model_name = "keyword-test"

    def __init__(self, vocabulary, fail: bool = False):
        self.vocabulary = [w.lower() for w in vocabulary]
        self.fail = fail
        self.calls = 0

    def embed(self, text: str):
        self.calls += 1
        if self.fail:
            raise RuntimeError("embedding backend offline")
        words = set(text.lower().replace(",", " ").split())
        return [1.0 if w in words else 0.0 for w in self.vocabulary]

    def similarity(self, a, b) -> float:
        dot = sum(x * y for x, y in zip(a, b))
        na = math.sqrt(sum(x * x for x in a))
        nb = math.sqrt(sum(y * y for y in b))
        if na == 0 or nb == 0:
            return 0.0
        return max(0.0, min(1.0, dot / (na * nb)))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(clock):
    """In-memory storage handle on the fake clock."""
    d = Database(":memory:", clock=clock)
    yield d
    d.close()


@pytest.fixture
def cache(clock):
    """In-memory KnowledgeCache with no remote client and no embeddings."""
    config = KCacheConfig(resolver=ResolverConfig(enabled=False))
    c = KnowledgeCache(config=config, db_path=":memory:", clock=clock)
    c.initialize()
    yield c
    c.close()
