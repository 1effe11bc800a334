"""
Library detection from project dependencies

Maps package.json dependencies to libraries with a known canonical id and
reports which ones are missing from the documentation cache (to fetch) or
cached but past their TTL (to refresh).

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from kcache.docs import DocsCache
from kcache.registry import match_default

logger = logging.getLogger(__name__)

_VERSION_PREFIX = re.compile(r"^[\^~>=<]+")


@dataclass
class DetectedLibrary:
    """A dependency recognized as a documented library."""

    name: str
    canonical_id: str
    dependency: str
    version: str = ""
    is_cached: bool = False
    is_expired: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def read_package_json(path: str) -> Dict[str, str]:
    """dependencies + devDependencies of a package.json ({} if unreadable)."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            pkg = json.load(f)
    except (FileNotFoundError, json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.debug(f"Skipping {path}: {exc}")
        return {}
    if not isinstance(pkg, dict):
        return {}
    deps: Dict[str, str] = {}
    for section in ("dependencies", "devDependencies"):
        for name, version in (pkg.get(section) or {}).items():
            deps.setdefault(name, _VERSION_PREFIX.sub("", str(version)))
    return deps


def detect_libraries(
    dependencies: Dict[str, str],
    docs: Optional[DocsCache] = None,
) -> List[DetectedLibrary]:
    """Known libraries among ``dependencies`` (one entry per canonical id).

    With ``docs``, each entry carries its cache status.
    """
    found: Dict[str, DetectedLibrary] = {}
    for dep, version in dependencies.items():
        mapping = match_default(dep)
        if mapping is None or mapping.canonical_id in found:
            continue
        lib = DetectedLibrary(
            name=mapping.display_name,
            canonical_id=mapping.canonical_id,
            dependency=dep,
            version=version,
        )
        if docs is not None:
            cached = docs.get_library(mapping.canonical_id)
            lib.is_cached = cached is not None
            lib.is_expired = bool(cached and cached.is_expired)
        found[mapping.canonical_id] = lib
    return list(found.values())


def cache_suggestions(
    dependencies: Dict[str, str], docs: DocsCache,
) -> Dict[str, List[DetectedLibrary]]:
    """Split detected libraries into ``to_fetch`` and ``to_refresh``."""
    detected = detect_libraries(dependencies, docs)
    return {
        "to_fetch": [lib for lib in detected if not lib.is_cached],
        "to_refresh": [lib for lib in detected if lib.is_cached and lib.is_expired],
    }


def detect_project(project_root: str, docs: Optional[DocsCache] = None) -> List[DetectedLibrary]:
    """detect_libraries() over ``<project_root>/package.json``."""
    return detect_libraries(
        read_package_json(str(Path(project_root) / "package.json")), docs,
    )
