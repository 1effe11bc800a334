"""
Remote library search client (Context7 HTTP API)

Only the search endpoint is used: the resolver needs candidates, not
documentation.  Every transport or payload problem is raised as
ResolutionBackendError; retries are left to the caller.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional

import httpx

from kcache.errors import ResolutionBackendError
from kcache.types import RemoteCandidate

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://context7.com/api/v2"
DEFAULT_TIMEOUT = 30.0
MAX_QUERY_LENGTH = 500
API_KEY_ENV = "CONTEXT7_API_KEY"


class Context7Client:
    """Synchronous search client.  Use as a context manager or call close()."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key or os.environ.get(API_KEY_ENV)
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    @classmethod
    def from_env(cls, **kwargs) -> Optional[Context7Client]:
        """A client when an API key is configured, else None."""
        api_key = kwargs.pop("api_key", None) or os.environ.get(API_KEY_ENV)
        if not api_key:
            return None
        return cls(api_key=api_key, **kwargs)

    def search(self, query: str) -> List[RemoteCandidate]:
        """Search libraries by name; candidates in the order the API returned.

        Raises:
            ResolutionBackendError: transport failure, HTTP error status,
                or a payload that is not ``{"results": [...]}``.
        """
        q = (query or "").strip()[:MAX_QUERY_LENGTH]
        if not q:
            return []
        try:
            response = self._client.get("/search", params={"query": q})
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise ResolutionBackendError(
                "remote_search", f"HTTP {exc.response.status_code}",
                {"query": q, "status": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            raise ResolutionBackendError(
                "remote_search", f"transport error: {exc}", {"query": q},
            ) from exc
        except ValueError as exc:
            raise ResolutionBackendError(
                "remote_search", "invalid JSON payload", {"query": q},
            ) from exc

        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            raise ResolutionBackendError(
                "remote_search", "payload has no results list", {"query": q},
            )
        candidates: List[RemoteCandidate] = []
        try:
            for entry in results:
                if isinstance(entry, dict) and entry.get("id"):
                    candidates.append(RemoteCandidate.from_api(entry))
        except (TypeError, ValueError) as exc:
            raise ResolutionBackendError(
                "remote_search", f"malformed candidate: {exc}", {"query": q},
            ) from exc
        logger.debug(f"[remote] search {q!r} -> {len(candidates)} candidates")
        return candidates

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> Context7Client:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
