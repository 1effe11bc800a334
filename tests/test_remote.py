"""
Tests for kcache.remote — the search client against httpx.MockTransport.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import httpx
import pytest

from kcache.errors import ResolutionBackendError
from kcache.remote import API_KEY_ENV, MAX_QUERY_LENGTH, Context7Client

PAYLOAD = {
    "results": [
        {
            "id": "/vercel/next.js",
            "title": "Next.js",
            "description": "The React framework",
            "totalSnippets": 4200,
            "stars": 120000,
            "trustScore": 10,
            "benchmarkScore": 92.5,
            "versions": ["v14.3.0", "v15.0.0"],
        },
        {"id": "/other/next", "title": "next-other"},
        {"title": "no id, skipped"},
    ]
}


def _client(handler, **kwargs):
    return Context7Client(
        api_key=kwargs.pop("api_key", "ctx7-test"),
        base_url="https://example.test/api/v2",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestSearch:
    def test_parses_candidates(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json=PAYLOAD)

        with _client(handler) as client:
            candidates = client.search("next.js")

        assert seen["url"].path == "/api/v2/search"
        assert seen["url"].params["query"] == "next.js"
        assert seen["auth"] == "Bearer ctx7-test"
        assert [c.id for c in candidates] == ["/vercel/next.js", "/other/next"]
        first = candidates[0]
        assert first.total_snippets == 4200
        assert first.stars == 120000
        assert first.trust_score == 10
        assert first.versions == ["v14.3.0", "v15.0.0"]
        assert candidates[1].stars is None

    def test_query_truncated(self):
        seen = {}

        def handler(request):
            seen["query"] = request.url.params["query"]
            return httpx.Response(200, json={"results": []})

        with _client(handler) as client:
            assert client.search("x" * 2000) == []
        assert len(seen["query"]) == MAX_QUERY_LENGTH

    def test_empty_query_no_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        with _client(handler) as client:
            assert client.search("   ") == []


class TestFailures:
    def test_http_error_status(self):
        with _client(lambda request: httpx.Response(500, text="boom")) as client:
            with pytest.raises(ResolutionBackendError) as exc_info:
                client.search("next")
        assert exc_info.value.details["status"] == 500

    def test_invalid_json(self):
        with _client(lambda request: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(ResolutionBackendError):
                client.search("next")

    def test_missing_results(self):
        with _client(lambda request: httpx.Response(200, json={"items": []})) as client:
            with pytest.raises(ResolutionBackendError):
                client.search("next")

    def test_malformed_candidate(self):
        payload = {"results": [{"id": "/a", "totalSnippets": "lots"}]}
        with _client(lambda request: httpx.Response(200, json=payload)) as client:
            with pytest.raises(ResolutionBackendError):
                client.search("a")

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with _client(handler) as client:
            with pytest.raises(ResolutionBackendError) as exc_info:
                client.search("next")
        assert exc_info.value.code == "resolution_backend_error"


class TestFromEnv:
    def test_no_key(self, monkeypatch):
        monkeypatch.delenv(API_KEY_ENV, raising=False)
        assert Context7Client.from_env() is None

    def test_key_from_env(self, monkeypatch):
        monkeypatch.setenv(API_KEY_ENV, "ctx7-env")
        client = Context7Client.from_env()
        assert client is not None
        assert client.api_key == "ctx7-env"
        client.close()
