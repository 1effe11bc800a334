"""
Tests for kcache CLI via subprocess.

Every test exercises the real entry point (`python -m kcache.cli`) against
a temporary SQLite database so there are no side-effects on the developer
machine.  The remote resolver is disabled by removing its API key.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import json
import os
import subprocess
import sys

import pytest


PYTHON = sys.executable
CLI = [PYTHON, "-m", "kcache.cli"]


def run(args, *, env=None, stdin=None):
    """Run a kcache CLI command and return CompletedProcess."""
    merged_env = {**os.environ, **(env or {})}
    merged_env.pop("CONTEXT7_API_KEY", None)
    merged_env.pop("KCACHE_DB", None)
    merged_env.pop("KCACHE_CONFIG", None)
    return subprocess.run(
        CLI + args,
        capture_output=True,
        text=True,
        env=merged_env,
        input=stdin,
        timeout=30,
    )


@pytest.fixture
def db(tmp_path):
    """Create an initialized cache and return the DB path."""
    db_path = str(tmp_path / "kc" / "cache.db")
    r = run(["init", str(tmp_path / "kc"), "--db", db_path, "-q"])
    assert r.returncode == 0, f"init failed: {r.stderr}"
    return db_path


@pytest.fixture
def docs_db(db):
    """A DB with next.js cached and one section."""
    r = run(["docs", "save", "/vercel/next.js", "next.js", "--version", "14.1.0", "--db", db])
    assert r.returncode == 0, r.stderr
    r = run([
        "docs", "section", "/vercel/next.js", "App Router",
        "--content", "The App Router supports nested layouts.",
        "--snippet", "export default function Layout() {}",
        "--snippet", "app/page.tsx",
        "--db", db,
    ])
    assert r.returncode == 0, r.stderr
    return db


def _save_memory(db, *args):
    r = run(["mem", "save", *args, "--db", db, "-q"])
    assert r.returncode == 0, r.stderr
    return r.stdout.strip()


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


class TestInit:
    def test_creates_cache(self, tmp_path):
        target = tmp_path / "kc"
        r = run(["init", str(target)])
        assert r.returncode == 0, r.stderr
        assert (target / "cache.db").exists()
        assert (target / ".gitignore").exists()
        assert "export KCACHE_DB=" in r.stdout

    def test_idempotent(self, db, tmp_path):
        r = run(["init", str(tmp_path / "kc"), "--db", db])
        assert r.returncode == 0
        assert "Cache exists" in r.stderr

    def test_no_command_prints_help(self):
        r = run([])
        assert r.returncode == 1


# ---------------------------------------------------------------------------
# docs
# ---------------------------------------------------------------------------


class TestDocs:
    def test_search(self, docs_db):
        r = run(["docs", "search", "app router", "--db", docs_db, "--json"])
        assert r.returncode == 0, r.stderr
        data = json.loads(r.stdout)
        assert data["count"] == 1
        hit = data["results"][0]
        assert hit["section"]["title"] == "App Router"
        assert hit["section"]["code_snippets"] == ["export default function Layout() {}", "app/page.tsx"]
        assert hit["relevance"] > 0

    def test_search_no_results(self, docs_db):
        r = run(["docs", "search", "nonexistent", "--db", docs_db])
        assert r.returncode == 0
        assert "No results" in r.stderr

    def test_search_json_same_for_both_paths(self, docs_db):
        ranked = run(["docs", "search", "zebra", "--db", docs_db, "--json"])
        fallback = run(["docs", "search", "zebra(", "--db", docs_db, "--json"])
        assert ranked.returncode == fallback.returncode == 0
        assert json.loads(ranked.stdout) == json.loads(fallback.stdout) == {"count": 0, "results": []}
        assert "strategy" not in ranked.stderr + fallback.stderr

    def test_section_from_stdin(self, docs_db):
        r = run(["docs", "section", "/vercel/next.js", "Caching", "--db", docs_db],
                stdin="fetch caching explained")
        assert r.returncode == 0, r.stderr
        r = run(["docs", "show", "/vercel/next.js", "--db", docs_db, "--json"])
        data = json.loads(r.stdout)
        assert data["library"]["section_count"] == 2
        assert data["library"]["version"] == "14.1.0"

    def test_section_unknown_library(self, db):
        r = run(["docs", "section", "/nope/nope", "T", "--content", "x", "--db", db])
        assert r.returncode == 1
        assert "not cached" in r.stderr

    def test_list_and_delete(self, docs_db):
        r = run(["docs", "list", "--db", docs_db, "--json"])
        assert [lib["external_id"] for lib in json.loads(r.stdout)] == ["/vercel/next.js"]
        r = run(["docs", "delete", "/vercel/next.js", "--db", docs_db, "--json"])
        assert json.loads(r.stdout)["sections_deleted"] == 1
        r = run(["docs", "list", "--db", docs_db, "--json"])
        assert json.loads(r.stdout) == []

    def test_sweep_nothing_expired(self, docs_db):
        r = run(["docs", "sweep", "--db", docs_db, "--json"])
        assert r.returncode == 0
        assert json.loads(r.stdout)["libraries_deleted"] == 0

    def test_show_not_found(self, db):
        r = run(["docs", "show", "/nope/nope", "--db", db])
        assert r.returncode == 1

    def test_stats(self, docs_db):
        r = run(["docs", "stats", "--db", docs_db])
        assert r.returncode == 0
        assert "Libraries: 1" in r.stdout


# ---------------------------------------------------------------------------
# mem
# ---------------------------------------------------------------------------


class TestMem:
    def test_save_and_show(self, db):
        mem_id = _save_memory(db, "decision", "Adopt zod", "--tags", "validation,zod",
                              "--project", "shop")
        assert mem_id.startswith("MEM-")
        r = run(["mem", "show", mem_id, "--db", db, "--json"])
        data = json.loads(r.stdout)
        assert data["memory"]["tags"] == ["validation", "zod"]
        assert data["memory"]["scope"] == "project"
        assert data["superseded_by"] is None

    def test_invalid_type_exit_1(self, db):
        r = run(["mem", "save", "rumour", "x", "--db", db])
        assert r.returncode == 1

    def test_search(self, db):
        _save_memory(db, "decision", "Adopt zod for validation")
        r = run(["mem", "search", "zod", "--db", db, "--json"])
        data = json.loads(r.stdout)
        assert data["count"] == 1
        assert data["search_mode"] == "text"

    def test_recent(self, db):
        _save_memory(db, "observation", "first note")
        _save_memory(db, "observation", "second note")
        r = run(["mem", "recent", "-k", "1", "--db", db, "--json"])
        assert len(json.loads(r.stdout)) == 1

    def test_update_and_delete(self, db):
        mem_id = _save_memory(db, "decision", "Old")
        r = run(["mem", "update", mem_id, "--title", "New", "--db", db, "--json"])
        assert json.loads(r.stdout)["title"] == "New"
        r = run(["mem", "update", mem_id, "--db", db])
        assert r.returncode == 1
        r = run(["mem", "delete", mem_id, "--db", db])
        assert r.returncode == 0
        r = run(["mem", "delete", mem_id, "--db", db])
        assert r.returncode == 1

    def test_promote(self, db):
        mem_id = _save_memory(db, "decision", "Adopt zod", "--project", "shop")
        r = run(["mem", "promote", mem_id, "--db", db, "--json"])
        data = json.loads(r.stdout)
        assert data["scope"] == "global"
        assert data["metadata"]["original_id"] == mem_id

    def test_update_unknown_json_error(self, db):
        r = run(["mem", "update", "MEM-missing", "--title", "x", "--db", db, "--json"])
        assert r.returncode == 1
        assert json.loads(r.stdout)["error"]["code"] == "not_found"

    def test_save_auto(self, db):
        r = run([
            "mem", "save", "bugfix", "Fix crash in features/booking",
            "-d", "Minor: touched apps/web/booking/slots.ts", "--auto", "--db", db, "--json",
        ])
        assert r.returncode == 0, r.stderr
        data = json.loads(r.stdout)
        assert data["importance"] == "low"
        assert "booking" in data["features"]
        assert data["related_files"] == ["apps/web/booking/slots.ts"]

    def test_similar_and_merge(self, db):
        a = _save_memory(db, "decision", "Use zod for form validation", "-d", "schema first",
                         "--tags", "zod")
        b = _save_memory(db, "decision", "Use zod for form validation", "-d", "schema first",
                         "--tags", "forms")
        r = run(["mem", "similar", "--db", db, "--json"])
        pairs = json.loads(r.stdout)
        assert len(pairs) == 1
        assert {pairs[0]["memory1"]["id"], pairs[0]["memory2"]["id"]} == {a, b}
        r = run(["mem", "merge", a, b, "--db", db, "--json"])
        assert r.returncode == 0, r.stderr
        assert json.loads(r.stdout)["tags"] == ["zod", "forms"]
        r = run(["link", "superseded", "--db", db, "--json"])
        assert json.loads(r.stdout)[0]["memory"]["id"] == b

    def test_cleanup_dry_run(self, db):
        _save_memory(db, "observation", "fresh note")
        r = run(["mem", "cleanup", "--db", db, "--json"])
        data = json.loads(r.stdout)
        assert data["dry_run"] is True
        assert data["count"] == 0


# ---------------------------------------------------------------------------
# link
# ---------------------------------------------------------------------------


class TestLink:
    def test_add_chain_superseded(self, db):
        old = _save_memory(db, "decision", "Use REST")
        new = _save_memory(db, "decision", "Use tRPC")
        r = run(["link", "add", new, old, "supersedes", "--db", db])
        assert r.returncode == 0, r.stderr

        r = run(["link", "chain", new, "--db", db])
        assert old in r.stdout
        assert "(supersedes)" in r.stdout

        r = run(["link", "superseded", "--db", db])
        assert old in r.stdout
        assert new in r.stdout

    def test_duplicate_conflict(self, db):
        a = _save_memory(db, "decision", "a")
        b = _save_memory(db, "decision", "b")
        assert run(["link", "add", a, b, "related", "--db", db]).returncode == 0
        r = run(["link", "add", a, b, "related", "--db", db, "--json"])
        assert r.returncode == 1
        assert json.loads(r.stdout)["error"]["code"] == "conflict"

    def test_self_link(self, db):
        a = _save_memory(db, "decision", "a")
        assert run(["link", "add", a, a, "related", "--db", db]).returncode == 1

    def test_rm_and_stats(self, db):
        a = _save_memory(db, "decision", "a")
        b = _save_memory(db, "decision", "b")
        run(["link", "add", a, b, "caused", "--db", db])
        r = run(["link", "rm", a, b, "--db", db, "--json"])
        assert json.loads(r.stdout)["removed"] == 1
        r = run(["link", "stats", "--db", db, "--json"])
        assert json.loads(r.stdout)["total"] == 0


# ---------------------------------------------------------------------------
# resolve / detect / schema / reindex
# ---------------------------------------------------------------------------


class TestResolve:
    def test_default(self, db):
        r = run(["resolve", "Next.js", "--db", db])
        assert r.returncode == 0
        assert r.stdout.strip() == "/vercel/next.js"

    def test_unknown_exit_1(self, db):
        r = run(["resolve", "left-pad", "--db", db])
        assert r.returncode == 1

    def test_list_mappings(self, db):
        r = run(["resolve", "--list", "--db", db, "--json"])
        assert r.returncode == 0, r.stderr
        data = json.loads(r.stdout)
        assert any(m["canonical_id"] == "/vercel/next.js" for m in data)

    def test_name_required_without_list(self, db):
        assert run(["resolve", "--db", db]).returncode == 1


class TestDetect:
    def test_package_json(self, docs_db, tmp_path):
        pkg = tmp_path / "package.json"
        pkg.write_text(json.dumps({"dependencies": {"next": "^14", "zod": "3"}}), encoding="utf-8")
        r = run(["detect", str(pkg), "--db", docs_db, "--json"])
        assert r.returncode == 0, r.stderr
        data = json.loads(r.stdout)
        assert [lib["canonical_id"] for lib in data["to_fetch"]] == ["/colinhacks/zod"]
        assert data["to_refresh"] == []

    def test_missing_file(self, db, tmp_path):
        r = run(["detect", str(tmp_path / "package.json"), "--db", db])
        assert r.returncode == 1


class TestSchema:
    def test_status(self, db):
        r = run(["schema", "status", "--db", db, "--json"])
        data = json.loads(r.stdout)
        assert data["version"] == data["latest"]
        assert data["pending"] == []

    def test_rollback_requires_yes(self, db):
        assert run(["schema", "rollback", "2", "--db", db]).returncode == 1

    def test_rollback(self, db):
        r = run(["schema", "rollback", "3", "--yes", "--db", db, "--json"])
        assert r.returncode == 0, r.stderr
        assert json.loads(r.stdout)["version"] == 3

    def test_rollback_does_not_migrate_forward_first(self, db):
        import sqlite3
        from pathlib import Path

        assert run(["schema", "rollback", "3", "--yes", "--db", db]).returncode == 0
        r = run(["schema", "rollback", "2", "--yes", "--db", db, "--json"])
        assert r.returncode == 0, r.stderr
        assert json.loads(r.stdout)["version"] == 2
        assert not list(Path(db).parent.glob("cache.db.backup-*"))
        conn = sqlite3.connect(db)
        try:
            assert conn.execute("SELECT MAX(version) FROM schema_versions").fetchone()[0] == 2
        finally:
            conn.close()

    def test_reindex(self, docs_db):
        r = run(["reindex", "--db", docs_db, "--json"])
        assert r.returncode == 0, r.stderr
        data = json.loads(r.stdout)
        assert data["status"] == "ok"
