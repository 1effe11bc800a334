"""
Tests for kcache.autotag — keyword tags, features, file paths, importance
hints, and MemoryStore.save(auto_enrich=True).

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import pytest

from kcache.autotag import (
    MAX_TAGS,
    enrich,
    extract_features,
    extract_files,
    extract_tags,
    suggest_importance,
    suggest_memory_type,
)
from kcache.memory import MemoryStore


@pytest.fixture
def store(db):
    return MemoryStore(db)


# ── Tags ──────────────────────────────────────────────────────────────────


class TestExtractTags:
    def test_domain_and_tech(self):
        assert extract_tags("Decided to use trpc for the API routes") == ["api", "trpc"]

    def test_word_boundaries(self):
        # "debug" must not read as "db", nor "build" as "ui"
        assert extract_tags("debug the build") == []

    def test_multi_word_keyword(self):
        assert "refactor" in extract_tags("pay down technical debt")

    def test_existing_tags_first_and_lowercased(self):
        tags = extract_tags("redis cache", existing_tags=["Infra"])
        assert tags[0] == "infra"
        assert "cache" in tags

    def test_extensions(self):
        tags = extract_tags("see settings.toml and app.py")
        assert "toml" in tags and "py" in tags

    def test_pascal_case_identifiers(self):
        tags = extract_tags("BookingForm calls PaymentService")
        assert "bookingform" in tags
        assert "paymentservice" in tags

    def test_use_for(self):
        assert "valibot" in extract_tags("use valibot for parsing")

    def test_capped(self):
        text = ("api database auth ui state css server cache queue test deploy "
                "config performance security")
        assert len(extract_tags(text)) == MAX_TAGS

    def test_no_duplicates(self):
        tags = extract_tags("prisma schema with prisma client")
        assert tags.count("prisma") == 1


# ── Features and files ────────────────────────────────────────────────────


class TestExtractFeatures:
    def test_path_segments(self):
        assert extract_features("edit src/features/booking/form.tsx") == ["booking"]

    def test_apps_layout(self):
        assert extract_features("apps/web/checkout/page.tsx") == ["checkout"]

    def test_explicit_mention(self):
        assert extract_features("feature: onboarding") == ["onboarding"]

    def test_none(self):
        assert extract_features("plain text") == []


class TestExtractFiles:
    def test_relative_paths(self):
        files = extract_files("changed src/api/router.ts and lib/db/client.py today")
        assert files == ["src/api/router.ts", "lib/db/client.py"]

    def test_bare_filenames_ignored(self):
        assert extract_files("see README.md") == []

    def test_capped(self):
        text = " ".join(f"dir/file{i}.ts" for i in range(15))
        assert len(extract_files(text)) == 10


# ── Importance and type ───────────────────────────────────────────────────


class TestSuggestions:
    def test_critical_before_high(self):
        assert suggest_importance("important: security hole") == "critical"

    def test_high(self):
        assert suggest_importance("this is required") == "high"

    def test_low(self):
        assert suggest_importance("minor tweak") == "low"

    def test_none(self):
        assert suggest_importance("renamed a variable") is None

    def test_word_boundary(self):
        # "mustard" is not "must"
        assert suggest_importance("mustard colour") is None

    def test_memory_type(self):
        assert suggest_memory_type("We decided on zod") == "decision"
        assert suggest_memory_type("fixed the crash") == "bugfix"
        assert suggest_memory_type("nothing here") is None


class TestEnrich:
    def test_files_from_description_only(self):
        result = enrich("touch src/a.ts", "no paths here")
        assert result.files == []

    def test_combined(self):
        result = enrich(
            "Critical auth fix",
            "fixed login in src/features/auth/login.ts",
        )
        assert "auth" in result.tags
        assert result.features == ["auth"]
        assert result.files == ["src/features/auth/login.ts"]
        assert result.suggested_importance == "critical"
        assert result.suggested_type == "bugfix"


# ── MemoryStore.save(auto_enrich=True) ────────────────────────────────────


class TestSaveAutoEnrich:
    def test_off_by_default(self, store):
        m = store.save("decision", "Use redis cache", description="critical path")
        assert m.tags == []
        assert m.importance == "medium"

    def test_fills_missing_fields(self, store):
        m = store.save(
            "bugfix", "Critical auth fix",
            description="fixed login in src/features/auth/login.ts",
            auto_enrich=True,
        )
        assert "auth" in m.tags
        assert m.features == ["auth"]
        assert m.related_files == ["src/features/auth/login.ts"]
        assert m.importance == "critical"
        stored = store.get(m.id)
        assert stored.tags == m.tags
        assert stored.importance == "critical"

    def test_explicit_values_kept(self, store):
        m = store.save(
            "bugfix", "Critical auth fix",
            description="fixed login in src/features/auth/login.ts",
            importance="low", tags=[], features=["sso"],
            auto_enrich=True,
        )
        assert m.tags == []
        assert m.features == ["sso"]
        assert m.importance == "low"
        assert m.related_files == ["src/features/auth/login.ts"]

    def test_no_hint_keeps_default_importance(self, store):
        m = store.save("observation", "renamed a variable", auto_enrich=True)
        assert m.importance == "medium"
