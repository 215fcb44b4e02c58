"""Tests for query routing and duplicate heuristics."""

from __future__ import annotations

import pytest

from repomemory.errors import InvalidCategory
from repomemory.memory.categories import Category
from repomemory.memory.curation import (
    detect_query_category,
    find_likely_duplicates,
    parse_supersedes,
    topic_from_filename,
)
from repomemory.memory.search import SearchResult


def _hit(key: str, score: float) -> SearchResult:
    category, filename = key.split("/")
    return SearchResult(category, filename, filename, "", score, f".context/{key}")


class TestRouting:
    @pytest.mark.parametrize(
        "query,expected",
        [
            ("why did we choose Drizzle", Category.DECISIONS),
            ("what alternatives were considered", Category.DECISIONS),
            ("tradeoffs of caching", Category.DECISIONS),
            ("login bug after deploy", Category.REGRESSIONS),
            ("what broke the build", Category.REGRESSIONS),
            ("tests failing on CI", Category.REGRESSIONS),
            ("naming conventions", Category.PREFERENCES),
            ("preferred indentation", Category.PREFERENCES),
            ("what did we work on yesterday", Category.SESSIONS),
            ("last time we touched billing", Category.SESSIONS),
            ("how does auth work", Category.FACTS),
            ("database schema", Category.FACTS),
        ],
    )
    def test_routes(self, query: str, expected: Category):
        assert detect_query_category(query) is expected

    def test_decisions_checked_before_regressions(self):
        assert detect_query_category("why is this bug back") is Category.DECISIONS

    def test_no_route(self):
        assert detect_query_category("drizzle") is None
        assert detect_query_category("design pattern for retries") is None

    def test_whole_words_only(self):
        assert detect_query_category("debugging stylesheet") is None


class TestDuplicates:
    def test_relative_threshold(self):
        results = [_hit("facts/new.md", 10.0), _hit("facts/old.md", 7.0), _hit("facts/far.md", 2.0)]
        dups = find_likely_duplicates(results, "facts/new.md", 0.6)
        assert [d.key for d in dups] == ["facts/old.md"]

    def test_excludes_self(self):
        dups = find_likely_duplicates([_hit("facts/new.md", 5.0)], "facts/new.md", 0.6)
        assert dups == []

    def test_empty(self):
        assert find_likely_duplicates([], "facts/x.md", 0.6) == []


class TestSupersedes:
    def test_bare_name_uses_default(self):
        assert parse_supersedes("old-choice", Category.DECISIONS) == (Category.DECISIONS, "old-choice")

    def test_qualified(self):
        assert parse_supersedes("facts/old.md", Category.DECISIONS) == (Category.FACTS, "old.md")

    def test_unknown_prefix_is_part_of_name(self):
        assert parse_supersedes("api/v1", Category.FACTS) == (Category.FACTS, "api/v1")


class TestCategory:
    def test_parse_is_lenient_on_case(self):
        assert Category.parse(" Decisions ") is Category.DECISIONS

    def test_parse_rejects_unknown(self):
        with pytest.raises(InvalidCategory) as exc:
            Category.parse("secrets")
        assert "secrets" in str(exc.value)
        assert isinstance(exc.value, ValueError)


def test_topic_from_filename():
    assert topic_from_filename("auth-flow.md") == "auth flow"
    assert topic_from_filename("why_we_chose") == "why we chose"
