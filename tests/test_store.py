"""Tests for the markdown document store."""

from __future__ import annotations

import pytest
from pathlib import Path

from repomemory.errors import InvalidCategory, StorageFailure
from repomemory.memory.categories import Category
from repomemory.memory.store import ContextStore, extract_title, sanitize_filename


@pytest.fixture
def store(tmp_path: Path) -> ContextStore:
    s = ContextStore(tmp_path)
    s.scaffold()
    return s


class TestSanitizeFilename:
    def test_appends_suffix(self):
        assert sanitize_filename("auth-flow") == "auth-flow.md"

    def test_suffix_not_doubled(self):
        assert sanitize_filename("auth-flow.md") == "auth-flow.md"
        assert sanitize_filename("Auth-Flow.MD") == "auth-flow.md"

    def test_spaces_and_case(self):
        assert sanitize_filename("Why We Chose Drizzle") == "why-we-chose-drizzle.md"

    def test_path_traversal_neutralized(self):
        name = sanitize_filename("../../etc/passwd")
        assert "/" not in name
        assert ".." not in name
        assert name == "etc-passwd.md"

    def test_diacritics_folded(self):
        assert sanitize_filename("café résumé") == "cafe-resume.md"

    def test_idempotent(self):
        for raw in ["A  B__c", "../x", "héllo wörld.md", "...", "  -a-  "]:
            once = sanitize_filename(raw)
            assert sanitize_filename(once) == once

    def test_empty_gets_stable_fallback(self):
        a = sanitize_filename("???")
        b = sanitize_filename("???")
        assert a == b
        assert a.startswith("entry-") and a.endswith(".md")
        assert sanitize_filename("!!!") != a

    def test_non_latin_names_do_not_collide(self):
        flow = sanitize_filename("认证流程")
        policy = sanitize_filename("认证策略")
        cyrillic = sanitize_filename("поток")
        for name in (flow, policy, cyrillic):
            assert name.startswith("entry-") and name != "entry-.md"
        assert len({flow, policy, cyrillic}) == 3
        assert sanitize_filename("认证流程") == flow


class TestExtractTitle:
    def test_heading(self):
        assert extract_title("intro\n# Auth Flow\nbody", "x.md") == "Auth Flow"

    def test_frontmatter_wins(self):
        content = "---\ntitle: From Frontmatter\n---\n# Heading\n"
        assert extract_title(content, "x.md") == "From Frontmatter"

    def test_filename_fallback(self):
        assert extract_title("no heading here", "auth-flow.md") == "auth flow"


class TestScaffold:
    def test_creates_category_dirs(self, store: ContextStore):
        for category in Category:
            assert (store.path / category.value).is_dir()

    def test_gitignore_excludes_snapshot(self, store: ContextStore):
        gitignore = (store.path / ".gitignore").read_text()
        assert ".search.db" in gitignore

    def test_idempotent(self, store: ContextStore):
        (store.path / ".gitignore").write_text("custom\n")
        store.scaffold()
        assert (store.path / ".gitignore").read_text() == "custom\n"


class TestEntryCrud:
    def test_write_then_read(self, store: ContextStore):
        path = store.write("facts", "Auth Flow", "# Auth\nJWT tokens")
        assert path == ".context/facts/auth-flow.md"
        assert store.read("facts", "auth-flow") == "# Auth\nJWT tokens"

    def test_overwrite(self, store: ContextStore):
        store.write("facts", "a", "one")
        store.write("facts", "a", "two")
        assert store.read("facts", "a") == "two"

    def test_append_uses_blank_line(self, store: ContextStore):
        store.append("sessions", "2026-01-01", "first")
        store.append("sessions", "2026-01-01", "second")
        assert store.read("sessions", "2026-01-01") == "first\n\nsecond"

    def test_read_missing(self, store: ContextStore):
        assert store.read("facts", "nope") is None

    def test_delete(self, store: ContextStore):
        store.write("facts", "a", "x")
        assert store.delete("facts", "a") is True
        assert store.delete("facts", "a") is False
        assert store.read("facts", "a") is None

    def test_invalid_category_touches_nothing(self, store: ContextStore):
        before = sorted(p.relative_to(store.path) for p in store.path.rglob("*"))
        with pytest.raises(InvalidCategory) as exc:
            store.write("secrets", "a", "x")
        assert "facts" in str(exc.value)
        after = sorted(p.relative_to(store.path) for p in store.path.rglob("*"))
        assert before == after

    def test_traversal_stays_in_category(self, store: ContextStore, tmp_path: Path):
        path = store.write("facts", "../../outside", "x")
        assert path.startswith(".context/facts/")
        assert not (tmp_path / "outside.md").exists()


class TestListing:
    def test_skips_hidden_and_non_markdown(self, store: ContextStore):
        store.write("facts", "a", "# A")
        (store.path / "facts" / ".hidden.md").write_text("x")
        (store.path / "facts" / "notes.txt").write_text("x")
        keys = [e.key for e in store.list_entries("facts")]
        assert keys == ["facts/a.md"]

    def test_skips_names_read_cannot_reach(self, store: ContextStore):
        store.write("facts", "auth-flow", "# Auth")
        (store.path / "facts" / "Auth Flow.md").write_text("# Hand made")
        assert [e.key for e in store.list_entries("facts")] == ["facts/auth-flow.md"]
        assert store.stats().total_files == 1

    def test_sorted_within_category(self, store: ContextStore):
        store.write("facts", "zeta", "z")
        store.write("facts", "alpha", "a")
        assert [e.filename for e in store.list_entries("facts")] == ["alpha.md", "zeta.md"]

    def test_unfiltered_includes_index(self, store: ContextStore):
        store.write_index("# Overview")
        store.write("decisions", "db", "# DB")
        entries = store.list_entries()
        root = [e for e in entries if e.category == "root"]
        assert len(root) == 1
        assert root[0].title == "Index"
        assert all(e.category != "root" for e in store.list_entries("decisions"))

    def test_entry_metadata(self, store: ContextStore):
        store.write("facts", "auth", "# Auth Flow\nbody")
        entry = store.get_entry("facts", "auth")
        assert entry is not None
        assert entry.title == "Auth Flow"
        assert entry.relative_path == ".context/facts/auth.md"
        assert entry.size_bytes == len("# Auth Flow\nbody")


class TestStats:
    def test_empty(self, store: ContextStore):
        stats = store.stats()
        assert stats.total_files == 0
        assert stats.oldest is None

    def test_counts(self, store: ContextStore):
        store.write("facts", "a", "aaa")
        store.write("facts", "b", "bb")
        store.write("decisions", "c", "c")
        stats = store.stats()
        assert stats.total_files == 3
        assert stats.total_size == 6
        assert stats.categories == {"facts": 2, "decisions": 1}
        assert stats.newest is not None


def test_get_all_content(store: ContextStore):
    store.write("facts", "a", "alpha")
    store.write_index("# Overview")
    dump = store.get_all_content()
    assert "--- facts/a.md ---\nalpha" in dump
    assert "--- root/index.md ---\n# Overview" in dump


def _refuse(path, *args, **kwargs):
    raise PermissionError("read-only file system")


class TestStorageFailure:
    def test_write(self, store: ContextStore, monkeypatch):
        monkeypatch.setattr(Path, "write_text", _refuse)
        with pytest.raises(StorageFailure) as exc:
            store.write("facts", "a", "x")
        assert exc.value.operation == "write"
        assert exc.value.path == store.path / "facts" / "a.md"
        assert isinstance(exc.value.__cause__, PermissionError)
        assert str(exc.value.path) in str(exc.value)

    def test_append(self, store: ContextStore, monkeypatch):
        monkeypatch.setattr(Path, "write_text", _refuse)
        with pytest.raises(StorageFailure) as exc:
            store.append("sessions", "2026-01-01", "x")
        assert exc.value.operation == "append to"
        assert exc.value.path == store.path / "sessions" / "2026-01-01.md"

    def test_delete(self, store: ContextStore, monkeypatch):
        store.write("facts", "a", "x")
        monkeypatch.setattr(Path, "unlink", _refuse)
        with pytest.raises(StorageFailure) as exc:
            store.delete("facts", "a")
        assert exc.value.operation == "delete"
        assert isinstance(exc.value.__cause__, PermissionError)
        monkeypatch.undo()
        assert store.read("facts", "a") == "x"
