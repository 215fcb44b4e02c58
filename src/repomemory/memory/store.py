"""Document store — markdown files under .context/ are the source of truth.

Every entry lives at ``<context_dir>/<category>/<sanitized-name>.md``. Names
are sanitized before any path is built, so a caller can never address a file
outside its category directory.
"""

from __future__ import annotations

import hashlib
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import frontmatter

from repomemory.errors import StorageFailure
from repomemory.memory.categories import ROOT_CATEGORY, Category

logger = logging.getLogger(__name__)

ENTRY_SUFFIX = ".md"
INDEX_FILENAME = "index.md"
SNAPSHOT_FILENAME = ".search.db"

_GITIGNORE = f"{SNAPSHOT_FILENAME}\n{SNAPSHOT_FILENAME}-*\n{SNAPSHOT_FILENAME}.tmp\n"
_HEADING_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)


@dataclass
class ContextEntry:
    """One knowledge entry, identified by (category, filename)."""

    category: str
    filename: str
    title: str
    content: str
    relative_path: str
    last_modified: datetime
    size_bytes: int

    @property
    def key(self) -> str:
        return f"{self.category}/{self.filename}"


@dataclass
class StoreStats:
    total_files: int = 0
    total_size: int = 0
    categories: dict[str, int] = field(default_factory=dict)
    oldest: tuple[str, float] | None = None  # (key, age in seconds)
    newest: tuple[str, float] | None = None


def sanitize_filename(raw: str) -> str:
    """Normalize a user supplied name into a safe, deterministic filename.

    Accented characters are transliterated, everything outside
    ``[a-z0-9._-]`` becomes a hyphen, and separator runs collapse. A name
    with nothing left (e.g. all CJK) falls back to a hash of the raw input.
    """
    name = unicodedata.normalize("NFKD", raw)
    name = "".join(ch for ch in name if not unicodedata.combining(ch))
    name = name.strip().lower()
    if name.endswith(ENTRY_SUFFIX):
        name = name[: -len(ENTRY_SUFFIX)]
    name = re.sub(r"[^a-z0-9._-]", "-", name)
    name = re.sub(r"-{2,}", "-", name)
    name = re.sub(r"\.{2,}", ".", name)
    name = name.strip("-_.")
    if not name:
        digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()[:10]
        name = f"entry-{digest}"
    return name + ENTRY_SUFFIX


def extract_title(content: str, filename: str) -> str:
    """Frontmatter title, else first level-1 heading, else de-hyphenated name."""
    try:
        post = frontmatter.loads(content)
        title = post.metadata.get("title")
        body = post.content
    except Exception:
        title, body = None, content
    if title:
        return str(title).strip()
    match = _HEADING_RE.search(body)
    if match:
        return match.group(1).strip()
    return Path(filename).stem.replace("-", " ")


class ContextStore:
    """CRUD over the knowledge base directory tree."""

    def __init__(self, repo_root: Path, context_dir: str = ".context") -> None:
        self.root = Path(repo_root)
        self.context_dir = self.root / context_dir

    @property
    def path(self) -> Path:
        return self.context_dir

    @property
    def snapshot_path(self) -> Path:
        return self.context_dir / SNAPSHOT_FILENAME

    @property
    def index_path(self) -> Path:
        return self.context_dir / INDEX_FILENAME

    # ── Initialization ────────────────────────────────────────

    def exists(self) -> bool:
        return self.context_dir.is_dir()

    def scaffold(self) -> None:
        """Create the category directories and .gitignore. Idempotent."""
        for category in Category:
            (self.context_dir / category.value).mkdir(parents=True, exist_ok=True)

        gitignore = self.context_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(_GITIGNORE, encoding="utf-8")

    # ── Paths ─────────────────────────────────────────────────

    def _category_dir(self, category: Category | str) -> Path:
        return self.context_dir / Category.parse(category).value

    def _entry_path(self, category: Category | str, raw_name: str) -> Path:
        # sanitize_filename never emits a path separator, so the parent of
        # the returned path is always the category directory.
        return self._category_dir(category) / sanitize_filename(raw_name)

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    # ── Entry CRUD ────────────────────────────────────────────

    def write(self, category: Category | str, raw_name: str, content: str) -> str:
        """Create or overwrite an entry. Returns the repo-relative path."""
        path = self._entry_path(category, raw_name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise StorageFailure("write", path) from e
        logger.debug("Wrote %s (%d chars)", path, len(content))
        return self._relative(path)

    def append(self, category: Category | str, raw_name: str, content: str) -> str:
        """Append to an entry with a blank-line separator, or create it."""
        path = self._entry_path(category, raw_name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            existing = path.read_text(encoding="utf-8") if path.exists() else ""
            path.write_text(f"{existing}\n\n{content}" if existing else content, encoding="utf-8")
        except OSError as e:
            raise StorageFailure("append to", path) from e
        logger.debug("Appended to %s (%d chars)", path, len(content))
        return self._relative(path)

    def read(self, category: Category | str, filename: str) -> str | None:
        path = self._entry_path(category, filename)
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageFailure("read", path) from e

    def delete(self, category: Category | str, filename: str) -> bool:
        """Remove an entry. Returns False when there was nothing to remove."""
        path = self._entry_path(category, filename)
        if not path.is_file():
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFailure("delete", path) from e
        logger.debug("Deleted %s", path)
        return True

    def get_entry(self, category: Category | str, filename: str) -> ContextEntry | None:
        path = self._entry_path(category, filename)
        if not path.is_file():
            return None
        return self._load_entry(Category.parse(category).value, path)

    def _load_entry(self, category: str, path: Path) -> ContextEntry:
        try:
            stat = path.stat()
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageFailure("read", path) from e
        return ContextEntry(
            category=category,
            filename=path.name,
            title=extract_title(content, path.name),
            content=content,
            relative_path=self._relative(path),
            last_modified=datetime.fromtimestamp(stat.st_mtime),
            size_bytes=stat.st_size,
        )

    # ── Listing ───────────────────────────────────────────────

    def list_entries(self, category: Category | str | None = None) -> list[ContextEntry]:
        """List entries, optionally for one category.

        The unfiltered listing also carries the orientation document as a
        synthetic ``root`` entry.
        """
        categories = [Category.parse(category)] if category is not None else list(Category)
        entries: list[ContextEntry] = []

        for cat in categories:
            cat_dir = self.context_dir / cat.value
            if not cat_dir.is_dir():
                continue
            for path in sorted(cat_dir.iterdir()):
                if path.name.startswith(".") or path.suffix != ENTRY_SUFFIX or not path.is_file():
                    continue
                if sanitize_filename(path.name) != path.name:
                    # Unreachable through read/delete, so not listed or indexed.
                    logger.warning("Skipping %s: rename it to %s", path, sanitize_filename(path.name))
                    continue
                entries.append(self._load_entry(cat.value, path))

        if category is None and self.index_path.is_file():
            root_entry = self._load_entry(ROOT_CATEGORY, self.index_path)
            root_entry.title = "Index"
            entries.append(root_entry)

        return entries

    def get_all_content(self) -> str:
        return "\n\n".join(f"--- {e.key} ---\n{e.content}" for e in self.list_entries())

    def stats(self) -> StoreStats:
        entries = self.list_entries()
        stats = StoreStats(total_files=len(entries))
        if not entries:
            return stats

        now = datetime.now()
        for entry in entries:
            stats.categories[entry.category] = stats.categories.get(entry.category, 0) + 1
            stats.total_size += entry.size_bytes

        oldest = min(entries, key=lambda e: e.last_modified)
        newest = max(entries, key=lambda e: e.last_modified)
        stats.oldest = (oldest.key, (now - oldest.last_modified).total_seconds())
        stats.newest = (newest.key, (now - newest.last_modified).total_seconds())
        return stats

    # ── Orientation document ──────────────────────────────────

    def read_index(self) -> str:
        if not self.index_path.is_file():
            return ""
        return self.index_path.read_text(encoding="utf-8")

    def write_index(self, content: str) -> None:
        try:
            self.context_dir.mkdir(parents=True, exist_ok=True)
            self.index_path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise StorageFailure("write", self.index_path) from e
        logger.info("Updated %s (%d chars)", INDEX_FILENAME, len(content))
