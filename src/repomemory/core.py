"""RepoMemory — the hub between the host, the document store and the index.

Responsibilities:
1. Validate requests before touching disk
2. Delegate structure to ContextStore and relevance to SearchIndex
3. Keep the index in lockstep with every mutation, before returning
4. Curation: query routing, duplicate warnings, supersede, session capture
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from repomemory.config import RepoMemoryConfig
from repomemory.memory.categories import ROOT_CATEGORY, Category
from repomemory.memory.curation import (
    detect_query_category,
    find_likely_duplicates,
    parse_supersedes,
    topic_from_filename,
)
from repomemory.memory.embeddings import create_embedding_provider
from repomemory.memory.search import SearchIndex
from repomemory.memory.session import build_session_summary, session_filename
from repomemory.memory.store import ContextStore, sanitize_filename

if TYPE_CHECKING:
    from repomemory.memory.embeddings import EmbeddingProvider
    from repomemory.memory.search import SearchResult
    from repomemory.memory.session import SessionTracker
    from repomemory.memory.store import ContextEntry

logger = logging.getLogger(__name__)

RECENT_DAYS = 7
RECENT_SESSIONS = 3
DUPLICATE_SCAN_LIMIT = 10


@dataclass
class SearchOutcome:
    results: list[SearchResult]
    category: Category | None = None  # explicit or routed filter
    routed: bool = False
    fell_back: bool = False  # routed search was empty, retried unfiltered


@dataclass
class WriteResult:
    relative_path: str
    key: str
    appended: bool = False
    duplicates: list[SearchResult] = field(default_factory=list)
    superseded: str | None = None
    superseded_found: bool = False


@dataclass
class Orientation:
    index: str
    recent_sessions: list[ContextEntry]
    recent_entries: list[ContextEntry]
    has_facts: bool


class RepoMemory:
    """Knowledge base operations exposed to the host."""

    def __init__(
        self,
        config: RepoMemoryConfig,
        embedder: EmbeddingProvider | None = None,
    ) -> None:
        self.config = config
        self.store = ContextStore(config.repo_root, config.context_dir)
        self.embedder = embedder or create_embedding_provider(config.embedding)
        self.index = SearchIndex(
            self.store,
            embedder=self.embedder,
            alpha=config.search.hybrid_alpha,
            use_fts=config.search.fts,
        )

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        self.store.scaffold()
        await self.index.open()
        logger.info(
            "Knowledge base ready at %s (fts=%s, embeddings=%s)",
            self.store.path,
            self.index.fts_enabled,
            self.embedder.name if self.embedder else "none",
        )

    async def rebuild(self) -> int:
        await self.index.rebuild()
        return self.index.record_count

    async def close(self) -> None:
        try:
            await self.index.close()
        finally:
            close = getattr(self.embedder, "close", None)
            if close and callable(close):
                await close()

    # ── Search ────────────────────────────────────────────────

    async def search(
        self,
        query: str,
        category: Category | str | None = None,
        limit: int = 5,
    ) -> SearchOutcome:
        """Search, routing to a category when the caller did not pick one.

        A routed search that finds nothing is retried once across all
        categories, so a wrong guess never hides a match.
        """
        if category is not None:
            cat = Category.parse(category)
            return SearchOutcome(await self.index.search(query, cat, limit), category=cat)

        routed = detect_query_category(query)
        if routed is None:
            return SearchOutcome(await self.index.search(query, None, limit))

        results = await self.index.search(query, routed, limit)
        if results:
            return SearchOutcome(results, category=routed, routed=True)

        logger.debug("No %s results for %r, retrying unfiltered", routed.value, query)
        results = await self.index.search(query, None, limit)
        return SearchOutcome(results, category=routed, routed=True, fell_back=True)

    # ── Mutations ─────────────────────────────────────────────

    async def write(
        self,
        category: Category | str,
        filename: str,
        content: str,
        append: bool = False,
        supersedes: str | None = None,
    ) -> WriteResult:
        cat = Category.parse(category)
        name = sanitize_filename(filename)
        target = parse_supersedes(supersedes, cat) if supersedes else None
        if target and target[0] is cat and sanitize_filename(target[1]) == name:
            raise ValueError(f"{cat.value}/{name} cannot supersede itself")

        if append:
            relative_path = self.store.append(cat, filename, content)
        else:
            relative_path = self.store.write(cat, filename, content)

        entry = self.store.get_entry(cat, filename)
        if entry is not None:
            await self.index.index_entry(entry)

        result = WriteResult(relative_path, f"{cat.value}/{name}", appended=append)

        if target:
            old_cat, old_name = target
            old_file = sanitize_filename(old_name)
            result.superseded = f"{old_cat.value}/{old_file}"
            result.superseded_found = self.store.delete(old_cat, old_name)
            if result.superseded_found:
                await self.index.remove_entry(old_cat, old_file)
                logger.info("%s superseded %s", result.key, result.superseded)
        elif not append:
            result.duplicates = await self._likely_duplicates(cat, name, result.key)

        logger.info("Wrote %s%s", relative_path, " (appended)" if append else "")
        return result

    async def _likely_duplicates(self, category: Category, filename: str, key: str) -> list[SearchResult]:
        topic = topic_from_filename(filename)
        results = await self.index.search(topic, category, DUPLICATE_SCAN_LIMIT)
        duplicates = find_likely_duplicates(results, key, self.config.curation.purge_threshold)
        if duplicates:
            logger.info(
                "%s may duplicate: %s", key, ", ".join(d.key for d in duplicates)
            )
        return duplicates

    async def delete(self, category: Category | str, filename: str) -> bool:
        cat = Category.parse(category)
        found = self.store.delete(cat, filename)
        if found:
            await self.index.remove_entry(cat, sanitize_filename(filename))
            logger.info("Deleted %s/%s", cat.value, sanitize_filename(filename))
        return found

    # ── Reads ─────────────────────────────────────────────────

    def read(self, category: Category | str, filename: str) -> str | None:
        return self.store.read(category, filename)

    def list_entries(self, category: Category | str | None = None) -> list[ContextEntry]:
        return self.store.list_entries(category)

    def orient(self, now: datetime | None = None) -> Orientation:
        now = now or datetime.now()
        cutoff = now - timedelta(days=RECENT_DAYS)
        entries = self.store.list_entries()

        sessions = sorted(
            (e for e in entries if e.category == Category.SESSIONS.value),
            key=lambda e: e.last_modified,
            reverse=True,
        )
        recent = sorted(
            (
                e
                for e in entries
                if e.category not in (ROOT_CATEGORY, Category.SESSIONS.value)
                and e.last_modified >= cutoff
            ),
            key=lambda e: e.last_modified,
            reverse=True,
        )
        return Orientation(
            index=self.store.read_index(),
            recent_sessions=sessions[:RECENT_SESSIONS],
            recent_entries=recent,
            has_facts=any(e.category == Category.FACTS.value for e in entries),
        )

    # ── Session capture ───────────────────────────────────────

    async def capture_session(self, session: SessionTracker) -> str | None:
        """Append the session record if the session met the activity bar."""
        if not session.should_capture(self.config.curation.session_min_tool_calls):
            logger.debug("Session below capture threshold (%d calls)", len(session.tool_calls))
            return None

        summary = build_session_summary(session, session.elapsed_seconds())
        name = session_filename(session.start_time)
        relative_path = self.store.append(Category.SESSIONS, name, summary)
        entry = self.store.get_entry(Category.SESSIONS, name)
        if entry is not None:
            await self.index.index_entry(entry)
        logger.info("Captured session to %s", relative_path)
        return relative_path
