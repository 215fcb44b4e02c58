"""Search index — a derived, persisted projection of the context store.

The index lives in an in-memory SQLite database. At startup it is loaded from
the ``.search.db`` snapshot when the snapshot still agrees with the store, and
it is written back only when something changed. It can always be rebuilt from
the store, so losing the snapshot never loses knowledge.

Ranking blends two signals:
- lexical: FTS5 ``bm25`` when the SQLite build has FTS5, otherwise a
  scan over pre-tokenized text scored in SQL
- semantic: cosine similarity against cached embeddings, only when an
  embedding provider is configured and answers

The scan tokenizes and stems the same way as the FTS5 ``porter unicode61``
tokenizer, so both paths match the same entries.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import sqlite3
import unicodedata
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

import snowballstemmer

from repomemory.errors import StorageFailure
from repomemory.memory.categories import Category
from repomemory.memory.embeddings import cosine_similarity, pack_vector, unpack_vector

if TYPE_CHECKING:
    from repomemory.memory.embeddings import EmbeddingProvider
    from repomemory.memory.store import ContextEntry, ContextStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "3"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    category TEXT NOT NULL,
    filename TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    relative_path TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    embedding BLOB,
    title_terms TEXT NOT NULL DEFAULT '',
    content_terms TEXT NOT NULL DEFAULT '',
    category_terms TEXT NOT NULL DEFAULT '',
    UNIQUE(category, filename)
);
"""

_FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
    title,
    content,
    category,
    content=documents,
    content_rowid=id,
    tokenize='porter unicode61'
);
CREATE TRIGGER IF NOT EXISTS documents_ai AFTER INSERT ON documents BEGIN
    INSERT INTO documents_fts(rowid, title, content, category)
    VALUES (new.id, new.title, new.content, new.category);
END;
CREATE TRIGGER IF NOT EXISTS documents_ad AFTER DELETE ON documents BEGIN
    INSERT INTO documents_fts(documents_fts, rowid, title, content, category)
    VALUES ('delete', old.id, old.title, old.content, old.category);
END;
CREATE TRIGGER IF NOT EXISTS documents_au AFTER UPDATE ON documents BEGIN
    INSERT INTO documents_fts(documents_fts, rowid, title, content, category)
    VALUES ('delete', old.id, old.title, old.content, old.category);
    INSERT INTO documents_fts(rowid, title, content, category)
    VALUES (new.id, new.title, new.content, new.category);
END;
"""

# ON CONFLICT ... DO UPDATE fires the update trigger; INSERT OR REPLACE would
# delete the old row without telling the FTS table.
_UPSERT = """
INSERT INTO documents
    (category, filename, title, content, relative_path, updated_at, content_hash, embedding,
     title_terms, content_terms, category_terms)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(category, filename) DO UPDATE SET
    title = excluded.title,
    content = excluded.content,
    relative_path = excluded.relative_path,
    updated_at = excluded.updated_at,
    content_hash = excluded.content_hash,
    embedding = excluded.embedding,
    title_terms = excluded.title_terms,
    content_terms = excluded.content_terms,
    category_terms = excluded.category_terms
"""

# unicode61 token characters: letters and numbers; everything else separates.
_TOKEN_RE = re.compile(r"[^\W_]+")
_STEMMER = snowballstemmer.stemmer("porter")
_STEM_MIN, _STEM_MAX = 3, 64  # FTS5's porter leaves other lengths alone


class IndexState(Enum):
    UNBUILT = "unbuilt"
    BUILT = "built"
    DIRTY = "dirty"


@dataclass
class SearchResult:
    category: str
    filename: str
    title: str
    snippet: str
    score: float
    relative_path: str
    sources: int = 1  # how many ranking signals matched this entry

    @property
    def key(self) -> str:
        return f"{self.category}/{self.filename}"


def query_terms(query: str) -> list[str]:
    """Split a free-text query into quote-free search terms."""
    cleaned = query.replace('"', " ").replace("'", " ")
    return [t for t in cleaned.split() if t]


def tokenize(text: str) -> list[str]:
    """Case-fold, strip diacritics, split on non-alphanumerics, porter-stem."""
    folded = unicodedata.normalize("NFD", text)
    folded = "".join(ch for ch in folded if not unicodedata.combining(ch)).lower()
    tokens = []
    for token in _TOKEN_RE.findall(folded):
        if _STEM_MIN <= len(token) <= _STEM_MAX and token.isascii():
            token = _STEMMER.stemWord(token)
        tokens.append(token)
    return tokens


def token_text(text: str) -> str:
    """Space-delimited tokens, padded so ``instr`` matches whole tokens only."""
    return f" {' '.join(tokenize(text))} "


def content_hash(title: str, content: str) -> str:
    return hashlib.sha256(f"{title}\n\n{content}".encode("utf-8")).hexdigest()


def extract_snippet(content: str, query: str, max_length: int = 800) -> str:
    """Return the region around the line matching most query terms."""
    terms = [t.lower() for t in query_terms(query)]
    lines = content.split("\n")

    best_index, best_count = -1, 0
    for i, line in enumerate(lines):
        lower = line.lower()
        count = sum(1 for t in terms if t in lower)
        if count > best_count:
            best_index, best_count = i, count

    if best_index < 0:
        return content[:max_length]

    start = max(0, best_index - 2)
    end = min(len(lines), best_index + 5)
    return "\n".join(lines[start:end])[:max_length]


def _normalize(results: list[SearchResult]) -> dict[str, float]:
    """Scale scores by the list maximum. Ratios between items are kept."""
    if not results:
        return {}
    top = max(r.score for r in results)
    if top <= 0:
        return {r.key: 0.0 for r in results}
    return {r.key: max(0.0, r.score) / top for r in results}


class SearchIndex:
    """Hybrid lexical + semantic index over a ContextStore."""

    def __init__(
        self,
        store: ContextStore,
        embedder: EmbeddingProvider | None = None,
        alpha: float = 0.5,
        use_fts: bool = True,
    ) -> None:
        if not 0.0 <= alpha <= 1.0:
            raise ValueError(f"hybrid alpha must be within [0, 1], got {alpha}")
        self.store = store
        self.embedder = embedder
        self.alpha = alpha
        self._db = self._connect()
        self._fts = use_fts and self._probe_fts(self._db)
        self._create_schema(self._db)
        self._state = IndexState.UNBUILT

    # ── Connection & schema ───────────────────────────────────

    @staticmethod
    def _connect() -> sqlite3.Connection:
        # Snapshot I/O runs in a worker thread; calls never overlap.
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _probe_fts(conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("CREATE VIRTUAL TABLE temp.fts_probe USING fts5(x)")
            conn.execute("DROP TABLE temp.fts_probe")
            return True
        except sqlite3.OperationalError as e:
            logger.info("FTS5 unavailable (%s); using substring search", e)
            return False

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(_SCHEMA)
        if self._fts:
            conn.executescript(_FTS_SCHEMA)
        conn.executemany(
            "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
            [("schema_version", SCHEMA_VERSION), ("fts", "1" if self._fts else "0")],
        )
        conn.commit()

    @property
    def state(self) -> IndexState:
        return self._state

    @property
    def fts_enabled(self) -> bool:
        return self._fts

    @property
    def record_count(self) -> int:
        return self._db.execute("SELECT COUNT(*) FROM documents").fetchone()[0]

    def _mark_dirty(self) -> None:
        if self._state is not IndexState.UNBUILT:
            self._state = IndexState.DIRTY

    # ── Snapshot persistence ──────────────────────────────────

    async def open(self) -> None:
        """Load the on-disk snapshot, rebuilding when it is missing or stale."""
        entries = await asyncio.to_thread(self.store.list_entries)
        loaded = await asyncio.to_thread(self._load_snapshot)
        if loaded and self.record_count == len(entries):
            self._state = IndexState.BUILT
            logger.info("Loaded search index snapshot (%d records)", len(entries))
            await self._backfill_embeddings()
            return
        if loaded:
            logger.info(
                "Snapshot has %d records but store has %d; rebuilding",
                self.record_count,
                len(entries),
            )
        await self.rebuild()

    def _load_snapshot(self) -> bool:
        path = self.store.snapshot_path
        if not path.is_file():
            return False
        try:
            disk = sqlite3.connect(str(path))
            try:
                conn = self._connect()
                disk.backup(conn)
            finally:
                disk.close()
            meta = dict(conn.execute("SELECT key, value FROM meta").fetchall())
        except sqlite3.DatabaseError as e:
            logger.warning("Ignoring unreadable index snapshot %s: %s", path, e)
            return False

        if meta.get("schema_version") != SCHEMA_VERSION or meta.get("fts") != ("1" if self._fts else "0"):
            logger.info("Index snapshot was built with a different layout; discarding")
            conn.close()
            return False

        self._db.close()
        self._db = conn
        return True

    def _write_snapshot(self) -> None:
        path = self.store.snapshot_path
        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.unlink(missing_ok=True)
            disk = sqlite3.connect(str(tmp))
            try:
                self._db.backup(disk)
            finally:
                disk.close()
            os.replace(tmp, path)
        except (OSError, sqlite3.Error) as e:
            raise StorageFailure("write index snapshot", path) from e

    async def flush(self) -> None:
        """Persist the snapshot if it lags the in-memory index."""
        if self._state is not IndexState.DIRTY:
            return
        await asyncio.to_thread(self._write_snapshot)
        self._state = IndexState.BUILT
        logger.debug("Flushed search index snapshot (%d records)", self.record_count)

    async def close(self) -> None:
        try:
            await self.flush()
        finally:
            self._db.close()

    # ── Building ──────────────────────────────────────────────

    async def _embed(self, text: str) -> list[float] | None:
        if self.embedder is None:
            return None
        try:
            return await self.embedder.embed(text)
        except Exception as e:
            logger.warning("Embedding provider %s failed: %s", self.embedder.name, e)
            return None

    async def _embedding_blob(self, entry: ContextEntry, cached: bytes | None) -> bytes | None:
        if cached is not None or self.embedder is None:
            return cached
        vector = await self._embed(f"{entry.title}\n\n{entry.content}")
        return pack_vector(vector) if vector else None

    def _row(self, entry: ContextEntry, digest: str, blob: bytes | None) -> tuple:
        return (
            entry.category,
            entry.filename,
            entry.title,
            entry.content,
            entry.relative_path,
            entry.last_modified.isoformat(),
            digest,
            blob,
            token_text(entry.title),
            token_text(entry.content),
            token_text(entry.category),
        )

    async def rebuild(self) -> None:
        """Drop every record and repopulate from the store's current listing.

        Embeddings of unchanged text are carried over instead of recomputed.
        """
        entries = await asyncio.to_thread(self.store.list_entries)
        cached = {
            row["content_hash"]: row["embedding"]
            for row in self._db.execute(
                "SELECT content_hash, embedding FROM documents WHERE embedding IS NOT NULL"
            )
        }

        rows = []
        for entry in entries:
            digest = content_hash(entry.title, entry.content)
            blob = await self._embedding_blob(entry, cached.get(digest))
            rows.append(self._row(entry, digest, blob))

        with self._db:
            self._db.execute("DELETE FROM documents")
            self._db.executemany(_UPSERT, rows)

        self._state = IndexState.DIRTY
        await self.flush()
        logger.info("Rebuilt search index (%d records)", len(rows))

    async def _backfill_embeddings(self) -> None:
        """Embed records the snapshot stored without a vector."""
        if self.embedder is None:
            return
        rows = self._db.execute(
            "SELECT id, title, content FROM documents WHERE embedding IS NULL ORDER BY id"
        ).fetchall()
        filled = 0
        for row in rows:
            vector = await self._embed(f"{row['title']}\n\n{row['content']}")
            if not vector:
                break  # provider unavailable; retried on the next open
            with self._db:
                self._db.execute(
                    "UPDATE documents SET embedding = ? WHERE id = ?", (pack_vector(vector), row["id"])
                )
            filled += 1
        if filled:
            self._mark_dirty()
            logger.info("Embedded %d of %d snapshot records missing vectors", filled, len(rows))

    async def index_entry(self, entry: ContextEntry) -> None:
        """Upsert a single record without touching the others."""
        digest = content_hash(entry.title, entry.content)
        existing = self._db.execute(
            "SELECT content_hash, embedding FROM documents WHERE category = ? AND filename = ?",
            (entry.category, entry.filename),
        ).fetchone()
        cached = existing["embedding"] if existing and existing["content_hash"] == digest else None
        blob = await self._embedding_blob(entry, cached)

        with self._db:
            self._db.execute(_UPSERT, self._row(entry, digest, blob))
        self._mark_dirty()
        logger.debug("Indexed %s", entry.key)

    async def remove_entry(self, category: Category | str, filename: str) -> None:
        cat = category.value if isinstance(category, Category) else category
        with self._db:
            self._db.execute(
                "DELETE FROM documents WHERE category = ? AND filename = ?", (cat, filename)
            )
        self._mark_dirty()
        logger.debug("Removed %s/%s from index", cat, filename)

    # ── Querying ──────────────────────────────────────────────

    async def search(
        self,
        query: str,
        category: Category | str | None = None,
        limit: int = 10,
    ) -> list[SearchResult]:
        terms = query_terms(query)
        if not terms:
            return []
        cat = Category.parse(category).value if category is not None else None

        if self._state is IndexState.UNBUILT:
            await self.rebuild()

        pool = limit * 3
        lexical = self.lexical_search(query, cat, pool)
        semantic = await self._semantic_search(query, cat, pool)
        if not semantic:
            return lexical[:limit]
        return self.hybrid_merge(lexical, semantic, query, limit)

    def lexical_search(self, query: str, category: str | None, limit: int) -> list[SearchResult]:
        terms = query_terms(query)
        if not terms:
            return []
        rows = None
        if self._fts:
            try:
                rows = self._fts_rows(terms, category, limit)
            except sqlite3.OperationalError as e:
                logger.warning("Full-text query failed for %r, scanning instead: %s", query, e)
        if rows is None:
            rows = self._substring_rows(terms, category, limit)
        return [self._result(row, query, float(row["score"])) for row in rows]

    def _fts_rows(self, terms: list[str], category: str | None, limit: int) -> list[sqlite3.Row]:
        match = " OR ".join(f'"{t}"' for t in terms)
        sql = """
            SELECT d.category, d.filename, d.title, d.content, d.relative_path,
                   -documents_fts.rank AS score
            FROM documents_fts
            JOIN documents d ON d.id = documents_fts.rowid
            WHERE documents_fts MATCH ? AND (? IS NULL OR d.category = ?)
            ORDER BY documents_fts.rank, d.category, d.filename
            LIMIT ?
        """
        return self._db.execute(sql, (match, category, category, limit)).fetchall()

    def _substring_rows(self, terms: list[str], category: str | None, limit: int) -> list[sqlite3.Row]:
        # Each term becomes a padded token phrase, so " token " matches the
        # whole stemmed token and never a longer word containing it.
        phrases = [token_text(t) for t in terms]
        phrases = [p for p in phrases if p.strip()]
        if not phrases:
            return []
        # The score is a computed column, so it is filtered in the outer
        # query rather than in the WHERE clause that produces it.
        term_sql = (
            "(CASE WHEN instr(title_terms, ?) > 0 THEN 3 ELSE 0 END"
            " + (length(content_terms) - length(replace(content_terms, ?, ''))) / length(?)"
            " + CASE WHEN instr(category_terms, ?) > 0 THEN 1 ELSE 0 END)"
        )
        score_sql = " + ".join([term_sql] * len(phrases))
        params: list = []
        for phrase in phrases:
            params.extend([phrase, phrase, phrase, phrase])
        sql = f"""
            SELECT * FROM (
                SELECT category, filename, title, content, relative_path,
                       ({score_sql}) AS score
                FROM documents
                WHERE (? IS NULL OR category = ?)
            )
            WHERE score > 0
            ORDER BY score DESC, category, filename
            LIMIT ?
        """
        params.extend([category, category, limit])
        return self._db.execute(sql, params).fetchall()

    async def _semantic_search(
        self, query: str, category: str | None, limit: int
    ) -> list[SearchResult] | None:
        """Cosine ranking, or None when no semantic signal is available."""
        if self.embedder is None:
            return None
        query_vector = await self._embed(query)
        if not query_vector:
            return None

        rows = self._db.execute(
            """
            SELECT category, filename, title, content, relative_path, embedding
            FROM documents
            WHERE embedding IS NOT NULL AND (? IS NULL OR category = ?)
            """,
            (category, category),
        ).fetchall()

        scored = []
        for row in rows:
            similarity = cosine_similarity(query_vector, unpack_vector(row["embedding"]))
            if similarity > 0:
                scored.append((similarity, row))
        scored.sort(key=lambda item: (-item[0], item[1]["category"], item[1]["filename"]))
        return [self._result(row, query, sim) for sim, row in scored[:limit]]

    def _result(self, row: sqlite3.Row, query: str, score: float) -> SearchResult:
        return SearchResult(
            category=row["category"],
            filename=row["filename"],
            title=row["title"],
            snippet=extract_snippet(row["content"], query),
            score=score,
            relative_path=row["relative_path"],
        )

    def hybrid_merge(
        self,
        lexical: list[SearchResult],
        semantic: list[SearchResult],
        query: str,
        limit: int,
    ) -> list[SearchResult]:
        """Blend both rankings into one list.

        A result found by only one signal keeps that signal's weighted score
        and is not lifted to parity with results found by both.
        """
        lex_scores = _normalize(lexical)
        sem_scores = _normalize(semantic)

        merged: dict[str, SearchResult] = {}
        for result in lexical:
            merged.setdefault(result.key, replace(result, sources=1))
        for result in semantic:
            if result.key in merged:
                merged[result.key].sources = 2
            else:
                merged[result.key] = replace(result, sources=1)

        for key, result in merged.items():
            score = 0.0
            if key in lex_scores:
                score += self.alpha * lex_scores[key]
            if key in sem_scores:
                score += (1 - self.alpha) * sem_scores[key]
            result.score = score

        ranked = [r for r in merged.values() if r.score > 0]
        ranked.sort(key=lambda r: (-r.score, -r.sources, r.category, r.filename))
        logger.debug(
            "Merged %d lexical + %d semantic results for %r", len(lexical), len(semantic), query
        )
        return ranked[:limit]
