"""Curation heuristics — query routing and duplicate detection.

No model call is involved; everything here is cheap pattern matching over the
query text or over search scores.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING

from repomemory.memory.categories import Category

if TYPE_CHECKING:
    from repomemory.memory.search import SearchResult

# Checked in order; the first matching category wins. Generic words such as
# "pattern" or "format" never route.
ROUTING_RULES: list[tuple[Category, re.Pattern[str]]] = [
    (
        Category.DECISIONS,
        re.compile(
            r"\b(why|decisions?|decided|chose|choose|chosen|alternatives?|trade-?offs?|rationale)\b",
            re.IGNORECASE,
        ),
    ),
    (
        Category.REGRESSIONS,
        re.compile(
            r"\b(bugs?|errors?|fix(es|ed)?|broke|broken|issues?|regressions?|crash(es|ed)?|fail(s|ed|ing|ure)?)\b",
            re.IGNORECASE,
        ),
    ),
    (
        Category.PREFERENCES,
        re.compile(
            r"\b(style|styles|prefer|preferred|preferences?|conventions?|formatting|indentation|lint|linting|linter)\b",
            re.IGNORECASE,
        ),
    ),
    (
        Category.SESSIONS,
        re.compile(
            r"\b(sessions?|yesterday|last time|worked on|recently)\b",
            re.IGNORECASE,
        ),
    ),
    (
        Category.FACTS,
        re.compile(
            r"\b(how (does|do|is)|architecture|schema|structure|endpoints?|api|works)\b",
            re.IGNORECASE,
        ),
    ),
]


def detect_query_category(text: str) -> Category | None:
    """Guess which category a free-text query is about, or None for all."""
    for category, pattern in ROUTING_RULES:
        if pattern.search(text):
            return category
    return None


def topic_from_filename(filename: str) -> str:
    """Turn ``auth-flow.md`` into ``auth flow``."""
    stem = Path(filename).stem if filename.endswith(".md") else filename
    return re.sub(r"[-_]+", " ", stem).strip()


def find_likely_duplicates(
    results: list[SearchResult],
    exclude_key: str,
    threshold: float,
) -> list[SearchResult]:
    """Flag results whose score is within ``threshold`` of the best score.

    The threshold is relative because absolute scores differ between bm25,
    substring and hybrid ranking.
    """
    if not results:
        return []
    top = max(r.score for r in results)
    if top <= 0:
        return []
    cutoff = threshold * top
    return [r for r in results if r.key != exclude_key and r.score >= cutoff]


def parse_supersedes(reference: str, default_category: Category) -> tuple[Category, str]:
    """Split ``"decisions/old-choice"`` or ``"old-choice"`` into its parts."""
    reference = reference.strip()
    if "/" in reference:
        head, _, tail = reference.partition("/")
        if head.strip().lower() in Category.values():
            return Category.parse(head), tail
    return default_category, reference
