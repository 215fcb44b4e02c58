"""Context tools exposed to the agent host.

Each tool returns plain text. Negative outcomes say what was tried and what
to try next.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from repomemory.memory.categories import DESCRIPTIONS, Category
from repomemory.memory.session import get_relative_time
from repomemory.memory.store import sanitize_filename

if TYPE_CHECKING:
    from repomemory.core import Orientation, RepoMemory, WriteResult
    from repomemory.memory.session import SessionTracker
    from repomemory.memory.store import ContextEntry

SNIPPET_LENGTHS = {"compact": 150, "full": 800}
DEFAULT_SEARCH_LIMIT = 5

_CATEGORY_ENUM = Category.values()
_CATEGORY_HELP = "\n".join(f"- {c.value}: {DESCRIPTIONS[c]}" for c in Category)

TOOL_DEFINITIONS = [
    {
        "name": "context_search",
        "description": (
            "Search the repository's persistent knowledge base for facts, decisions, "
            "regressions, preferences and session notes. Use at the start of a task or "
            "when you need to understand why something is the way it is."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Natural language query, e.g. 'auth flow' or 'why we chose Drizzle'",
                },
                "category": {
                    "type": "string",
                    "enum": _CATEGORY_ENUM,
                    "description": "Optional category filter. Omit to let the query pick one.",
                },
                "limit": {"type": "number", "description": "Max results (default: 5)"},
                "detail": {
                    "type": "string",
                    "enum": list(SNIPPET_LENGTHS),
                    "description": "Snippet size: compact (~150 chars, default) or full (~800)",
                },
            },
            "required": ["query"],
        },
    },
    {
        "name": "context_write",
        "description": (
            "Record knowledge that would help a future session: discoveries, decisions, "
            "bug patterns, preferences. Overwrites unless append is true."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "category": {
                    "type": "string",
                    "enum": _CATEGORY_ENUM,
                    "description": f"Category for the knowledge:\n{_CATEGORY_HELP}",
                },
                "filename": {
                    "type": "string",
                    "description": "Descriptive kebab-case name, e.g. 'auth-flow'",
                },
                "content": {"type": "string", "description": "Markdown content"},
                "append": {
                    "type": "boolean",
                    "description": "Append to the existing entry instead of overwriting",
                },
                "supersedes": {
                    "type": "string",
                    "description": "Entry this one replaces ('name' or 'category/name'); it is deleted",
                },
            },
            "required": ["category", "filename", "content"],
        },
    },
    {
        "name": "context_delete",
        "description": "Delete an outdated or wrong knowledge entry.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "category": {"type": "string", "enum": _CATEGORY_ENUM},
                "filename": {"type": "string"},
            },
            "required": ["category", "filename"],
        },
    },
    {
        "name": "context_list",
        "description": "List knowledge entries with title, size and age, optionally for one category.",
        "inputSchema": {
            "type": "object",
            "properties": {"category": {"type": "string", "enum": _CATEGORY_ENUM}},
        },
    },
    {
        "name": "context_read",
        "description": "Read the full content of one entry found via search or list.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "category": {"type": "string", "enum": _CATEGORY_ENUM},
                "filename": {"type": "string", "description": "With or without .md"},
            },
            "required": ["category", "filename"],
        },
    },
    {
        "name": "context_auto_orient",
        "description": (
            "Get oriented at the start of a session: project overview, recent sessions "
            "and entries changed in the last week."
        ),
        "inputSchema": {"type": "object", "properties": {}},
    },
]


def _truncate(text: str, length: int) -> str:
    text = text.strip()
    return text if len(text) <= length else text[:length].rstrip() + "..."


def format_entry_list(entries: list[ContextEntry]) -> str:
    grouped: dict[str, list[ContextEntry]] = {}
    for entry in entries:
        grouped.setdefault(entry.category, []).append(entry)

    text = "# Repository Context\n\n"
    for category, items in grouped.items():
        text += f"## {category}/\n"
        for entry in items:
            size_kb = entry.size_bytes / 1024
            age = get_relative_time(entry.last_modified)
            text += f"- **{entry.filename}** — {entry.title} ({size_kb:.1f}KB, {age})\n"
        text += "\n"
    return text


def format_write_result(result: WriteResult) -> str:
    lines = [
        f"✓ Written to {result.relative_path}{' (appended)' if result.appended else ''}. "
        "This knowledge will persist across sessions."
    ]
    if result.superseded:
        if result.superseded_found:
            lines.append(f"Superseded {result.superseded} (deleted).")
        else:
            lines.append(
                f"Supersede target {result.superseded} not found; nothing deleted. "
                "Check the name with context_list."
            )
    if result.duplicates:
        lines.append("")
        lines.append(
            "⚠️ Possible duplicates in the same category. Merge them, delete the stale one, "
            "or rewrite with supersedes:"
        )
        for dup in result.duplicates:
            lines.append(f"- {dup.key} ({dup.title})")
    return "\n".join(lines)


def format_orientation(orientation: Orientation) -> str:
    parts = ["# Project Overview\n"]
    if orientation.index.strip():
        parts.append(orientation.index.strip() + "\n")
    else:
        parts.append("_No index.md yet. Write a short project overview to .context/index.md._\n")

    if orientation.recent_sessions:
        parts.append("## Recent Sessions\n")
        for entry in orientation.recent_sessions:
            parts.append(f"### {entry.filename}\n{_truncate(entry.content, 800)}\n")

    if orientation.recent_entries:
        parts.append("## Updated in the Last 7 Days\n")
        for entry in orientation.recent_entries:
            parts.append(f"- {entry.key} — {entry.title} ({get_relative_time(entry.last_modified)})")
        parts.append("")

    if not orientation.has_facts:
        parts.append(
            "## Getting Started\n"
            "No facts recorded yet. As you learn how this codebase works, record it with "
            "context_write(category=\"facts\", ...). Record decisions and regressions the same "
            "way so the next session starts with them."
        )
    return "\n".join(parts).rstrip() + "\n"


ContextTool = Callable[..., Awaitable[str]]


def get_context_tools(memory: RepoMemory, session: SessionTracker) -> dict[str, ContextTool]:
    """Return tool_name -> coroutine function for the context tools.

    Tool activity is recorded on *session*.
    """

    async def context_search(
        query: str,
        category: str | None = None,
        limit: int = DEFAULT_SEARCH_LIMIT,
        detail: str = "compact",
    ) -> str:
        """Search the knowledge base."""
        session.record_search(query)
        if not query.strip():
            return "Empty query. Describe what you are looking for, e.g. 'auth flow'."

        outcome = await memory.search(query, category, int(limit))
        scope = f" in {category}" if category else ""
        if not outcome.results:
            tried = f" (tried {outcome.category.value}, then all categories)" if outcome.fell_back else scope
            return (
                f'No results found for "{query}"{tried}. '
                "Try different keywords or browse with context_list."
            )

        length = SNIPPET_LENGTHS.get(detail, SNIPPET_LENGTHS["compact"])
        blocks = [
            f"## {r.category}/{r.filename} (relevance: {r.score:.2f})\n"
            f"**{r.title}**\n\n{_truncate(r.snippet, length)}\n"
            for r in outcome.results
        ]
        text = "\n---\n\n".join(blocks)
        if outcome.fell_back:
            text = f"_No matches in {outcome.category.value}/, showing all categories._\n\n" + text
        return text

    async def context_write(
        category: str,
        filename: str,
        content: str,
        append: bool = False,
        supersedes: str | None = None,
    ) -> str:
        """Write or append a knowledge entry."""
        result = await memory.write(category, filename, content, append=bool(append), supersedes=supersedes)
        session.record_write(result.key)
        return format_write_result(result)

    async def context_delete(category: str, filename: str) -> str:
        """Delete a knowledge entry."""
        key = f"{Category.parse(category).value}/{sanitize_filename(filename)}"
        if await memory.delete(category, filename):
            session.record_delete(key)
            return f"Deleted {key}. It no longer appears in search."
        return f"Not found: {key}. Nothing was deleted; use context_list to see available entries."

    async def context_list(category: str | None = None) -> str:
        """List knowledge entries."""
        entries = memory.list_entries(category)
        if not entries:
            scope = f" in {category}" if category else ""
            return (
                f"No entries found{scope}. Use context_write to add entries, "
                "or list without a category to see everything."
            )
        return format_entry_list(entries)

    async def context_read(category: str, filename: str) -> str:
        """Read one entry in full."""
        key = f"{Category.parse(category).value}/{sanitize_filename(filename)}"
        content = memory.read(category, filename)
        if content is None:
            return f"File not found: {key}. Use context_search or context_list to find the right name."
        session.record_read(key)
        return f"# {key}\n\n{content}"

    async def context_auto_orient() -> str:
        """Summarize the knowledge base for a new session."""
        return format_orientation(memory.orient())

    return {
        "context_search": context_search,
        "context_write": context_write,
        "context_delete": context_delete,
        "context_list": context_list,
        "context_read": context_read,
        "context_auto_orient": context_auto_orient,
    }
