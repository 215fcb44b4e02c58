"""Session tracking and the end-of-session knowledge record."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class ToolCall:
    tool: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class SessionTracker:
    """Activity of one host session, owned by whoever serves the host."""

    start_time: datetime = field(default_factory=datetime.now)
    tool_calls: list[ToolCall] = field(default_factory=list)
    search_queries: list[str] = field(default_factory=list)
    entries_read: list[str] = field(default_factory=list)
    entries_written: list[str] = field(default_factory=list)
    entries_deleted: list[str] = field(default_factory=list)
    write_call_made: bool = False

    def record_tool(self, tool: str) -> None:
        self.tool_calls.append(ToolCall(tool))

    def record_search(self, query: str) -> None:
        if query not in self.search_queries:
            self.search_queries.append(query)

    def record_read(self, key: str) -> None:
        self.entries_read.append(key)

    def record_write(self, key: str) -> None:
        self.entries_written.append(key)
        self.write_call_made = True

    def record_delete(self, key: str) -> None:
        self.entries_deleted.append(key)

    def should_capture(self, min_tool_calls: int = 2) -> bool:
        """A session is worth recording if it wrote something or did real work."""
        return self.write_call_made or len(self.tool_calls) > min_tool_calls

    def elapsed_seconds(self, now: datetime | None = None) -> float:
        return ((now or datetime.now()) - self.start_time).total_seconds()


def _unique(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def build_session_summary(session: SessionTracker, duration_seconds: float) -> str:
    """Render the markdown block appended to the day's session file."""
    minutes = max(1, round(duration_seconds / 60))
    lines = [f"## Session {session.start_time.strftime('%H:%M')} ({minutes}min)", ""]

    queries = _unique(session.search_queries)
    if queries:
        lines.append(f"- **Searched:** {', '.join(queries)}")
    if session.entries_read:
        lines.append(f"- **Read:** {', '.join(_unique(session.entries_read))}")
    if session.entries_written:
        lines.append(f"- **Written:** {', '.join(_unique(session.entries_written))}")
    if session.entries_deleted:
        lines.append(f"- **Deleted:** {', '.join(_unique(session.entries_deleted))}")

    lines.append(f"- **Total tool calls:** {len(session.tool_calls)}")
    return "\n".join(lines) + "\n"


def session_filename(when: datetime | None = None) -> str:
    return (when or datetime.now()).strftime("%Y-%m-%d")


def get_relative_time(when: datetime, now: datetime | None = None) -> str:
    seconds = int(((now or datetime.now()) - when).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    if seconds < 2592000:
        return f"{seconds // 86400}d ago"
    return f"{seconds // 2592000}mo ago"
