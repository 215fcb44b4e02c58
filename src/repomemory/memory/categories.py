"""The closed set of knowledge categories."""

from __future__ import annotations

from enum import Enum

from repomemory.errors import InvalidCategory

# Label of the synthetic entry for the top-level orientation document.
ROOT_CATEGORY = "root"


class Category(str, Enum):
    FACTS = "facts"
    DECISIONS = "decisions"
    REGRESSIONS = "regressions"
    PREFERENCES = "preferences"
    SESSIONS = "sessions"
    CHANGELOG = "changelog"

    @classmethod
    def parse(cls, value: Category | str) -> Category:
        """Return the member for *value*, raising InvalidCategory otherwise."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidCategory(value, cls.values()) from None

    @classmethod
    def values(cls) -> list[str]:
        return [c.value for c in cls]


DESCRIPTIONS: dict[Category, str] = {
    Category.FACTS: "Architecture, patterns, how things work",
    Category.DECISIONS: "Why something was chosen (include alternatives considered)",
    Category.REGRESSIONS: "Bug patterns, things that broke, gotchas",
    Category.PREFERENCES: "Coding style and developer preferences",
    Category.SESSIONS: "What was worked on and discovered in a session",
    Category.CHANGELOG: "Notable changes over time",
}
