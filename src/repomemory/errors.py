"""Error types shared by the store, index and host surface."""

from __future__ import annotations

from pathlib import Path


class RepoMemoryError(Exception):
    """Base class for repomemory errors."""


class InvalidCategory(RepoMemoryError, ValueError):
    """Raised when a caller names a category outside the fixed set."""

    def __init__(self, category: object, allowed: list[str]) -> None:
        self.category = category
        self.allowed = allowed
        super().__init__(f"Invalid category: {category}. Allowed: {', '.join(allowed)}")


class StorageFailure(RepoMemoryError):
    """Disk I/O failed while touching the knowledge base."""

    def __init__(self, operation: str, path: Path) -> None:
        self.operation = operation
        self.path = path
        super().__init__(f"Failed to {operation} {path}")
