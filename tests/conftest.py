"""Shared fixtures."""

from __future__ import annotations

import re

import pytest
from pathlib import Path

from repomemory.config import RepoMemoryConfig, SearchConfig

_ENV_KEYS = [
    "OPENAI_API_KEY",
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
    "GOOGLE_GENERATIVE_AI_API_KEY",
    "REPOMEMORY_HYBRID_ALPHA",
    "REPOMEMORY_FTS",
    "REPOMEMORY_EMBEDDING_PROVIDER",
    "REPOMEMORY_EMBEDDING_MODEL",
    "REPOMEMORY_PURGE_THRESHOLD",
    "REPOMEMORY_SESSION_MIN_CALLS",
    "REPOMEMORY_CONTEXT_DIR",
    "REPOMEMORY_LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path: Path):
    """Keep host API keys and user config out of every test."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("repomemory.config._USER_CONFIG", tmp_path / "no-user-config.toml")


class FakeEmbedder:
    """Bag-of-words vectors over a fixed vocabulary. Deterministic, offline."""

    VOCAB = ["auth", "jwt", "token", "login", "database", "postgres", "drizzle", "cache", "redis", "bug"]

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    @property
    def name(self) -> str:
        return "fake"

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.fail:
            raise RuntimeError("provider down")
        words = re.findall(r"[a-z]+", text.lower())
        return [float(words.count(v)) for v in self.VOCAB]


@pytest.fixture
def config(tmp_path: Path) -> RepoMemoryConfig:
    return RepoMemoryConfig(repo_root=tmp_path / "repo", search=SearchConfig(fts=True))
