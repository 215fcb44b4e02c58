"""Configuration loading from environment variables and .repomemory.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_CONFIG_FILENAME = ".repomemory.toml"
_USER_CONFIG = Path.home() / ".repomemory" / "config.toml"


@dataclass
class SearchConfig:
    """Ranking configuration."""

    hybrid_alpha: float = 0.5  # 1.0 = keyword only, 0.0 = semantic only
    fts: bool = True


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration. No provider means auto-detect."""

    provider: str | None = None
    model: str | None = None
    api_key: str | None = None
    base_url: str | None = None


@dataclass
class CurationConfig:
    """Thresholds for the curation heuristics."""

    purge_threshold: float = 0.6  # fraction of the top score
    session_min_tool_calls: int = 2


@dataclass
class RepoMemoryConfig:
    """Top-level configuration."""

    search: SearchConfig = field(default_factory=SearchConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    curation: CurationConfig = field(default_factory=CurationConfig)
    repo_root: Path = field(default_factory=Path.cwd)
    context_dir: str = ".context"
    log_level: str = "INFO"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() not in ("0", "false", "no", "off", "")


def load_config(repo_root: Path | None = None, config_path: Path | None = None) -> RepoMemoryConfig:
    """Load configuration from environment variables and an optional TOML file.

    Priority: environment variables > TOML file > defaults. Without an
    explicit path, ``<repo_root>/.repomemory.toml`` and then
    ``~/.repomemory/config.toml`` are tried.
    """
    root = Path(repo_root) if repo_root else Path.cwd()

    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        for candidate in [root / _CONFIG_FILENAME, _USER_CONFIG]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    search_data = file_data.get("search", {})
    embedding_data = file_data.get("embedding", {})
    curation_data = file_data.get("curation", {})

    config = RepoMemoryConfig(
        search=SearchConfig(
            hybrid_alpha=float(
                os.getenv("REPOMEMORY_HYBRID_ALPHA", search_data.get("hybrid_alpha", 0.5))
            ),
            fts=_env_bool("REPOMEMORY_FTS", bool(search_data.get("fts", True))),
        ),
        embedding=EmbeddingConfig(
            provider=os.getenv("REPOMEMORY_EMBEDDING_PROVIDER", embedding_data.get("provider")),
            model=os.getenv("REPOMEMORY_EMBEDDING_MODEL", embedding_data.get("model")),
            api_key=embedding_data.get("api_key"),
            base_url=embedding_data.get("base_url") or None,
        ),
        curation=CurationConfig(
            purge_threshold=float(
                os.getenv(
                    "REPOMEMORY_PURGE_THRESHOLD", curation_data.get("purge_threshold", 0.6)
                )
            ),
            session_min_tool_calls=int(
                os.getenv(
                    "REPOMEMORY_SESSION_MIN_CALLS",
                    curation_data.get("session_min_tool_calls", 2),
                )
            ),
        ),
        repo_root=root,
        context_dir=os.getenv("REPOMEMORY_CONTEXT_DIR", file_data.get("context_dir", ".context")),
        log_level=os.getenv("REPOMEMORY_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
