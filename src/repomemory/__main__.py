"""Entry point: python -m repomemory [serve|search|rebuild|stats|init] [--dir PATH]

- No args / "serve": Context server on stdio (what agent hosts launch)
- "search QUERY":    One-off search from the shell
- "rebuild":         Rebuild the search index from the markdown files
- "stats":           Entry counts and sizes per category
- "init":            Scaffold .context/ in the repository
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

from repomemory.config import RepoMemoryConfig, load_config

USAGE = """\
Usage: python -m repomemory [serve|search QUERY|rebuild|stats|init] [--dir PATH]
  serve         Context server over stdio (default)
  search QUERY  Search the knowledge base
  rebuild       Rebuild the search index
  stats         Show knowledge base statistics
  init          Create .context/ with its category directories
  --dir PATH    Repository root (default: current directory)"""


def _setup_logging(level: str) -> None:
    # stdout carries the protocol; logs go to stderr.
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _parse_args(argv: list[str]) -> tuple[str, list[str], Path | None]:
    repo_root = None
    rest: list[str] = []
    i = 0
    while i < len(argv):
        if argv[i] == "--dir":
            if i + 1 >= len(argv):
                raise SystemExit("--dir requires a path")
            repo_root = Path(argv[i + 1]).expanduser().resolve()
            i += 2
            continue
        rest.append(argv[i])
        i += 1
    cmd = rest[0] if rest else "serve"
    return cmd, rest[1:], repo_root


def _format_age(seconds: float) -> str:
    days = seconds / 86400
    if days >= 1:
        return f"{days:.0f}d ago"
    return f"{seconds / 3600:.0f}h ago"


def _run_serve(config: RepoMemoryConfig) -> None:
    from repomemory.server import ContextServer

    server = ContextServer(config)
    asyncio.run(server.run())


async def _search(config: RepoMemoryConfig, query: str) -> None:
    from repomemory.core import RepoMemory

    memory = RepoMemory(config)
    await memory.start()
    try:
        outcome = await memory.search(query, limit=10)
    finally:
        await memory.close()

    if not outcome.results:
        print(f'No results for "{query}"')
        return
    if outcome.routed:
        suffix = " (no matches there, showing all)" if outcome.fell_back else ""
        print(f"Routed to {outcome.category.value}/{suffix}\n")
    for r in outcome.results:
        print(f"{r.score:6.2f}  {r.key}  {r.title}")


async def _rebuild(config: RepoMemoryConfig) -> None:
    from repomemory.core import RepoMemory

    memory = RepoMemory(config)
    await memory.start()
    try:
        count = await memory.rebuild()
    finally:
        await memory.close()
    print(f"Indexed {count} entries")


def _stats(config: RepoMemoryConfig) -> None:
    from repomemory.memory.store import ContextStore

    store = ContextStore(config.repo_root, config.context_dir)
    if not store.exists():
        print(f"No knowledge base at {store.path}. Run: python -m repomemory init")
        return
    stats = store.stats()
    print(f"Knowledge base: {store.path}")
    print(f"  Entries: {stats.total_files} ({stats.total_size / 1024:.1f}KB)")
    for category, count in sorted(stats.categories.items()):
        print(f"  {category + '/':<14}{count}")
    if stats.newest:
        print(f"  Newest: {stats.newest[0]} ({_format_age(stats.newest[1])})")
    if stats.oldest:
        print(f"  Oldest: {stats.oldest[0]} ({_format_age(stats.oldest[1])})")


def _init(config: RepoMemoryConfig) -> None:
    from repomemory.memory.store import ContextStore

    store = ContextStore(config.repo_root, config.context_dir)
    store.scaffold()
    if not store.read_index():
        store.write_index(
            f"# {config.repo_root.name}\n\n"
            "Describe what this project is, how it is laid out and how to run it.\n"
        )
    print(f"Initialized {store.path}")


def main() -> None:
    cmd, args, repo_root = _parse_args(sys.argv[1:])
    config = load_config(repo_root)
    _setup_logging(config.log_level)

    if cmd == "serve":
        _run_serve(config)
    elif cmd == "search" and args:
        asyncio.run(_search(config, " ".join(args)))
    elif cmd == "rebuild":
        asyncio.run(_rebuild(config))
    elif cmd == "stats":
        _stats(config)
    elif cmd == "init":
        _init(config)
    else:
        print(USAGE)
        sys.exit(1)


if __name__ == "__main__":
    main()
