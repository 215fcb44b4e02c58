"""Repository knowledge base — markdown entries plus a derived search index.

Layout:
    <repo>/.context/
    ├── index.md                       # Project overview, read at session start
    ├── facts/                         # How things work
    ├── decisions/                     # Why things are the way they are
    ├── regressions/                   # Bugs, their causes and fixes
    ├── preferences/                   # Style and convention choices
    ├── sessions/
    │   └── 2026-02-18.md             # Session records (append-only)
    ├── changelog/                     # Notable changes over time
    ├── .gitignore                     # Keeps the snapshot out of version control
    └── .search.db                     # Search index snapshot (derived, rebuildable)

The markdown files are the source of truth. The search index can always be
rebuilt from them.
"""
