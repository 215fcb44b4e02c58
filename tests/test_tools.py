"""Tests for the context tools and their text rendering."""

from __future__ import annotations

import pytest
import pytest_asyncio

from repomemory.config import RepoMemoryConfig
from repomemory.core import RepoMemory
from repomemory.memory.session import SessionTracker
from repomemory.tools.context_tools import TOOL_DEFINITIONS, get_context_tools


@pytest_asyncio.fixture
async def memory(config: RepoMemoryConfig):
    m = RepoMemory(config)
    await m.start()
    yield m
    await m.close()


@pytest.fixture
def session() -> SessionTracker:
    return SessionTracker()


@pytest.fixture
def tools(memory: RepoMemory, session: SessionTracker):
    return get_context_tools(memory, session)


@pytest.mark.asyncio
async def test_definitions_match_tools(memory: RepoMemory, session: SessionTracker):
    names = {t["name"] for t in TOOL_DEFINITIONS}
    assert names == set(get_context_tools(memory, session))
    write = next(t for t in TOOL_DEFINITIONS if t["name"] == "context_write")
    assert "decisions" in write["inputSchema"]["properties"]["category"]["enum"]


class TestSearchTool:
    @pytest.mark.asyncio
    async def test_results_rendered(self, tools, session: SessionTracker):
        await tools["context_write"]("facts", "auth-flow", "# Auth Flow\nLogin issues a JWT.")
        text = await tools["context_search"]("jwt")
        assert text.startswith("## facts/auth-flow.md (relevance: ")
        assert "**Auth Flow**" in text
        assert session.search_queries == ["jwt"]

    @pytest.mark.asyncio
    async def test_compact_truncates(self, tools):
        body = "jwt " + "x" * 600
        await tools["context_write"]("facts", "long", f"# Long\n{body}")
        compact = await tools["context_search"]("jwt")
        full = await tools["context_search"]("jwt", detail="full")
        assert "..." in compact
        assert len(full) > len(compact)

    @pytest.mark.asyncio
    async def test_no_results_suggests_next_step(self, tools):
        text = await tools["context_search"]("kubernetes")
        assert 'No results found for "kubernetes"' in text
        assert "context_list" in text

    @pytest.mark.asyncio
    async def test_fallback_is_reported(self, tools):
        await tools["context_write"]("facts", "orm", "# ORM\nDrizzle everywhere.")
        text = await tools["context_search"]("why drizzle")
        assert text.startswith("_No matches in decisions/")
        assert "facts/orm.md" in text


class TestWriteTool:
    @pytest.mark.asyncio
    async def test_confirmation(self, tools, session: SessionTracker):
        text = await tools["context_write"]("decisions", "Use Drizzle", "# Drizzle\nLighter than Prisma.")
        assert text.startswith("✓ Written to .context/decisions/use-drizzle.md")
        assert session.write_call_made
        assert session.entries_written == ["decisions/use-drizzle.md"]

    @pytest.mark.asyncio
    async def test_supersede_reported(self, tools):
        await tools["context_write"]("decisions", "old", "# Old")
        text = await tools["context_write"]("decisions", "new", "# New", supersedes="old")
        assert "Superseded decisions/old.md (deleted)." in text

    @pytest.mark.asyncio
    async def test_missing_supersede_target_reported(self, tools):
        text = await tools["context_write"]("decisions", "new", "# New", supersedes="nope")
        assert "not found; nothing deleted" in text


class TestOtherTools:
    @pytest.mark.asyncio
    async def test_read(self, tools, session: SessionTracker):
        await tools["context_write"]("facts", "queue", "# Queue\nCelery.")
        assert await tools["context_read"]("facts", "queue.md") == "# facts/queue.md\n\n# Queue\nCelery."
        assert session.entries_read == ["facts/queue.md"]

    @pytest.mark.asyncio
    async def test_read_missing(self, tools):
        text = await tools["context_read"]("facts", "ghost")
        assert text.startswith("File not found: facts/ghost.md")

    @pytest.mark.asyncio
    async def test_delete(self, tools, session: SessionTracker):
        await tools["context_write"]("facts", "queue", "# Queue")
        assert (await tools["context_delete"]("facts", "queue")).startswith("Deleted facts/queue.md")
        assert (await tools["context_delete"]("facts", "queue")).startswith("Not found: facts/queue.md")
        assert session.entries_deleted == ["facts/queue.md"]

    @pytest.mark.asyncio
    async def test_list_grouped(self, tools):
        await tools["context_write"]("facts", "a", "# Alpha")
        await tools["context_write"]("decisions", "b", "# Beta")
        text = await tools["context_list"]()
        assert "## facts/" in text and "## decisions/" in text
        assert "- **a.md** — Alpha (" in text
        assert "just now" in text

    @pytest.mark.asyncio
    async def test_list_empty_category(self, tools):
        text = await tools["context_list"]("regressions")
        assert text.startswith("No entries found in regressions")

    @pytest.mark.asyncio
    async def test_orient_empty(self, tools):
        text = await tools["context_auto_orient"]()
        assert text.startswith("# Project Overview")
        assert "## Getting Started" in text

    @pytest.mark.asyncio
    async def test_orient_with_content(self, tools, memory: RepoMemory):
        memory.store.write_index("# Billing\nHandles invoices.")
        await tools["context_write"]("facts", "stripe", "# Stripe\nWebhooks.")
        text = await tools["context_auto_orient"]()
        assert "Handles invoices." in text
        assert "facts/stripe.md — Stripe" in text
        assert "Getting Started" not in text
