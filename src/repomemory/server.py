"""Context server — the knowledge base as a JSON-RPC 2.0 tool server.

Usage: python -m repomemory serve

Protocol: JSON-RPC 2.0 over stdio (NDJSON), one request per line.

Manages:
- Knowledge base lifecycle (scaffold, index open, snapshot flush)
- Session tracking for every tool call
- Graceful shutdown on stdin EOF or SIGTERM/SIGINT, both running the same
  shutdown path (session capture, then index close)
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Callable
from typing import Any

from repomemory.config import RepoMemoryConfig, load_config
from repomemory.core import RepoMemory
from repomemory.errors import InvalidCategory, StorageFailure
from repomemory.memory.categories import DESCRIPTIONS, ROOT_CATEGORY, Category
from repomemory.memory.session import SessionTracker
from repomemory.tools.context_tools import TOOL_DEFINITIONS, get_context_tools

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────

SERVER_NAME = "repomemory"
SERVER_VERSION = "0.1.0"
PROTOCOL_VERSION = "2024-11-05"
RESOURCE_SCHEME = "repo-context://"
MAX_LINE_BYTES = 16 * 1024 * 1024  # one NDJSON request, entry content included

# ── JSON-RPC 2.0 helpers ─────────────────────────────────────


def jsonrpc_result(req_id, result):
    return {"jsonrpc": "2.0", "id": req_id, "result": result}


def jsonrpc_error(req_id, code, message):
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def text_result(text: str, is_error: bool = False) -> dict:
    result: dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def resource_uri(category: str, filename: str) -> str:
    return f"{RESOURCE_SCHEME}{category}/{filename}"


def parse_resource_uri(uri: str) -> tuple[str, str]:
    """Split ``repo-context://decisions/db.md`` into ``("decisions", "db.md")``."""
    if not uri.startswith(RESOURCE_SCHEME):
        raise ValueError(f"Unsupported resource URI: {uri}")
    category, sep, filename = uri[len(RESOURCE_SCHEME):].partition("/")
    if not sep or not filename:
        raise ValueError(f"Malformed resource URI: {uri}")
    return category, filename


class ContextServer:
    """Serves one host session over NDJSON."""

    def __init__(
        self,
        config: RepoMemoryConfig | None = None,
        memory: RepoMemory | None = None,
    ) -> None:
        self.config = config or load_config()
        self.memory = memory or RepoMemory(self.config)
        self.session = SessionTracker()
        self.tools = get_context_tools(self.memory, self.session)
        self._shutdown_event = asyncio.Event()
        self._closed = False

    # ── Request handler ──────────────────────────────────────

    async def handle_request(self, req: dict) -> dict | None:
        req_id = req.get("id")
        method = req.get("method", "")

        # Notifications (no id) — no response
        if req_id is None:
            if method == "notifications/initialized":
                logger.info("Client initialized")
            return None

        if method == "initialize":
            return jsonrpc_result(req_id, {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}, "resources": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            })

        if method == "ping":
            return jsonrpc_result(req_id, {})

        if method == "tools/list":
            return jsonrpc_result(req_id, {"tools": TOOL_DEFINITIONS})

        if method == "tools/call":
            params = req.get("params") or {}
            return jsonrpc_result(
                req_id,
                await self.call_tool(params.get("name", ""), params.get("arguments") or {}),
            )

        if method == "resources/list":
            return jsonrpc_result(req_id, {"resources": self.list_resources()})

        if method == "resources/read":
            uri = (req.get("params") or {}).get("uri", "")
            try:
                return jsonrpc_result(req_id, self.read_resource(uri))
            except (ValueError, LookupError) as e:
                return jsonrpc_error(req_id, -32602, str(e))

        return jsonrpc_error(req_id, -32601, f"Method not found: {method}")

    async def call_tool(self, name: str, args: dict) -> dict:
        tool = self.tools.get(name)
        if tool is None:
            return text_result(f"Unknown tool: {name}", is_error=True)

        self.session.record_tool(name)
        try:
            return text_result(await tool(**args))
        except InvalidCategory as e:
            return text_result(f"{e}. Pick one of the listed categories and retry.", is_error=True)
        except StorageFailure as e:
            logger.error("%s failed: %s (%s)", name, e, e.__cause__)
            return text_result(f"[error] {e}. The knowledge base was not changed.", is_error=True)
        except (ValueError, TypeError) as e:
            return text_result(f"[error] Invalid arguments for {name}: {e}", is_error=True)
        except Exception as e:
            logger.exception("Tool %s raised", name)
            return text_result(f"[error] {e}", is_error=True)

    # ── Resources ────────────────────────────────────────────

    def list_resources(self) -> list[dict]:
        resources = []
        for entry in self.memory.list_entries():
            if entry.category == ROOT_CATEGORY:
                description = "Project overview"
            else:
                description = DESCRIPTIONS[Category(entry.category)]
            resources.append({
                "uri": resource_uri(entry.category, entry.filename),
                "name": entry.title,
                "description": description,
                "mimeType": "text/markdown",
            })
        return resources

    def read_resource(self, uri: str) -> dict:
        category, filename = parse_resource_uri(uri)
        if category == ROOT_CATEGORY:
            content = self.memory.store.read_index() or None
        else:
            content = self.memory.read(category, filename)
        if content is None:
            raise LookupError(f"Resource not found: {uri}")
        return {"contents": [{"uri": uri, "mimeType": "text/markdown", "text": content}]}

    # ── Stdio transport (NDJSON) ─────────────────────────────

    async def serve(self, reader: asyncio.StreamReader, write: Callable[[str], None]) -> None:
        """Answer requests until the reader reaches EOF."""
        while True:
            line = await reader.readline()
            if not line:
                logger.info("Input closed")
                break
            if not line.strip():
                continue

            try:
                req = json.loads(line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning("Parse error: %s", e)
                write(json.dumps(jsonrpc_error(None, -32700, f"Parse error: {e}")) + "\n")
                continue

            if not isinstance(req, dict):
                logger.warning("Invalid request: %r", req)
                write(json.dumps(jsonrpc_error(None, -32600, "Invalid Request")) + "\n")
                continue

            try:
                logger.debug("<- %s", req.get("method", "?"))
                response = await self.handle_request(req)
            except Exception as e:
                logger.exception("Handler error")
                response = jsonrpc_error(req.get("id"), -32603, f"Internal error: {e}")
            if response:
                write(json.dumps(response, ensure_ascii=False) + "\n")

    # ── Signal handling ──────────────────────────────────────

    def _setup_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unavailable for %s", sig.name)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        self.request_shutdown()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    # ── Main run loop ────────────────────────────────────────

    async def run(
        self,
        reader: asyncio.StreamReader | None = None,
        write: Callable[[str], None] | None = None,
    ) -> None:
        await self.memory.start()
        if reader is None:
            reader = await _stdin_reader()
            self._setup_signals()
        write = write or _stdout_write

        logger.info("Context server starting (root=%s)", self.memory.store.path)
        serve_task = asyncio.create_task(self.serve(reader, write))
        stop_task = asyncio.create_task(self._shutdown_event.wait())
        try:
            await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (serve_task, stop_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(serve_task, stop_task, return_exceptions=True)
            await self.shutdown()

    async def shutdown(self) -> None:
        """Record the session and persist the index. Runs once."""
        if self._closed:
            return
        self._closed = True
        try:
            await self.memory.capture_session(self.session)
        except Exception:
            logger.exception("Session capture failed")
        try:
            await self.memory.close()
        except Exception:
            logger.exception("Closing the knowledge base failed")
        logger.info("Context server stopped.")


async def _stdin_reader() -> asyncio.StreamReader:
    reader = asyncio.StreamReader(limit=MAX_LINE_BYTES)
    protocol = asyncio.StreamReaderProtocol(reader)
    await asyncio.get_running_loop().connect_read_pipe(lambda: protocol, sys.stdin)
    return reader


def _stdout_write(data: str) -> None:
    sys.stdout.write(data)
    sys.stdout.flush()
