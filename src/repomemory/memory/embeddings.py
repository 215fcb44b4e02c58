"""Embedding providers and vector helpers.

The search index only needs ``await provider.embed(text)``; which model
produced the vectors is irrelevant to it. Providers talk to their HTTP APIs
through a lazily created aiohttp session.
"""

from __future__ import annotations

import logging
import math
import os
import struct
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import aiohttp

if TYPE_CHECKING:
    from repomemory.config import EmbeddingConfig

logger = logging.getLogger(__name__)

# Longest text sent to a provider in one call.
MAX_EMBED_CHARS = 8000


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol that all embedding backends must implement."""

    @property
    def name(self) -> str: ...

    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for *text*. May raise on failure."""
        ...


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for empty or mismatched vectors."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        return 0.0
    result = dot / norm
    return result if math.isfinite(result) else 0.0


def pack_vector(vector: list[float]) -> bytes:
    return struct.pack(f"<{len(vector)}f", *vector)


def unpack_vector(blob: bytes) -> list[float]:
    return list(struct.unpack(f"<{len(blob) // 4}f", blob))


class _HTTPEmbeddingProvider:
    """Shared aiohttp session handling for the HTTP based providers."""

    def __init__(self) -> None:
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _post_json(self, url: str, payload: dict, headers: dict | None = None) -> Any:
        session = self._get_session()
        async with session.post(url, json=payload, headers=headers) as resp:
            if resp.status >= 400:
                body = await resp.text()
                raise RuntimeError(f"{self.name} embedding request failed ({resp.status}): {body[:200]}")
            return await resp.json()

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class OpenAIEmbeddingProvider(_HTTPEmbeddingProvider):
    """OpenAI (or compatible) ``/embeddings`` endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        super().__init__()
        self._api_key = api_key
        self._model = model or "text-embedding-3-small"
        self._base_url = (base_url or "https://api.openai.com/v1").rstrip("/")

    @property
    def name(self) -> str:
        return "openai"

    async def embed(self, text: str) -> list[float]:
        data = await self._post_json(
            f"{self._base_url}/embeddings",
            {"model": self._model, "input": text[:MAX_EMBED_CHARS]},
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        return [float(x) for x in data["data"][0]["embedding"]]


class GeminiEmbeddingProvider(_HTTPEmbeddingProvider):
    """Google Generative Language ``embedContent`` endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        super().__init__()
        self._api_key = api_key
        self._model = model or "text-embedding-004"
        self._base_url = (base_url or "https://generativelanguage.googleapis.com/v1beta").rstrip("/")

    @property
    def name(self) -> str:
        return "gemini"

    async def embed(self, text: str) -> list[float]:
        data = await self._post_json(
            f"{self._base_url}/models/{self._model}:embedContent",
            {"content": {"parts": [{"text": text[:MAX_EMBED_CHARS]}]}},
            headers={"x-goog-api-key": self._api_key},
        )
        return [float(x) for x in data["embedding"]["values"]]


class OllamaEmbeddingProvider(_HTTPEmbeddingProvider):
    """Locally running Ollama server (``/api/embed``)."""

    def __init__(self, model: str | None = None, base_url: str | None = None) -> None:
        super().__init__()
        self._model = model or "nomic-embed-text"
        self._base_url = (base_url or "http://localhost:11434").rstrip("/")

    @property
    def name(self) -> str:
        return "ollama"

    async def embed(self, text: str) -> list[float]:
        data = await self._post_json(
            f"{self._base_url}/api/embed",
            {"model": self._model, "input": text[:MAX_EMBED_CHARS]},
        )
        embeddings = data.get("embeddings")
        if not embeddings:
            raise RuntimeError(f"Ollama returned an unexpected response: {data}")
        return [float(x) for x in embeddings[0]]


def _gemini_key() -> str | None:
    return (
        os.getenv("GEMINI_API_KEY")
        or os.getenv("GOOGLE_API_KEY")
        or os.getenv("GOOGLE_GENERATIVE_AI_API_KEY")
    )


def create_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider | None:
    """Build the configured provider, or None for keyword-only search.

    Resolution order:
    1. An explicit ``provider`` in the config ("none" disables embeddings).
    2. ``OPENAI_API_KEY`` in the environment.
    3. ``GEMINI_API_KEY`` / ``GOOGLE_API_KEY``.
    4. None.
    """
    provider = (config.provider or "").lower()

    if provider == "none":
        return None
    if provider == "ollama":
        return OllamaEmbeddingProvider(config.model, config.base_url)
    if provider == "openai":
        key = config.api_key or os.getenv("OPENAI_API_KEY")
        if key:
            return OpenAIEmbeddingProvider(key, config.model, config.base_url)
        logger.warning("Embedding provider 'openai' configured but no API key found")
        return None
    if provider == "gemini":
        key = config.api_key or _gemini_key()
        if key:
            return GeminiEmbeddingProvider(key, config.model, config.base_url)
        logger.warning("Embedding provider 'gemini' configured but no API key found")
        return None
    if provider:
        logger.warning("Unknown embedding provider '%s', using keyword search only", provider)
        return None

    if key := os.getenv("OPENAI_API_KEY"):
        return OpenAIEmbeddingProvider(key, config.model, config.base_url)
    if key := _gemini_key():
        return GeminiEmbeddingProvider(key, config.model, config.base_url)
    return None
