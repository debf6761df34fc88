# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# Everything here runs offline: no API keys, no PostgreSQL, no network.
#
#   KeywordEmbedder   deterministic embeddings: one axis per known keyword,
#                     so texts sharing a keyword are close in cosine terms
#   ScriptedProvider  LLMProvider that streams a fixed list of chunks and
#                     records prompts and whether its stream was closed
#   chroma_index      in-process ChromaVectorIndex on a fresh collection
# =============================================================================

from __future__ import annotations

import uuid

import chromadb
import pytest

from web3_insight.config import Settings
from web3_insight.errors import ProviderError
from web3_insight.services.llm import LLMResponse
from web3_insight.services.vectorstore import ChromaVectorIndex

KEYWORDS = ("ethereum", "bitcoin", "defi", "solana", "evm")


class KeywordEmbedder:
    """Embedding gateway stand-in: keyword counts plus a small constant axis."""

    dimensions = len(KEYWORDS) + 1

    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def vector(self, text: str) -> list[float]:
        lowered = text.lower()
        return [float(lowered.count(k)) for k in KEYWORDS] + [0.1]

    async def embed(self, text: str) -> list[float]:
        self.calls.append([text])
        return self.vector(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        return [self.vector(t) for t in texts]


class ScriptedProvider:
    """LLM provider that replays `chunks`, optionally failing after `fail_after` chunks."""

    def __init__(
        self,
        chunks: list[str] | None = None,
        fail_after: int | None = None,
        error: Exception | None = None,
    ) -> None:
        self.chunks = chunks if chunks is not None else ["Hello", " world"]
        self.fail_after = fail_after
        self.error = error or ProviderError("upstream went away")
        self.prompts: list[str] = []
        self.systems: list[str | None] = []
        self.stream_closed = False
        self.chunks_sent = 0

    async def complete(self, messages, system=None, temperature=None, max_tokens=None):
        self.prompts.append(messages[-1]["content"])
        self.systems.append(system)
        if self.fail_after is not None:
            raise self.error
        return LLMResponse(
            content="".join(self.chunks),
            model="scripted",
            input_tokens=3,
            output_tokens=len(self.chunks),
        )

    async def stream(self, messages, system=None, temperature=None, max_tokens=None):
        self.prompts.append(messages[-1]["content"])
        self.systems.append(system)
        try:
            for i, chunk in enumerate(self.chunks):
                if self.fail_after is not None and i >= self.fail_after:
                    raise self.error
                self.chunks_sent += 1
                yield chunk
            if self.fail_after is not None and self.fail_after >= len(self.chunks):
                raise self.error
        finally:
            self.stream_closed = True


def make_settings(**overrides) -> Settings:
    """Settings isolated from any .env file; keys default to empty."""
    values = {
        "anthropic_api_key": "",
        "openai_api_key": "",
        "llm_api_key": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def chroma_index(embedder: KeywordEmbedder) -> ChromaVectorIndex:
    """A ChromaVectorIndex on its own collection (Chroma's in-process state is shared)."""
    return ChromaVectorIndex(
        embedder,
        client=chromadb.EphemeralClient(),
        collection_name=f"test_{uuid.uuid4().hex}",
    )
