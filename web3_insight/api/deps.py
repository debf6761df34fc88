# =============================================================================
# Component Dependencies — FastAPI Dependency Injection
# =============================================================================
#
# One instance of each service component per process, created on first use
# and shared by all requests:
#
#   get_embedding_gateway()  → EmbeddingGateway
#   get_similarity_index()   → PgVectorIndex | ChromaVectorIndex
#   get_market_context()     → MarketContextProvider (owns an httpx client)
#   get_completion_gateway() → CompletionGateway
#   get_orchestrator()       → ChatOrchestrator wired from the above
#
# Route handlers take these via Depends(), so tests swap any of them with
# app.dependency_overrides without touching module state.
#
# Construction is lazy and never needs credentials: missing API keys
# surface as ConfigError on the first call that needs them.
# =============================================================================

from __future__ import annotations

from functools import lru_cache

from web3_insight.chat.orchestrator import ChatOrchestrator
from web3_insight.config import settings
from web3_insight.services.embedder import EmbeddingGateway
from web3_insight.services.llm import CompletionGateway
from web3_insight.services.market_data import MarketContextProvider
from web3_insight.services.retrieval import RetrievalFusion
from web3_insight.services.vectorstore import SimilarityIndex
from web3_insight.services.vectorstore import get_similarity_index as _build_index


@lru_cache
def get_embedding_gateway() -> EmbeddingGateway:
    return EmbeddingGateway(settings)


@lru_cache
def get_similarity_index() -> SimilarityIndex:
    return _build_index(get_embedding_gateway())


@lru_cache
def get_market_context() -> MarketContextProvider:
    return MarketContextProvider(settings)


@lru_cache
def get_completion_gateway() -> CompletionGateway:
    return CompletionGateway(settings)


@lru_cache
def get_orchestrator() -> ChatOrchestrator:
    """The chat pipeline, tuned from the retrieval settings."""
    return ChatOrchestrator(
        retriever=RetrievalFusion(get_embedding_gateway(), get_similarity_index()),
        market=get_market_context(),
        completion=get_completion_gateway(),
        limit=settings.retrieval_limit,
        min_similarity=settings.retrieval_min_similarity,
        expansion_enabled=settings.query_expansion_enabled,
        max_variants=settings.query_expansion_max_variants,
    )


async def close_components() -> None:
    """Release resources held by components created so far (application shutdown)."""
    if get_market_context.cache_info().currsize:
        await get_market_context().aclose()
