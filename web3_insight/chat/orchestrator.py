# =============================================================================
# Chat Orchestrator — Preparation Graph + Answer Streaming
# =============================================================================
#
# Preparation is a LangGraph StateGraph; generation sits outside it so the
# streaming path can yield chunks as they arrive:
#
#   START ──▶ retrieve ──▶ market_context ──▶ assemble ──▶ END
#                                                          │
#                     stream(): sources, start, chunk*, done | error
#                     answer(): one complete() call
#
# Linear graph, no conditional edges. Each preparation node degrades
# instead of failing: retrieval errors mean no stored knowledge, market
# errors mean no market text. Only the completion step can end a chat in
# an error.
#
# Plain TypedDict state, as in the rest of the project. The graph is
# compiled per orchestrator because its nodes are bound to this instance's
# retriever, market provider and completion gateway.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from web3_insight.chat.events import (
    ChatEvent,
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    SourcesEvent,
    StartEvent,
)
from web3_insight.errors import ConfigError
from web3_insight.services.context import Attribution, assemble_context, build_sources
from web3_insight.services.filters import FilterClause
from web3_insight.services.llm import CompletionGateway
from web3_insight.services.market_data import MarketContext, MarketContextProvider
from web3_insight.services.retrieval import RetrievalFusion
from web3_insight.services.vectorstore import SearchResult

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An error occurred while generating the response."


def config_error_message(error: ConfigError) -> str:
    return (
        "To use this feature, please configure your LLM API key "
        f"(see .env.example). Error: {error.message}"
    )


# ---------------------------------------------------------------------------
# State Schema
# ---------------------------------------------------------------------------


class ChatState(TypedDict, total=False):
    """
    State that flows through the preparation graph.

    total=False so nodes only return the keys they update.
    """

    # --- Input (set by caller) ---
    message: str
    filters: list[FilterClause]

    # --- Intermediate (set by nodes) ---
    retrieved: list[SearchResult]
    market: MarketContext

    # --- Output (set by assemble) ---
    context: str
    sources: list[Attribution]


@dataclass
class ChatAnswer:
    """Non-streaming chat result."""

    content: str
    sources: list[Attribution] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ChatOrchestrator:
    """Runs retrieval and market lookup, then drives the completion gateway."""

    def __init__(
        self,
        retriever: RetrievalFusion,
        market: MarketContextProvider,
        completion: CompletionGateway,
        limit: int = 3,
        min_similarity: float = 0.6,
        expansion_enabled: bool = True,
        max_variants: int = 3,
    ) -> None:
        self._retriever = retriever
        self._market = market
        self._completion = completion
        self._limit = limit
        self._min_similarity = min_similarity
        self._expansion_enabled = expansion_enabled
        self._max_variants = max_variants
        self._graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(ChatState)
        builder.add_node("retrieve", self._retrieve_node)
        builder.add_node("market_context", self._market_node)
        builder.add_node("assemble", self._assemble_node)

        builder.add_edge(START, "retrieve")
        builder.add_edge("retrieve", "market_context")
        builder.add_edge("market_context", "assemble")
        builder.add_edge("assemble", END)
        return builder.compile()

    # -----------------------------------------------------------------------
    # Graph Nodes
    # -----------------------------------------------------------------------

    async def _retrieve_node(self, state: ChatState) -> dict:
        outcome = await self._retriever.try_retrieve(
            state["message"],
            limit=self._limit,
            min_similarity=self._min_similarity,
            filters=state.get("filters") or [],
            expansion_enabled=self._expansion_enabled,
            max_variants=self._max_variants,
        )
        if outcome.results:
            logger.info("Found %d relevant items in stored knowledge", len(outcome.results))
        return {"retrieved": outcome.results}

    async def _market_node(self, state: ChatState) -> dict:
        try:
            market = await self._market.search_context(state["message"])
        except Exception:
            logger.exception("Market context failed, continuing without it")
            market = MarketContext(relevant_text="")
        return {"market": market}

    async def _assemble_node(self, state: ChatState) -> dict:
        retrieved = state.get("retrieved") or []
        market = state.get("market") or MarketContext(relevant_text="")
        return {
            "context": assemble_context(
                [item.content for item in retrieved], market.relevant_text,
            ),
            "sources": build_sources(retrieved, market.sources),
        }

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def prepare(
        self, message: str, filters: Sequence[FilterClause] = (),
    ) -> ChatState:
        """Run the preparation graph; returns the final state."""
        logger.info("Preparing answer: message='%s', filters=%d", message[:80], len(filters))
        return await self._graph.ainvoke({"message": message, "filters": list(filters)})

    async def stream(
        self, message: str, filters: Sequence[FilterClause] = (),
    ) -> AsyncIterator[ChatEvent]:
        """
        sources, start, chunk*, then exactly one of done / error.

        Closing this generator (client disconnect) closes the completion
        stream and with it the upstream HTTP response.
        """
        try:
            state = await self.prepare(message, filters)
        except Exception:
            logger.exception("Chat preparation failed")
            yield SourcesEvent([])
            yield StartEvent()
            yield ErrorEvent(GENERIC_ERROR_MESSAGE)
            return

        yield SourcesEvent(state.get("sources") or [])
        yield StartEvent()

        parts: list[str] = []
        try:
            chunks = self._completion.stream_complete(message, state.get("context", ""))
            async with aclosing(chunks):
                async for chunk in chunks:
                    parts.append(chunk)
                    yield ChunkEvent(chunk)
        except ConfigError as e:
            logger.warning("LLM not configured: %s", e.message)
            yield ErrorEvent(config_error_message(e))
            return
        except Exception:
            logger.exception("Error streaming LLM response after %d chunks", len(parts))
            yield ErrorEvent(GENERIC_ERROR_MESSAGE)
            return

        logger.info("Streamed response complete (%d chunks)", len(parts))
        yield DoneEvent("".join(parts))

    async def answer(
        self, message: str, filters: Sequence[FilterClause] = (),
    ) -> ChatAnswer:
        """
        Whole answer in one completion call.

        A missing LLM configuration becomes a readable answer with no
        sources; ProviderError propagates to the caller.
        """
        state = await self.prepare(message, filters)
        try:
            response = await self._completion.complete(message, state.get("context", ""))
        except ConfigError as e:
            logger.warning("LLM not configured: %s", e.message)
            return ChatAnswer(content=config_error_message(e))

        return ChatAnswer(content=response.content, sources=state.get("sources") or [])
