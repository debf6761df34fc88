# =============================================================================
# Unit Tests — Chat Orchestrator
# =============================================================================
#
# Event-sequence tests use stub retrieval and market components; the
# end-to-end test wires the real RetrievalFusion over an in-process Chroma
# index with the keyword embedder from conftest.
# =============================================================================

from __future__ import annotations

import asyncio
from contextlib import aclosing

import httpx

from conftest import ScriptedProvider, make_settings
from web3_insight.chat.events import ChunkEvent, DoneEvent, ErrorEvent, SourcesEvent, StartEvent
from web3_insight.chat.orchestrator import GENERIC_ERROR_MESSAGE, ChatOrchestrator
from web3_insight.errors import ConfigError, StorageError
from web3_insight.services.context import STORED_KNOWLEDGE_PREFIX, Attribution
from web3_insight.services.filters import Equals
from web3_insight.services.llm import CompletionGateway
from web3_insight.services.market_data import FALLBACK_SOURCE, MarketContext, MarketContextProvider
from web3_insight.services.retrieval import RetrievalFusion, RetrievalOutcome
from web3_insight.services.vectorstore import NewItem, SearchResult


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


async def _collect(events) -> list:
    return [event async for event in events]


COINGECKO = Attribution("CoinGecko", "https://www.coingecko.com")


class StubRetriever:
    def __init__(self, results=None, error=None):
        self.results = results or []
        self.error = error
        self.calls = []

    async def try_retrieve(self, query, **kwargs):
        self.calls.append((query, kwargs))
        if self.error is not None:
            return RetrievalOutcome(error=self.error)
        return RetrievalOutcome(results=self.results)


class StubMarket:
    def __init__(self, text="BTC is $65,000.", sources=None, error=None):
        self.text = text
        self.sources = sources if sources is not None else [COINGECKO]
        self.error = error

    async def search_context(self, query):
        if self.error is not None:
            raise self.error
        return MarketContext(relevant_text=self.text, sources=self.sources)


def _orchestrator(provider=None, retriever=None, market=None, completion=None):
    return ChatOrchestrator(
        retriever=retriever or StubRetriever([
            SearchResult(1, "Ethereum uses the EVM", 0.9, {"title": "Ethereum 101"}),
        ]),
        market=market or StubMarket(),
        completion=completion or CompletionGateway(make_settings(), provider or ScriptedProvider()),
        limit=3,
        min_similarity=0.6,
    )


# ---------------------------------------------------------------------------
# Test: stream()
# ---------------------------------------------------------------------------


class TestStream:
    def test_success_sequence(self):
        events = _run(_collect(_orchestrator().stream("How does Ethereum work?")))

        assert [type(e) for e in events] == [
            SourcesEvent, StartEvent, ChunkEvent, ChunkEvent, DoneEvent,
        ]
        assert events[0].sources == [Attribution("Ethereum 101", "#"), COINGECKO]
        assert [e.content for e in events[2:4]] == ["Hello", " world"]
        assert events[-1].full_content == "Hello world"

    def test_prompt_contains_retrieved_and_market_context(self):
        provider = ScriptedProvider()
        _run(_collect(_orchestrator(provider).stream("How does Ethereum work?")))

        prompt = provider.prompts[0]
        assert prompt.startswith(f"Context: {STORED_KNOWLEDGE_PREFIX}Ethereum uses the EVM")
        assert "BTC is $65,000." in prompt
        assert prompt.endswith("User Question: How does Ethereum work?")

    def test_mid_stream_failure_keeps_emitted_chunks(self):
        provider = ScriptedProvider(chunks=["a", "b", "c"], fail_after=2)
        events = _run(_collect(_orchestrator(provider).stream("q")))

        assert [type(e) for e in events] == [
            SourcesEvent, StartEvent, ChunkEvent, ChunkEvent, ErrorEvent,
        ]
        assert events[-1].error == GENERIC_ERROR_MESSAGE
        assert provider.stream_closed

    def test_missing_llm_configuration_is_error_event(self):
        completion = CompletionGateway(make_settings())
        events = _run(_collect(_orchestrator(completion=completion).stream("q")))

        assert [type(e) for e in events] == [SourcesEvent, StartEvent, ErrorEvent]
        assert events[-1].error.startswith("To use this feature, please configure your LLM API key")

    def test_config_error_from_provider(self):
        provider = ScriptedProvider(fail_after=0, error=ConfigError("key revoked"))
        events = _run(_collect(_orchestrator(provider).stream("q")))
        assert "key revoked" in events[-1].error

    def test_retrieval_failure_degrades_to_market_only(self):
        provider = ScriptedProvider()
        orchestrator = _orchestrator(provider, retriever=StubRetriever(error=StorageError("down")))

        events = _run(_collect(orchestrator.stream("q")))

        assert isinstance(events[-1], DoneEvent)
        assert events[0].sources == [COINGECKO]
        assert STORED_KNOWLEDGE_PREFIX not in provider.prompts[0]

    def test_market_failure_degrades_to_stored_knowledge(self):
        provider = ScriptedProvider()
        orchestrator = _orchestrator(provider, market=StubMarket(error=RuntimeError("boom")))

        events = _run(_collect(orchestrator.stream("q")))

        assert isinstance(events[-1], DoneEvent)
        assert events[0].sources == [Attribution("Ethereum 101", "#")]

    def test_preparation_failure_keeps_event_order(self):
        class BrokenRetriever:
            async def try_retrieve(self, query, **kwargs):
                raise RuntimeError("unexpected")

        provider = ScriptedProvider()
        events = _run(_collect(_orchestrator(provider, retriever=BrokenRetriever()).stream("q")))

        assert [type(e) for e in events] == [SourcesEvent, StartEvent, ErrorEvent]
        assert events[0].sources == []
        assert events[-1].error == GENERIC_ERROR_MESSAGE
        assert provider.prompts == []

    def test_no_context_sends_bare_question(self):
        provider = ScriptedProvider()
        orchestrator = _orchestrator(
            provider, retriever=StubRetriever([]), market=StubMarket(text="", sources=[]),
        )
        events = _run(_collect(orchestrator.stream("gm")))

        assert events[0].sources == []
        assert provider.prompts == ["gm"]

    def test_consumer_disconnect_closes_provider_stream(self):
        provider = ScriptedProvider(chunks=["a", "b", "c", "d"])
        orchestrator = _orchestrator(provider)

        async def read_until_first_chunk():
            seen = []
            async with aclosing(orchestrator.stream("q")) as events:
                async for event in events:
                    seen.append(event)
                    if isinstance(event, ChunkEvent):
                        break
            return seen

        seen = _run(read_until_first_chunk())
        assert [type(e) for e in seen] == [SourcesEvent, StartEvent, ChunkEvent]
        assert provider.stream_closed
        assert provider.chunks_sent == 1

    def test_filters_and_tuning_passed_to_retrieval(self):
        retriever = StubRetriever([])
        orchestrator = _orchestrator(retriever=retriever)
        _run(_collect(orchestrator.stream("q", [Equals("source", "CoinDesk")])))

        query, kwargs = retriever.calls[0]
        assert query == "q"
        assert kwargs["filters"] == [Equals("source", "CoinDesk")]
        assert kwargs["limit"] == 3
        assert kwargs["min_similarity"] == 0.6


# ---------------------------------------------------------------------------
# Test: answer()
# ---------------------------------------------------------------------------


class TestAnswer:
    def test_returns_content_and_sources(self):
        answer = _run(_orchestrator(ScriptedProvider(chunks=["Done."])).answer("q"))
        assert answer.content == "Done."
        assert answer.sources == [Attribution("Ethereum 101", "#"), COINGECKO]

    def test_missing_configuration_is_readable_answer(self):
        answer = _run(_orchestrator(completion=CompletionGateway(make_settings())).answer("q"))
        assert answer.content.startswith("To use this feature")
        assert answer.sources == []


# ---------------------------------------------------------------------------
# Test: end to end over Chroma
# ---------------------------------------------------------------------------


class TestEndToEnd:
    def test_inserted_document_found_for_related_question(self, chroma_index, embedder):
        ids = _run(chroma_index.insert_batch([
            NewItem("Ethereum uses the EVM", {"source": "X"}),
            NewItem("Bitcoin is digital gold", {"source": "Y"}),
        ]))

        fusion = RetrievalFusion(embedder, chroma_index)
        results = _run(fusion.retrieve("How does Ethereum work?", limit=3, min_similarity=0.5))
        assert ids[0] in [r.id for r in results]
        assert ids[1] not in [r.id for r in results]

        provider = ScriptedProvider(chunks=["It runs the EVM."])
        orchestrator = ChatOrchestrator(
            retriever=fusion,
            market=StubMarket(text="", sources=[]),
            completion=CompletionGateway(make_settings(), provider),
            limit=3,
            min_similarity=0.5,
        )
        events = _run(_collect(orchestrator.stream("How does Ethereum work?")))

        assert events[0].sources == [Attribution("X", "#")]
        assert "Ethereum uses the EVM" in provider.prompts[0]
        assert events[-1].full_content == "It runs the EVM."

    def test_empty_store_and_unreachable_market_still_answers(self, chroma_index, embedder):
        def unreachable(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        config = make_settings()
        market = MarketContextProvider(
            config=config,
            client=httpx.AsyncClient(transport=httpx.MockTransport(unreachable)),
        )
        provider = ScriptedProvider(chunks=["DeFi is ", "open finance."])
        orchestrator = ChatOrchestrator(
            retriever=RetrievalFusion(embedder, chroma_index),
            market=market,
            completion=CompletionGateway(config, provider),
        )

        events = _run(_collect(orchestrator.stream("What is DeFi?")))

        assert isinstance(events[0], SourcesEvent)
        assert events[0].sources == [FALLBACK_SOURCE]
        assert isinstance(events[1], StartEvent)
        assert isinstance(events[-1], DoneEvent)
        assert events[-1].full_content == "DeFi is open finance."
        assert STORED_KNOWLEDGE_PREFIX not in provider.prompts[0]
