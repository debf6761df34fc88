# =============================================================================
# Unit Tests — Market Context Provider
# =============================================================================
#
# All HTTP goes through httpx.MockTransport; the cache clock is a plain
# counter the tests advance by hand.
# =============================================================================

from __future__ import annotations

import asyncio

import httpx

from conftest import make_settings
from web3_insight.services.market_data import (
    COINGECKO_SOURCE,
    DEFILLAMA_SOURCE,
    FALLBACK_SOURCE,
    FALLBACK_TEXT,
    FeedCache,
    MarketContextProvider,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


TRENDING = {
    "coins": [
        {"item": {
            "name": f"Coin{i}", "symbol": f"C{i}", "market_cap_rank": i,
            "data": {"price_change_percentage_24h": {"usd": 1.5 * i}},
        }}
        for i in range(1, 8)
    ],
}

PROTOCOLS = [
    {"name": "Lido", "tvl": 30e9, "chains": ["Ethereum"]},
    {"name": "NoChain", "tvl": 99e9, "chains": []},
    {"name": "Aave", "tvl": 12.5e9, "chains": ["Ethereum", "Polygon"]},
    {"name": "Jito", "tvl": 2e9, "chains": ["Solana"]},
    {"name": "EigenLayer", "tvl": 15e9, "chains": ["Ethereum"]},
]

PRICES = {
    "bitcoin": {"usd": 65000, "usd_24h_change": 2.1, "usd_market_cap": 1.28e12},
    "ethereum": {"usd": 3500.5, "usd_24h_change": -1.25, "usd_market_cap": 4.2e11},
    "solana": {"usd": 150},
}


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class MarketApi:
    """MockTransport handler that serves the three feeds and counts hits."""

    def __init__(self, fail: set[str] | None = None):
        self.fail = fail or set()
        self.hits: dict[str, int] = {}
        self.last_params: dict[str, str] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.hits[path] = self.hits.get(path, 0) + 1
        if path in self.fail:
            return httpx.Response(503, json={"error": "unavailable"})
        if path.endswith("/search/trending"):
            return httpx.Response(200, json=TRENDING)
        if path.endswith("/protocols"):
            return httpx.Response(200, json=PROTOCOLS)
        if path.endswith("/simple/price"):
            self.last_params = dict(request.url.params)
            return httpx.Response(200, json=PRICES)
        return httpx.Response(404)

    def count(self, suffix: str) -> int:
        return sum(n for path, n in self.hits.items() if path.endswith(suffix))


def _provider(api: MarketApi, clock: FakeClock | None = None, **overrides):
    config = make_settings(**overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(api))
    cache = FeedCache(config.market_cache_ttl_seconds, clock=clock or FakeClock())
    return MarketContextProvider(config=config, client=client, cache=cache)


# ---------------------------------------------------------------------------
# Test: Feed Cache
# ---------------------------------------------------------------------------


class TestFeedCache:
    def test_entry_expires_at_ttl(self):
        clock = FakeClock()
        cache = FeedCache(60, clock=clock)
        cache.set("feed", [1])

        clock.now = 59.9
        assert cache.get("feed") == [1]
        clock.now = 60.0
        assert cache.get("feed") is None

    def test_missing_key(self):
        assert FeedCache(60).get("nothing") is None

    def test_overwrite_restarts_ttl(self):
        clock = FakeClock()
        cache = FeedCache(10, clock=clock)
        cache.set("feed", "old")
        clock.now = 8
        cache.set("feed", "new")
        clock.now = 15
        assert cache.get("feed") == "new"


# ---------------------------------------------------------------------------
# Test: get_trends
# ---------------------------------------------------------------------------


class TestGetTrends:
    def test_all_feeds_parsed(self):
        api = MarketApi()
        trends = _run(_provider(api).get_trends())

        assert [c.name for c in trends.trending_coins] == [f"Coin{i}" for i in range(1, 6)]
        assert trends.trending_coins[1].price_change_24h == 3.0
        assert [p.name for p in trends.top_protocols] == ["Lido", "EigenLayer", "Aave", "Jito"]
        assert trends.top_protocols[2].chain == "Ethereum"
        assert [q.asset for q in trends.market_snapshot] == ["bitcoin", "ethereum", "solana"]
        assert trends.market_snapshot[2].change_24h is None
        assert trends.timestamp

    def test_snapshot_request_parameters(self):
        api = MarketApi()
        _run(_provider(api).get_trends())
        assert api.last_params == {
            "ids": "bitcoin,ethereum,solana",
            "vs_currencies": "usd",
            "include_24hr_change": "true",
            "include_market_cap": "true",
        }

    def test_failed_feed_is_empty_and_others_survive(self):
        api = MarketApi(fail={"/protocols"})
        trends = _run(_provider(api).get_trends())
        assert trends.top_protocols == []
        assert len(trends.trending_coins) == 5
        assert len(trends.market_snapshot) == 3

    def test_feeds_cached_until_ttl(self):
        api = MarketApi()
        clock = FakeClock()
        provider = _provider(api, clock)

        async def scenario():
            await provider.get_trends()
            await provider.get_trends()
            clock.now = 61
            await provider.get_trends()

        _run(scenario())
        assert api.count("/search/trending") == 2
        assert api.count("/protocols") == 2
        assert api.count("/simple/price") == 2

    def test_failures_are_not_cached(self):
        api = MarketApi(fail={"/protocols"})
        provider = _provider(api)

        async def scenario():
            await provider.get_trends()
            api.fail.clear()
            return await provider.get_trends()

        trends = _run(scenario())
        assert len(trends.top_protocols) == 4


# ---------------------------------------------------------------------------
# Test: search_context
# ---------------------------------------------------------------------------


class TestSearchContext:
    def test_price_question_uses_snapshot(self):
        api = MarketApi()
        context = _run(_provider(api).search_context("What is the bitcoin price today?"))

        assert "Bitcoin: $65,000.00 (+2.10% 24h)" in context.relevant_text
        assert "Ethereum: $3,500.50 (-1.25% 24h)" in context.relevant_text
        assert "Solana: $150.00 (n/a 24h)" in context.relevant_text
        assert context.sources == [COINGECKO_SOURCE]
        assert api.count("/protocols") == 0

    def test_defi_question_uses_protocols(self):
        api = MarketApi()
        context = _run(_provider(api).search_context("Which DeFi lending markets are biggest?"))

        assert "Lido on Ethereum, TVL $30.00B" in context.relevant_text
        assert context.sources == [DEFILLAMA_SOURCE]

    def test_several_feeds_matched(self):
        api = MarketApi()
        context = _run(_provider(api).search_context("trending coins and DeFi TVL"))
        assert "Trending coins on CoinGecko" in context.relevant_text
        assert "Top DeFi protocols" in context.relevant_text
        assert set(context.sources) == {COINGECKO_SOURCE, DEFILLAMA_SOURCE}

    def test_keywords_match_whole_words_only(self):
        # "method" contains "eth", "photon" contains "hot"
        api = MarketApi()
        context = _run(_provider(api).search_context("Explain the photon method"))
        assert context.relevant_text.startswith("Market overview. Current prices:")
        assert api.count("/search/trending") == 0

    def test_plural_keywords_route_to_their_feed(self):
        api = MarketApi()
        context = _run(_provider(api).search_context("best yields?"))
        assert "Top DeFi protocols" in context.relevant_text
        assert context.sources == [DEFILLAMA_SOURCE]

        context = _run(_provider(MarketApi()).search_context("token prices today"))
        assert context.relevant_text.startswith("Current prices:")

    def test_routes_are_configurable(self):
        api = MarketApi()
        provider = _provider(api, market_context_routes={"top_protocols": ["restaking"]})
        context = _run(provider.search_context("Is restaking safe?"))
        assert "Top DeFi protocols" in context.relevant_text

    def test_fallback_when_everything_fails(self):
        api = MarketApi(fail={"/api/v3/simple/price", "/protocols", "/api/v3/search/trending"})
        context = _run(_provider(api).search_context("Tell me about rollups"))
        assert context.relevant_text == FALLBACK_TEXT
        assert context.sources == [FALLBACK_SOURCE]

    def test_malformed_payload_falls_back(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"unexpected": True})

        config = make_settings()
        provider = MarketContextProvider(
            config=config,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        context = _run(provider.search_context("defi protocols"))
        assert context.relevant_text == FALLBACK_TEXT
