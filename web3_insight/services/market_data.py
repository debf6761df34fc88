# =============================================================================
# Market Context Provider — Live Web3 Feeds with a TTL Cache
# =============================================================================
#
# Three public feeds, each cached for `market_cache_ttl_seconds`:
#
#   trending_coins   CoinGecko /search/trending      top 5 trending coins
#   top_protocols    DeFiLlama /protocols            top 5 by TVL (with chain)
#   market_snapshot  CoinGecko /simple/price         configured assets, USD,
#                                                    24h change, market cap
#
# get_trends() returns all three for the /api/trends endpoint.
# search_context() picks feeds by keywords in the question and renders them
# as plain text for the prompt.
#
# Failure policy: a feed that cannot be fetched is an empty list, and
# search_context() always returns usable text. Nothing here raises to the
# chat pipeline; market data is a nice-to-have next to stored knowledge.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from web3_insight.config import Settings, settings
from web3_insight.services.context import Attribution

logger = logging.getLogger(__name__)

TRENDING_COINS = "trending_coins"
TOP_PROTOCOLS = "top_protocols"
MARKET_SNAPSHOT = "market_snapshot"

_TOP_N = 5

COINGECKO_SOURCE = Attribution(name="CoinGecko", url="https://www.coingecko.com")
DEFILLAMA_SOURCE = Attribution(name="DeFiLlama", url="https://defillama.com")

FALLBACK_TEXT = (
    "Live market data is currently unavailable. Answer from general Web3 "
    "knowledge and mention that prices and rankings may be out of date."
)
FALLBACK_SOURCE = Attribution(name="Web3 market data (unavailable)", url="#")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class TrendingCoin:
    name: str
    symbol: str
    market_cap_rank: int | None
    price_change_24h: float
    source: str = "CoinGecko"


@dataclass
class DeFiProtocol:
    name: str
    tvl: float
    chain: str
    source: str = "DeFiLlama"


@dataclass
class AssetQuote:
    asset: str
    price_usd: float
    change_24h: float | None
    market_cap: float | None
    source: str = "CoinGecko"


@dataclass
class MarketTrends:
    trending_coins: list[TrendingCoin]
    top_protocols: list[DeFiProtocol]
    market_snapshot: list[AssetQuote]
    timestamp: str


@dataclass
class MarketContext:
    relevant_text: str
    sources: list[Attribution] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class FeedCache:
    """
    Per-feed TTL cache for the process lifetime.

    Entries are overwritten wholesale; concurrent refreshes of the same feed
    simply race and the last writer wins.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def get(self, key: str) -> Any | None:
        """The cached value if it is younger than the TTL, else None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self._ttl:
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (self._clock(), value)


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class MarketContextProvider:
    """Fetches, caches and renders market feeds. Owns its HTTP client."""

    def __init__(
        self,
        config: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        cache: FeedCache | None = None,
    ) -> None:
        self._config = config or settings
        self._client = client or httpx.AsyncClient(
            timeout=self._config.market_request_timeout_seconds,
            headers={"Accept": "application/json"},
        )
        self._cache = cache or FeedCache(self._config.market_cache_ttl_seconds)
        self._routes = {
            feed: [_keyword_pattern(kw) for kw in keywords]
            for feed, keywords in self._config.market_context_routes.items()
        }
        self._fetchers = {
            TRENDING_COINS: self._fetch_trending_coins,
            TOP_PROTOCOLS: self._fetch_top_protocols,
            MARKET_SNAPSHOT: self._fetch_market_snapshot,
        }

    async def aclose(self) -> None:
        await self._client.aclose()

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def get_trends(self) -> MarketTrends:
        """All three feeds, fetched concurrently; a failed feed is an empty list."""
        trending, protocols, snapshot = await asyncio.gather(
            self._feed(TRENDING_COINS),
            self._feed(TOP_PROTOCOLS),
            self._feed(MARKET_SNAPSHOT),
        )
        return MarketTrends(
            trending_coins=trending,
            top_protocols=protocols,
            market_snapshot=snapshot,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    async def search_context(self, query: str) -> MarketContext:
        """
        Market facts relevant to `query`, as prompt text plus attributions.

        Never raises. With no keyword match the snapshot is summarised; when
        nothing can be fetched a static fallback text is returned.
        """
        try:
            return await self._search_context(query)
        except Exception:
            logger.exception("Market context lookup failed, using fallback text")
            return MarketContext(relevant_text=FALLBACK_TEXT, sources=[FALLBACK_SOURCE])

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    async def _search_context(self, query: str) -> MarketContext:
        lowered = (query or "").lower()
        matched = [
            feed for feed, patterns in self._routes.items()
            if any(p.search(lowered) for p in patterns)
        ]
        logger.debug("Market context routes matched: %s", matched or "none")

        sections: list[str] = []
        sources: list[Attribution] = []

        if matched:
            feeds = await asyncio.gather(*(self._feed(name) for name in matched))
            for name, items in zip(matched, feeds):
                if not items:
                    continue
                sections.append(_RENDERERS[name](items))
                source = DEFILLAMA_SOURCE if name == TOP_PROTOCOLS else COINGECKO_SOURCE
                if source not in sources:
                    sources.append(source)
        else:
            snapshot = await self._feed(MARKET_SNAPSHOT)
            if snapshot:
                sections.append("Market overview. " + _render_snapshot(snapshot))
                sources.append(COINGECKO_SOURCE)

        if not sections:
            logger.warning("No market data available for context, using fallback text")
            return MarketContext(relevant_text=FALLBACK_TEXT, sources=[FALLBACK_SOURCE])

        return MarketContext(relevant_text="\n\n".join(sections), sources=sources)

    async def _feed(self, name: str) -> list:
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        try:
            items = await self._fetchers[name]()
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Failed to fetch market feed %s: %s", name, e)
            return []

        self._cache.set(name, items)
        logger.info("Fetched market feed %s (%d items)", name, len(items))
        return items

    async def _get_json(self, url: str, params: dict | None = None) -> Any:
        response = await self._client.get(url, params=params)
        response.raise_for_status()
        return response.json()

    async def _fetch_trending_coins(self) -> list[TrendingCoin]:
        data = await self._get_json(f"{self._config.coingecko_base_url}/search/trending")
        coins = []
        for entry in (data.get("coins") or [])[:_TOP_N]:
            item = entry["item"]
            change = ((item.get("data") or {}).get("price_change_percentage_24h") or {}).get("usd")
            coins.append(TrendingCoin(
                name=item["name"],
                symbol=item["symbol"],
                market_cap_rank=item.get("market_cap_rank"),
                price_change_24h=float(change or 0),
            ))
        return coins

    async def _fetch_top_protocols(self) -> list[DeFiProtocol]:
        data = await self._get_json(f"{self._config.defillama_base_url}/protocols")
        with_chains = [p for p in data if p.get("chains")]
        with_chains.sort(key=lambda p: p.get("tvl") or 0, reverse=True)
        return [
            DeFiProtocol(name=p["name"], tvl=float(p.get("tvl") or 0), chain=p["chains"][0])
            for p in with_chains[:_TOP_N]
        ]

    async def _fetch_market_snapshot(self) -> list[AssetQuote]:
        assets = self._config.market_snapshot_assets
        data = await self._get_json(
            f"{self._config.coingecko_base_url}/simple/price",
            params={
                "ids": ",".join(assets),
                "vs_currencies": "usd",
                "include_24hr_change": "true",
                "include_market_cap": "true",
            },
        )
        return [
            AssetQuote(
                asset=asset,
                price_usd=float(data[asset]["usd"]),
                change_24h=data[asset].get("usd_24h_change"),
                market_cap=data[asset].get("usd_market_cap"),
            )
            for asset in assets
            if asset in data and "usd" in data[asset]
        ]


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(keyword)}\b")


def _fmt_change(change: float | None) -> str:
    return "n/a" if change is None else f"{change:+.2f}%"


def _fmt_usd(amount: float) -> str:
    for threshold, suffix in ((1e9, "B"), (1e6, "M")):
        if amount >= threshold:
            return f"${amount / threshold:,.2f}{suffix}"
    return f"${amount:,.2f}"


def _render_snapshot(quotes: list[AssetQuote]) -> str:
    parts = [
        f"{q.asset.capitalize()}: {_fmt_usd(q.price_usd)} ({_fmt_change(q.change_24h)} 24h)"
        for q in quotes
    ]
    return "Current prices: " + "; ".join(parts) + "."


def _render_protocols(protocols: list[DeFiProtocol]) -> str:
    parts = [f"{p.name} on {p.chain}, TVL {_fmt_usd(p.tvl)}" for p in protocols]
    return "Top DeFi protocols by total value locked: " + "; ".join(parts) + "."


def _render_trending(coins: list[TrendingCoin]) -> str:
    parts = []
    for c in coins:
        rank = f"rank #{c.market_cap_rank}" if c.market_cap_rank else "unranked"
        parts.append(f"{c.name} ({c.symbol}, {rank}, {_fmt_change(c.price_change_24h)} 24h)")
    return "Trending coins on CoinGecko: " + "; ".join(parts) + "."


_RENDERERS: dict[str, Callable[[list], str]] = {
    MARKET_SNAPSHOT: _render_snapshot,
    TOP_PROTOCOLS: _render_protocols,
    TRENDING_COINS: _render_trending,
}
