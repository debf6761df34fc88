# =============================================================================
# Retrieval Fusion — Multi-Variant Search with Max-Similarity Merge
# =============================================================================
#
# One user question becomes several searches:
#
# 1. EXPAND: query_expansion.expand_query() (or just the trimmed query)
# 2. EMBED + SEARCH: every variant concurrently (asyncio.gather)
# 3. FUSE: merge by item id keeping the highest similarity any variant saw
# 4. RANK: similarity descending, id ascending on ties, truncate to limit
#
# An item found by several variants keeps its highest similarity, never an
# average or a sum.
#
# retrieve() raises the first variant failure once every variant has
# settled. try_retrieve() is the degraded form the chat pipeline uses: it
# never raises and reports the failure alongside an empty result.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from web3_insight.errors import Web3InsightError
from web3_insight.services.embedder import EmbeddingGateway
from web3_insight.services.filters import FilterClause
from web3_insight.services.query_expansion import expand_query
from web3_insight.services.vectorstore import SearchResult, SimilarityIndex

logger = logging.getLogger(__name__)


@dataclass
class RetrievalOutcome:
    """Fused results, or an empty list plus the error that prevented retrieval."""

    results: list[SearchResult] = field(default_factory=list)
    error: Exception | None = None

    @property
    def degraded(self) -> bool:
        return self.error is not None


class RetrievalFusion:
    """Searches the index with every query variant and fuses the hits."""

    def __init__(self, embedder: EmbeddingGateway, index: SimilarityIndex) -> None:
        self._embedder = embedder
        self._index = index

    async def retrieve(
        self,
        query: str,
        limit: int,
        min_similarity: float,
        filters: Sequence[FilterClause] = (),
        expansion_enabled: bool = True,
        max_variants: int = 3,
    ) -> list[SearchResult]:
        """
        Fused search results for `query`, at most `limit`, highest first.

        Raises:
            InputError: If the query is empty or max_variants < 1.
            Web3InsightError: The first failure among the variant searches.
        """
        variants = (
            expand_query(query, max_variants)
            if expansion_enabled
            else expand_query(query, 1)
        )
        logger.debug(
            "Retrieving with %d variant(s) (expansion=%s): %s",
            len(variants), expansion_enabled, variants,
        )

        outcomes = await asyncio.gather(
            *(self._search_variant(v, limit, min_similarity, filters) for v in variants),
            return_exceptions=True,
        )

        # First failure wins, but only after every variant has settled
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        best: dict[int, SearchResult] = {}
        for hits in outcomes:
            for hit in hits:
                current = best.get(hit.id)
                if current is None or hit.similarity > current.similarity:
                    best[hit.id] = hit

        fused = sorted(best.values(), key=lambda hit: (-hit.similarity, hit.id))[:limit]

        logger.info(
            "Found %d unique items%s%s",
            len(fused),
            " with metadata filters" if filters else "",
            f" (from {len(variants)} variants)" if len(variants) > 1 else "",
        )
        return fused

    async def try_retrieve(
        self,
        query: str,
        limit: int,
        min_similarity: float,
        filters: Sequence[FilterClause] = (),
        expansion_enabled: bool = True,
        max_variants: int = 3,
    ) -> RetrievalOutcome:
        """retrieve(), with every failure converted into a degraded outcome."""
        try:
            results = await self.retrieve(
                query,
                limit=limit,
                min_similarity=min_similarity,
                filters=filters,
                expansion_enabled=expansion_enabled,
                max_variants=max_variants,
            )
        except Web3InsightError as e:
            logger.warning("Retrieval unavailable, continuing without stored knowledge: %s", e)
            return RetrievalOutcome(error=e)
        except Exception as e:
            logger.exception("Unexpected retrieval failure, continuing without stored knowledge")
            return RetrievalOutcome(error=e)

        return RetrievalOutcome(results=results)

    async def _search_variant(
        self,
        variant: str,
        limit: int,
        min_similarity: float,
        filters: Sequence[FilterClause],
    ) -> list[SearchResult]:
        vector = await self._embedder.embed(variant)
        hits = await self._index.search(
            vector,
            min_similarity=min_similarity,
            limit=limit,
            filters=filters,
        )
        logger.debug("Variant %r matched %d item(s)", variant, len(hits))
        return hits
