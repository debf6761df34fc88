# =============================================================================
# Trends API — Live Market Overview
# =============================================================================
#
#   GET /api/trends → trending coins, top DeFi protocols, price snapshot
#
# Served from the market provider's TTL cache; an unreachable feed shows up
# as an empty list rather than an error.
# =============================================================================

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends

from web3_insight.api.deps import get_market_context
from web3_insight.models.responses import MarketTrendsResponse
from web3_insight.services.market_data import MarketContextProvider

router = APIRouter(prefix="/api", tags=["Market"])


@router.get(
    "/trends",
    response_model=MarketTrendsResponse,
    summary="Current Web3 market trends",
)
async def get_trends(
    market: MarketContextProvider = Depends(get_market_context),
) -> MarketTrendsResponse:
    trends = await market.get_trends()
    return MarketTrendsResponse.model_validate(asdict(trends))
