# =============================================================================
# API Response Models: Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API.
# They serve as the contract between backend and frontend:
# 1. Ensure consistent response structure across all endpoints
# 2. Automatically serialized to JSON by FastAPI
# 3. Generate OpenAPI response schemas (visible at /docs)
# 4. Keep internal fields (raw embeddings) off the wire
#
# The streaming endpoint does not use these: its frames are defined in
# chat/events.py.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Response for GET /health: confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class ErrorResponse(BaseModel):
    """Body of every 4xx/5xx produced by the service's exception handlers."""

    error: str
    details: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


class Source(BaseModel):
    """Attribution shown next to an answer."""

    name: str
    url: str = Field(description="Link to the source, or '#' when unknown")

    model_config = ConfigDict(from_attributes=True)


class ChatResponse(BaseModel):
    """Response for POST /api/chat."""

    content: str
    sources: list[Source] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class DocumentCreatedResponse(BaseModel):
    """Response for POST /api/documents (201)."""

    success: bool = True
    id: int
    message: str = "Document added to vector store"


class DocumentBatchCreatedResponse(BaseModel):
    """Response for POST /api/documents/batch (201). Ids are in request order."""

    success: bool = True
    ids: list[int]
    message: str


class DocumentView(BaseModel):
    """A stored item without its embedding."""

    id: int
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class DocumentListResponse(BaseModel):
    """Response for GET /api/documents: newest first."""

    documents: list[DocumentView]
    total: int


class DocumentDeletedResponse(BaseModel):
    """Response for DELETE /api/documents/{id}."""

    success: bool = True
    id: int


class MetadataValuesResponse(BaseModel):
    """Response for GET /api/documents/metadata/{key}: values for filter UIs."""

    key: str
    values: list[str]


# ---------------------------------------------------------------------------
# Market Trends
# ---------------------------------------------------------------------------


class TrendingCoinOut(BaseModel):
    name: str
    symbol: str
    market_cap_rank: int | None = None
    price_change_24h: float = 0.0
    source: str

    model_config = ConfigDict(from_attributes=True)


class DeFiProtocolOut(BaseModel):
    name: str
    tvl: float
    chain: str
    source: str

    model_config = ConfigDict(from_attributes=True)


class AssetQuoteOut(BaseModel):
    asset: str
    price_usd: float
    change_24h: float | None = None
    market_cap: float | None = None
    source: str

    model_config = ConfigDict(from_attributes=True)


class MarketTrendsResponse(BaseModel):
    """
    Response for GET /api/trends.

    A feed that could not be fetched is an empty list; the endpoint itself
    does not fail on upstream outages.
    """

    trending_coins: list[TrendingCoinOut]
    top_protocols: list[DeFiProtocolOut]
    market_snapshot: list[AssetQuoteOut]
    timestamp: str

    model_config = ConfigDict(from_attributes=True)
