# =============================================================================
# Chat API — Question Answering over Stored Knowledge + Market Data
# =============================================================================
#
#   POST /api/chat         → {content, sources}
#   POST /api/chat/stream  → text/event-stream:
#                            sources, start, chunk*, done | error
#
# Both endpoints are thin: validate the request, parse the metadata
# filter, and hand over to the ChatOrchestrator.
#
# Streaming: the response body is the orchestrator's event generator,
# encoded frame by frame. When the client disconnects, Starlette stops
# iterating and the generator is closed, which closes the upstream LLM
# stream.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import aclosing

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from web3_insight.api.deps import get_orchestrator
from web3_insight.chat.events import encode_sse
from web3_insight.chat.orchestrator import ChatOrchestrator
from web3_insight.models.requests import ChatRequest
from web3_insight.models.responses import ChatResponse, Source
from web3_insight.services.filters import FilterClause, parse_metadata_filter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["Chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post(
    "",
    response_model=ChatResponse,
    summary="Answer a question",
    description=(
        "Retrieves stored knowledge (with optional metadata filters) and "
        "live market data, then returns the whole LLM answer with sources."
    ),
)
async def chat_endpoint(
    request: ChatRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> ChatResponse:
    """
    Error handling (see main.py):
    - LLM not configured → 200 with a configuration message as content
    - LLM API errors → 502 Bad Gateway
    """
    logger.info("Received message: %s", request.message[:200])
    answer = await orchestrator.answer(request.message, parse_metadata_filter(request.filters))
    return ChatResponse(
        content=answer.content,
        sources=[Source.model_validate(source) for source in answer.sources],
    )


@router.post(
    "/stream",
    summary="Answer a question as a Server-Sent Events stream",
    response_class=StreamingResponse,
)
async def chat_stream_endpoint(
    request: ChatRequest,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    logger.info("Received streaming message: %s", request.message[:200])
    filters = parse_metadata_filter(request.filters)
    return StreamingResponse(
        _sse_frames(orchestrator, request.message, filters),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


async def _sse_frames(
    orchestrator: ChatOrchestrator,
    message: str,
    filters: list[FilterClause],
) -> AsyncIterator[str]:
    async with aclosing(orchestrator.stream(message, filters)) as events:
        async for event in events:
            yield encode_sse(event)
