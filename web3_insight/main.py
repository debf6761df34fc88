# =============================================================================
# FastAPI Application — Web3 Insight Chat
# =============================================================================
#
# Startup:
#   1. configure_logging() from LOG_LEVEL
#   2. check_environment(): log warnings, refuse to start on contradictory
#      LLM configuration
#   3. optionally create the pgvector schema (CREATE_SCHEMA_ON_STARTUP)
#
# Shutdown: close the market data HTTP client and the database pool.
#
# ERROR MAPPING (every error body is {"error": ..., "details": [...]}):
#   InputError, request validation  → 400 "Validation failed"
#   ConfigError                     → 503
#   ProviderError                   → 502
#   StorageError                    → 503
#   HTTPException (e.g. 404)        → its own status
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from web3_insight.api import chat, documents, trends
from web3_insight.api.deps import close_components
from web3_insight.config import check_environment, settings
from web3_insight.errors import (
    ConfigError,
    InputError,
    ProviderError,
    StorageError,
    Web3InsightError,
)
from web3_insight.models.responses import ErrorResponse, HealthResponse

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    for warning in check_environment(settings):
        logger.warning(warning)

    if settings.create_schema_on_startup and settings.vectorstore_type == "pgvector":
        from web3_insight.db.engine import init_database

        await init_database()

    logger.info(
        "%s %s started (vector store=%s, llm provider=%s)",
        settings.app_name, settings.app_version,
        settings.vectorstore_type, settings.llm_provider,
    )
    yield

    await close_components()
    if settings.vectorstore_type == "pgvector":
        from web3_insight.db.engine import dispose_engine

        await dispose_engine()
    logger.info("%s stopped", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    description=(
        "Retrieval-augmented chat about Web3 and crypto markets: stored "
        "knowledge via pgvector, live data via CoinGecko and DeFiLlama, "
        "answers streamed over Server-Sent Events."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    responses={status: {"model": ErrorResponse} for status in (400, 404, 502, 503)},
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Exception Handlers
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: dict[type[Web3InsightError], int] = {
    InputError: 400,
    ConfigError: 503,
    ProviderError: 502,
    StorageError: 503,
}


def _error_body(error: str, details: list[str]) -> dict:
    return ErrorResponse(error=error, details=details).model_dump()


@app.exception_handler(Web3InsightError)
async def service_error_handler(request: Request, exc: Web3InsightError) -> JSONResponse:
    status = next(
        (code for cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, cls)),
        500,
    )
    if status == 400:
        return JSONResponse(status_code=400, content=_error_body("Validation failed", exc.details))

    if status >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content=_error_body(exc.message, exc.details))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = []
    for err in exc.errors():
        msg = str(err.get("msg", "Invalid value")).removeprefix("Value error, ")
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        details.append(f"{location}: {msg}" if location else msg)
    return JSONResponse(status_code=400, content=_error_body("Validation failed", details))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content=_error_body(message, [message]))


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(version=settings.app_version, service=settings.app_name)


app.include_router(chat.router)
app.include_router(documents.router)
app.include_router(trends.router)
