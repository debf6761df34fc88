# =============================================================================
# API Request Models: Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API.
# FastAPI uses them for:
# 1. Request body validation (failures are rendered as 400 "Validation
#    failed" with one detail per problem, see main.py)
# 2. OpenAPI documentation generation (visible at /docs)
# 3. Normalisation: messages and contents arrive trimmed in the handlers
#
# Metadata filters are accepted as raw JSON here and converted into filter
# clauses by services/filters.py; a malformed filter never fails a request.
# =============================================================================

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_MESSAGE_LENGTH = 5000
MAX_CONTENT_LENGTH = 100_000
MAX_BATCH_SIZE = 100

_UNSAFE_MARKERS = ("<script", "javascript:")


class ChatRequest(BaseModel):
    """
    Request body for POST /api/chat and POST /api/chat/stream.

    Example:
        {
            "message": "What is happening in DeFi lending?",
            "filters": {"source": {"$in": ["CoinDesk", "The Block"]}}
        }
    """

    message: str = Field(
        ...,
        description="The user's question (1-5000 characters after trimming)",
        examples=["How does Ethereum work?"],
    )

    # Optional: restrict retrieval by stored-knowledge metadata.
    # Scalars mean equality; operator objects take one of
    # $in, $like, $ilike, $exists.
    filters: dict[str, Any] | None = Field(
        default=None,
        description="Metadata filter applied to stored-knowledge retrieval",
        examples=[{"source": "CoinDesk"}, {"title": {"$ilike": "%ethereum%"}}],
    )

    @field_validator("message")
    @classmethod
    def _validate_message(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("Message cannot be empty")
        if len(trimmed) > MAX_MESSAGE_LENGTH:
            raise ValueError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")
        lowered = trimmed.lower()
        if any(marker in lowered for marker in _UNSAFE_MARKERS):
            raise ValueError("Message contains potentially unsafe content")
        return trimmed

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"message": "What is the current price of Bitcoin?"},
                {
                    "message": "Which lending protocols are growing?",
                    "filters": {"source": "DeFiLlama"},
                },
            ]
        }
    )


class DocumentRequest(BaseModel):
    """
    Request body for POST /api/documents: add one item to stored knowledge.

    `title`, `url` and `source` are used for answer attributions; any other
    metadata keys are stored as-is and can be used in chat filters.
    """

    content: str = Field(
        ...,
        description="Knowledge text (1-100000 characters after trimming)",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Open metadata; title, url and source must be strings",
        examples=[{"title": "Ethereum basics", "url": "https://ethereum.org", "source": "docs"}],
    )

    @field_validator("content")
    @classmethod
    def _validate_content(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("Content cannot be empty")
        if len(trimmed) > MAX_CONTENT_LENGTH:
            raise ValueError(f"Content cannot exceed {MAX_CONTENT_LENGTH} characters")
        return trimmed

    @field_validator("metadata", mode="before")
    @classmethod
    def _validate_metadata(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("Metadata must be an object")

        problems = [
            f"Metadata {key} must be a string"
            for key in ("title", "url", "source")
            if value.get(key) is not None and not isinstance(value[key], str)
        ]
        if problems:
            raise ValueError("; ".join(problems))

        if isinstance(value.get("title"), str):
            value = {**value, "title": value["title"].strip()}
        return value


class DocumentBatchRequest(BaseModel):
    """Request body for POST /api/documents/batch: 1 to 100 items, stored atomically."""

    documents: list[DocumentRequest] = Field(
        ...,
        min_length=1,
        max_length=MAX_BATCH_SIZE,
    )
