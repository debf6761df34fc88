# =============================================================================
# Documents API — Stored Knowledge Management
# =============================================================================
#
#   POST   /api/documents                 add one item (embedded on insert)
#   POST   /api/documents/batch           add 1-100 items in one transaction
#   GET    /api/documents                 list items, newest first
#   DELETE /api/documents/{id}            delete one item
#   GET    /api/documents/metadata/{key}  distinct values of a metadata key
#
# Items are stored whole (no chunking): each request item becomes exactly
# one retrievable unit. Errors raised by the index (InputError,
# ConfigError, ProviderError, StorageError) are mapped to HTTP by main.py.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from web3_insight.api.deps import get_similarity_index
from web3_insight.models.requests import DocumentBatchRequest, DocumentRequest
from web3_insight.models.responses import (
    DocumentBatchCreatedResponse,
    DocumentCreatedResponse,
    DocumentDeletedResponse,
    DocumentListResponse,
    DocumentView,
    MetadataValuesResponse,
)
from web3_insight.services.vectorstore import NewItem, SimilarityIndex

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/documents", tags=["Documents"])


@router.post(
    "",
    response_model=DocumentCreatedResponse,
    status_code=201,
    summary="Add a document to stored knowledge",
)
async def add_document(
    request: DocumentRequest,
    index: SimilarityIndex = Depends(get_similarity_index),
) -> DocumentCreatedResponse:
    item_id = await index.insert(request.content, request.metadata)
    logger.info("Added document id=%d (%d chars)", item_id, len(request.content))
    return DocumentCreatedResponse(id=item_id)


@router.post(
    "/batch",
    response_model=DocumentBatchCreatedResponse,
    status_code=201,
    summary="Add several documents at once",
    description=(
        "Embeds all documents in one call and stores them in one "
        "transaction: either every document is stored or none is."
    ),
)
async def add_documents_batch(
    request: DocumentBatchRequest,
    index: SimilarityIndex = Depends(get_similarity_index),
) -> DocumentBatchCreatedResponse:
    ids = await index.insert_batch(
        [NewItem(content=doc.content, metadata=doc.metadata) for doc in request.documents]
    )
    return DocumentBatchCreatedResponse(
        ids=ids,
        message=f"{len(ids)} documents added to vector store",
    )


@router.get(
    "",
    response_model=DocumentListResponse,
    summary="List stored documents",
)
async def list_documents(
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    index: SimilarityIndex = Depends(get_similarity_index),
) -> DocumentListResponse:
    items = await index.list_items(limit=limit, offset=offset)
    total = await index.count()
    return DocumentListResponse(
        documents=[DocumentView.model_validate(item) for item in items],
        total=total,
    )


@router.delete(
    "/{item_id}",
    response_model=DocumentDeletedResponse,
    summary="Delete a stored document",
)
async def delete_document(
    item_id: int,
    index: SimilarityIndex = Depends(get_similarity_index),
) -> DocumentDeletedResponse:
    deleted = await index.delete(item_id)
    if deleted is None:
        raise HTTPException(status_code=404, detail=f"Document {item_id} not found")
    logger.info("Deleted document id=%d", deleted)
    return DocumentDeletedResponse(id=deleted)


@router.get(
    "/metadata/{key}",
    response_model=MetadataValuesResponse,
    summary="Distinct values of a metadata key",
    description="Useful for building filter pickers, e.g. all known `source` values.",
)
async def metadata_values(
    key: str,
    index: SimilarityIndex = Depends(get_similarity_index),
) -> MetadataValuesResponse:
    values = await index.distinct_metadata_values(key)
    return MetadataValuesResponse(key=key, values=values)
