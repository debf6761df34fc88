# =============================================================================
# Similarity Index — Pluggable Backend Protocol
# =============================================================================
#
# Stores knowledge items (content + open metadata + embedding) and answers
# "which items are closest to this vector?" queries, with metadata filters
# and a similarity floor applied.
#
# Protocol (structural typing) over ABC: the retrieval layer, the API and
# the tests all depend on SimilarityIndex, and any class with the right
# async methods satisfies it.
#
# ARCHITECTURE:
#   SimilarityIndex (Protocol)
#   ├── PgVectorIndex     : PostgreSQL + pgvector (default, persistent)
#   │   └── async SQLAlchemy sessions, one per operation
#   └── ChromaVectorIndex : ChromaDB (in-process or client/server)
#       └── sync client wrapped in asyncio.to_thread()
#
# Similarity is cosine similarity (1 - cosine distance) clamped to [0, 1].
# Results of one search are ordered by similarity, highest first, and every
# result meets the caller's min_similarity.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import chromadb
import httpx
from chromadb.errors import ChromaError
from sqlalchemy import Select, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from web3_insight.config import settings
from web3_insight.db.models import KnowledgeItem
from web3_insight.errors import InputError, StorageError
from web3_insight.services.embedder import EmbeddingGateway
from web3_insight.services.filters import (
    FilterClause,
    is_valid_metadata_key,
    matches_all,
    metadata_text,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class SearchResult:
    """One similarity-search hit. `similarity` is in [0, 1], higher = closer."""

    id: int
    content: str
    similarity: float
    metadata: dict = field(default_factory=dict)


@dataclass
class NewItem:
    """Content and metadata of an item to be stored (embedding computed on insert)."""

    content: str
    metadata: dict = field(default_factory=dict)


@dataclass
class StoredItemView:
    """A stored item as listed by the documents API, without its embedding."""

    id: int
    content: str
    metadata: dict
    created_at: datetime | None = None


def _clamp_similarity(distance: float) -> float:
    return round(max(0.0, min(1.0, 1.0 - float(distance))), 6)


def _check_contents(contents: Sequence[str]) -> None:
    empty = [i for i, c in enumerate(contents) if not c or not c.strip()]
    if empty:
        raise InputError(
            "Content cannot be empty",
            details=[f"Item at position {i} has empty content" for i in empty],
        )


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class SimilarityIndex(Protocol):
    """Interface shared by the pgvector and ChromaDB backends."""

    async def insert(self, content: str, metadata: dict | None = None) -> int:
        """Embed and persist one item; returns its id."""
        ...

    async def insert_batch(self, items: Sequence[NewItem]) -> list[int]:
        """
        Embed all items in one batched call and persist them atomically.

        Returns ids in input order. Nothing is stored if persistence fails.
        """
        ...

    async def search(
        self,
        vector: list[float],
        min_similarity: float,
        limit: int,
        filters: Sequence[FilterClause] = (),
    ) -> list[SearchResult]:
        """Items matching every filter with similarity >= min_similarity."""
        ...

    async def delete(self, item_id: int) -> int | None:
        """Delete by id; returns the id, or None if it did not exist."""
        ...

    async def distinct_metadata_values(self, key: str) -> list[str]:
        """Distinct non-null text values of one metadata key, ascending."""
        ...

    async def list_items(self, limit: int, offset: int = 0) -> list[StoredItemView]:
        """Stored items, newest first."""
        ...

    async def count(self) -> int:
        """Number of stored items."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


def build_search_statement(
    vector: list[float],
    min_similarity: float,
    limit: int,
    filters: Sequence[FilterClause] = (),
) -> Select:
    """
    SELECT item, cosine distance WHERE filters AND 1 - distance >= floor,
    ordered by distance (ascending) so the HNSW index can serve it.

    Similarity is clamped to [0, 1] on the way out, so a floor of 0 keeps
    negatively correlated items (reported at 0.0) instead of dropping them.
    """
    distance = KnowledgeItem.embedding.cosine_distance(vector)

    stmt = select(KnowledgeItem, distance.label("distance")).where(
        KnowledgeItem.embedding.is_not(None)
    )
    if min_similarity > 0:
        stmt = stmt.where(1 - distance >= min_similarity)
    for clause in filters:
        stmt = stmt.where(clause.to_sql(KnowledgeItem.metadata_))

    return stmt.order_by(distance).limit(limit)


class PgVectorIndex:
    """
    pgvector-backed index using async SQLAlchemy.

    Each operation opens its own short-lived session; embedding calls happen
    before the session is opened so no connection is held during them.
    Driver and connection failures surface as StorageError.
    """

    def __init__(
        self,
        embedder: EmbeddingGateway,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._embedder = embedder
        if session_factory is None:
            from web3_insight.db.engine import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory

    async def insert(self, content: str, metadata: dict | None = None) -> int:
        ids = await self.insert_batch([NewItem(content=content, metadata=metadata or {})])
        return ids[0]

    async def insert_batch(self, items: Sequence[NewItem]) -> list[int]:
        if not items:
            raise InputError("At least one item is required")
        _check_contents([item.content for item in items])

        embeddings = await self._embedder.embed_batch([item.content for item in items])

        try:
            async with self._session_factory() as session:
                rows = [
                    KnowledgeItem(
                        content=item.content,
                        metadata_=item.metadata or {},
                        embedding=embedding,
                    )
                    for item, embedding in zip(items, embeddings, strict=True)
                ]
                session.add_all(rows)
                # Flush assigns ids; commit makes the whole batch visible at once
                await session.flush()
                ids = [row.id for row in rows]
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"Failed to store {len(items)} item(s): {e}") from e

        logger.info("Stored %d item(s) in pgvector (ids=%s)", len(ids), ids)
        return ids

    async def search(
        self,
        vector: list[float],
        min_similarity: float,
        limit: int,
        filters: Sequence[FilterClause] = (),
    ) -> list[SearchResult]:
        stmt = build_search_statement(vector, min_similarity, limit, filters)

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"Similarity search failed: {e}") from e

        logger.debug(
            "pgvector search returned %d rows (limit=%d, min_similarity=%.2f, filters=%d)",
            len(rows), limit, min_similarity, len(filters),
        )

        return [
            SearchResult(
                id=item.id,
                content=item.content,
                similarity=_clamp_similarity(distance),
                metadata=item.metadata_ or {},
            )
            for item, distance in rows
        ]

    async def delete(self, item_id: int) -> int | None:
        stmt = (
            delete(KnowledgeItem)
            .where(KnowledgeItem.id == item_id)
            .returning(KnowledgeItem.id)
        )
        try:
            async with self._session_factory() as session:
                deleted = (await session.execute(stmt)).scalar_one_or_none()
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"Failed to delete item {item_id}: {e}") from e

        if deleted is None:
            logger.info("Delete requested for missing item id=%d", item_id)
        return deleted

    async def distinct_metadata_values(self, key: str) -> list[str]:
        if not is_valid_metadata_key(key):
            raise InputError(f"Invalid metadata key name: {key!r}")

        value = KnowledgeItem.metadata_[key].astext
        # ORDER BY the label: DISTINCT needs it to match the select list
        column = value.label("metadata_value")
        stmt = select(column).distinct().where(value.is_not(None)).order_by(column)

        try:
            async with self._session_factory() as session:
                return list((await session.execute(stmt)).scalars().all())
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"Failed to read metadata values for '{key}': {e}") from e

    async def list_items(self, limit: int, offset: int = 0) -> list[StoredItemView]:
        stmt = (
            select(
                KnowledgeItem.id,
                KnowledgeItem.content,
                KnowledgeItem.metadata_,
                KnowledgeItem.created_at,
            )
            .order_by(KnowledgeItem.created_at.desc(), KnowledgeItem.id.desc())
            .offset(offset)
            .limit(limit)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"Failed to list items: {e}") from e

        return [
            StoredItemView(id=row.id, content=row.content, metadata=row.metadata_ or {},
                           created_at=row.created_at)
            for row in rows
        ]

    async def count(self) -> int:
        try:
            async with self._session_factory() as session:
                total = await session.scalar(select(func.count()).select_from(KnowledgeItem))
        except (SQLAlchemyError, OSError) as e:
            raise StorageError(f"Failed to count items: {e}") from e
        return int(total or 0)


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------

_METADATA_FIELD = "metadata_json"
_CREATED_FIELD = "created_at"


class ChromaVectorIndex:
    """
    ChromaDB-backed index.

    Chroma metadata values must be flat scalars, so the item's metadata is
    stored whole as a JSON string and filters are evaluated in Python with
    the same text semantics as the pgvector backend.

    Ids are integers stored as strings, allocated as one past the highest
    id in the collection. Allocation and insert happen under a lock in the
    worker thread, so concurrent inserts in one process never collide.
    Known limitation: deleting the highest id and then restarting the
    process lets that id be handed out again.

    Supports in-process mode (default, dev and tests) and client/server
    mode when CHROMA_URL is set.
    """

    def __init__(
        self,
        embedder: EmbeddingGateway,
        client: Any | None = None,
        collection_name: str | None = None,
    ) -> None:
        self._embedder = embedder
        if client is None:
            if settings.chroma_url:
                client = chromadb.HttpClient(host=settings.chroma_url)
            else:
                client = chromadb.Client()

        # Cosine distance to match pgvector's vector_cosine_ops. Embeddings
        # always come from the gateway, so Chroma gets no embedding function.
        self._collection = client.get_or_create_collection(
            name=collection_name or settings.chroma_collection,
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )
        self._lock = threading.Lock()
        self._high_water: int | None = None

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    async def insert(self, content: str, metadata: dict | None = None) -> int:
        ids = await self.insert_batch([NewItem(content=content, metadata=metadata or {})])
        return ids[0]

    async def insert_batch(self, items: Sequence[NewItem]) -> list[int]:
        if not items:
            raise InputError("At least one item is required")
        _check_contents([item.content for item in items])

        embeddings = await self._embedder.embed_batch([item.content for item in items])
        created_at = datetime.now(timezone.utc).isoformat()

        def _sync_insert() -> list[int]:
            with self._lock:
                ids = self._allocate_ids(len(items))
                # One add() call: Chroma validates the whole batch before writing
                self._collection.add(
                    ids=[str(i) for i in ids],
                    documents=[item.content for item in items],
                    embeddings=embeddings,
                    metadatas=[
                        {
                            _METADATA_FIELD: json.dumps(item.metadata or {}),
                            _CREATED_FIELD: created_at,
                        }
                        for item in items
                    ],
                )
                return ids

        ids = await self._run(_sync_insert, "store items")
        logger.info("Stored %d item(s) in ChromaDB (ids=%s)", len(ids), ids)
        return ids

    async def delete(self, item_id: int) -> int | None:
        def _sync_delete() -> int | None:
            found = self._collection.get(ids=[str(item_id)], include=[])
            if not found["ids"]:
                return None
            self._collection.delete(ids=[str(item_id)])
            return item_id

        deleted = await self._run(_sync_delete, f"delete item {item_id}")
        if deleted is None:
            logger.info("Delete requested for missing item id=%d", item_id)
        return deleted

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def search(
        self,
        vector: list[float],
        min_similarity: float,
        limit: int,
        filters: Sequence[FilterClause] = (),
    ) -> list[SearchResult]:
        clauses = list(filters)

        def _sync_search() -> list[SearchResult]:
            total = self._collection.count()
            if total == 0:
                return []

            # Filters run in Python, so a filtered search ranks every item
            n_results = total if clauses else min(limit, total)
            raw = self._collection.query(
                query_embeddings=[vector],
                n_results=n_results,
                include=["documents", "metadatas", "distances"],
            )

            hits: list[SearchResult] = []
            for chroma_id, document, meta, distance in zip(
                raw["ids"][0],
                raw["documents"][0],
                raw["metadatas"][0],
                raw["distances"][0],
            ):
                metadata = _decode_metadata(meta)
                if not matches_all(clauses, metadata):
                    continue
                similarity = _clamp_similarity(distance)
                if similarity < min_similarity:
                    continue
                hits.append(SearchResult(
                    id=int(chroma_id),
                    content=document or "",
                    similarity=similarity,
                    metadata=metadata,
                ))

            hits.sort(key=lambda hit: (-hit.similarity, hit.id))
            return hits[:limit]

        results = await self._run(_sync_search, "search")
        logger.debug(
            "ChromaDB search returned %d results (limit=%d, min_similarity=%.2f, filters=%d)",
            len(results), limit, min_similarity, len(clauses),
        )
        return results

    async def distinct_metadata_values(self, key: str) -> list[str]:
        if not is_valid_metadata_key(key):
            raise InputError(f"Invalid metadata key name: {key!r}")

        def _sync_distinct() -> list[str]:
            raw = self._collection.get(include=["metadatas"])
            values = {
                metadata_text(_decode_metadata(meta).get(key))
                for meta in raw["metadatas"] or []
            }
            values.discard(None)
            return sorted(values)

        return await self._run(_sync_distinct, f"read metadata values for '{key}'")

    async def list_items(self, limit: int, offset: int = 0) -> list[StoredItemView]:
        def _sync_list() -> list[StoredItemView]:
            raw = self._collection.get(include=["documents", "metadatas"])
            views = []
            for chroma_id, document, meta in zip(
                raw["ids"], raw["documents"], raw["metadatas"]
            ):
                created = (meta or {}).get(_CREATED_FIELD)
                views.append(StoredItemView(
                    id=int(chroma_id),
                    content=document or "",
                    metadata=_decode_metadata(meta),
                    created_at=datetime.fromisoformat(created) if created else None,
                ))
            views.sort(key=lambda view: view.id, reverse=True)
            return views[offset : offset + limit]

        return await self._run(_sync_list, "list items")

    async def count(self) -> int:
        return await self._run(self._collection.count, "count items")

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    def _allocate_ids(self, n: int) -> list[int]:
        """Reserve `n` consecutive ids. Caller holds self._lock."""
        if self._high_water is None:
            existing = self._collection.get(include=[])["ids"]
            self._high_water = max(
                (int(i) for i in existing if i.isdigit()), default=0,
            )
        start = self._high_water + 1
        self._high_water += n
        return list(range(start, start + n))

    async def _run(self, fn, action: str):
        """Run a sync Chroma call in a worker thread, wrapping store failures."""
        try:
            return await asyncio.to_thread(fn)
        except (ChromaError, httpx.HTTPError, OSError) as e:
            raise StorageError(f"ChromaDB failed to {action}: {e}") from e


def _decode_metadata(meta: dict | None) -> dict:
    if not meta or _METADATA_FIELD not in meta:
        return {}
    return json.loads(meta[_METADATA_FIELD])


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_similarity_index(
    embedder: EmbeddingGateway,
    override_type: str | None = None,
) -> PgVectorIndex | ChromaVectorIndex:
    """
    Return the configured index backend.

    Reads `vectorstore_type` from settings:
    - "pgvector" → PgVectorIndex (default)
    - "chroma" → ChromaVectorIndex
    """
    store_type = override_type or settings.vectorstore_type

    if store_type == "chroma":
        logger.info("Using ChromaDB similarity index")
        return ChromaVectorIndex(embedder)

    logger.info("Using pgvector similarity index")
    return PgVectorIndex(embedder)
