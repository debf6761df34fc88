# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# One table holds the whole knowledge base:
#
# ┌──────────────────────────────────────┐
# │  document_embeddings                 │
# ├──────────────────────────────────────┤
# │ id (PK, serial)                      │
# │ content (text, not null)             │
# │ metadata (jsonb)                     │
# │ embedding (vector(N))                │
# │ created_at                           │
# │ updated_at                           │
# └──────────────────────────────────────┘
#
# Content and embedding are written once at insertion and never updated;
# rows are only inserted, read, and deleted.
#
# The Python attribute is `metadata_` (trailing underscore) because
# `metadata` is reserved on SQLAlchemy declarative classes; the column name
# in PostgreSQL is still `metadata`.
# =============================================================================

from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import DateTime, Index, Integer, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from web3_insight.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class KnowledgeItem(Base):
    """
    A unit of retrievable knowledge: text, open metadata, and its embedding.

    Metadata keys used in search filters must be plain identifiers
    (`[a-zA-Z_][a-zA-Z0-9_]*`); other keys are stored but cannot be filtered on.
    """

    __tablename__ = "document_embeddings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    content: Mapped[str] = mapped_column(Text, nullable=False)

    # Free-form attribution and filter data: title, url, source, ...
    metadata_: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONB,
        nullable=True,
        default=dict,
    )

    # Computed from `content` by the embedding gateway at insertion time
    embedding: Mapped[list[float] | None] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<KnowledgeItem(id={self.id}, content='{self.content[:40]}')>"


# =============================================================================
# Indexes
# =============================================================================
#
# HNSW over the embedding with `vector_cosine_ops`, so ORDER BY
# `embedding <=> :query` is answered approximately in sublinear time.
#
# GIN over the metadata for containment / key-existence filters.
# =============================================================================

knowledge_embedding_idx = Index(
    "document_embeddings_embedding_idx",
    KnowledgeItem.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

knowledge_metadata_idx = Index(
    "document_embeddings_metadata_idx",
    KnowledgeItem.metadata_,
    postgresql_using="gin",
)
