# =============================================================================
# Database Package
# =============================================================================
# Async SQLAlchemy engine, session factory, and the knowledge-base ORM model.
#
# Key exports:
#   - async_session_factory: per-operation AsyncSession factory
#   - init_database: create the pgvector extension and tables
#   - KnowledgeItem: the document_embeddings table
# =============================================================================
