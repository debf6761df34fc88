# =============================================================================
# Web3 Insight Chat
# =============================================================================
# A retrieval-augmented chat backend for Web3 / crypto questions. Answers
# combine stored knowledge (pgvector similarity search with query expansion),
# live market data, and an LLM completion streamed back as SSE events.
#
# Package structure:
#   web3_insight/
#   ├── api/          → FastAPI route handlers (chat, documents, trends)
#   ├── chat/         → Stream orchestrator (LangGraph preparation graph)
#   │                    and the SSE event protocol
#   ├── db/           → Async engine, session factory, and ORM model
#   ├── models/       → Pydantic V2 request/response schemas
#   └── services/     → Embedding, similarity index, filters, query
#                        expansion, retrieval fusion, market data,
#                        context assembly, LLM completion
# =============================================================================
