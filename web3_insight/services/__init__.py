# =============================================================================
# Services Package — Business Logic
# =============================================================================
# Contains the core business logic, separated from API handlers:
#   - embedder.py: text → vectors via any OpenAI-compatible endpoint
#   - vectorstore.py: pluggable similarity index (pgvector, Chroma)
#   - filters.py: metadata filter clauses and their wire parser
#   - query_expansion.py: templated paraphrases of the user question
#   - retrieval.py: concurrent multi-variant search, max-similarity fusion
#   - market_data.py: CoinGecko / DeFiLlama feeds with a TTL cache
#   - context.py: prompt-context assembly and source attributions
#   - llm.py: multi-provider completion gateway (Anthropic, OpenAI-compatible)
# =============================================================================
