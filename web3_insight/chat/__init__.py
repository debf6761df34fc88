# =============================================================================
# Chat Package — Answer Orchestration
# =============================================================================
#   - orchestrator.py: LangGraph preparation graph (retrieve → market
#     context → assemble) plus the streaming and non-streaming answer paths
#   - events.py: the sources/start/chunk/done/error event protocol and its
#     SSE encoding
# =============================================================================
