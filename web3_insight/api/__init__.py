# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - chat.py: question answering, whole or as an SSE stream
#   - documents.py: add, list and delete stored knowledge
#   - trends.py: live market overview
#   - deps.py: shared service components for Depends()
# =============================================================================
