# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Defines request/response schemas for the API.
# These are SEPARATE from the database model (web3_insight/db/models.py):
# the API never exposes embedding vectors, and the wire shapes can change
# without a schema migration.
# =============================================================================
