# =============================================================================
# Error Taxonomy
# =============================================================================
#
# Every failure the core raises on purpose is one of four kinds:
#
#   InputError   : caller-correctable (empty text, bad filter key, ...)
#   ConfigError  : deployment-correctable (missing provider credentials)
#   ProviderError: upstream embedding / LLM / market-data failure
#   StorageError : the persistent vector store is unreachable or failed
#
# The HTTP layer maps these to status codes (see main.py). The chat
# orchestrator degrades retrieval failures of any kind to "no retrieved
# context" and turns completion failures into a terminal error event.
#
# SDK and driver exceptions are wrapped at the gateway boundary with
# `raise ... from e` so the original cause stays on the traceback.
# =============================================================================

from __future__ import annotations


class Web3InsightError(Exception):
    """
    Base class for all expected failures in the service.

    `details` carries caller-facing messages (e.g. one entry per invalid
    request field) and is rendered as the `details` list in error responses.
    """

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or [message]


class InputError(Web3InsightError):
    """Invalid caller input. Rendered as HTTP 400."""


class ConfigError(Web3InsightError):
    """Missing or contradictory deployment configuration."""


class ProviderError(Web3InsightError):
    """An upstream provider call failed or returned malformed data."""


class StorageError(Web3InsightError):
    """The vector store could not complete the operation."""
