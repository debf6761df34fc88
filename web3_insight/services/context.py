# =============================================================================
# Context Assembler — Prompt Context + Source Attributions
# =============================================================================
#
#   [From stored knowledge]: <snippet 1>
#
#   [From stored knowledge]: <snippet 2>
#
#   <external market text>
#
# Whitespace-only segments are dropped; when nothing is left the result is
# the empty string and the completion gateway sends the bare question.
# =============================================================================

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import asdict, dataclass

from web3_insight.services.vectorstore import SearchResult

STORED_KNOWLEDGE_PREFIX = "[From stored knowledge]: "


@dataclass(frozen=True)
class Attribution:
    """A source shown to the user next to an answer."""

    name: str
    url: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def assemble_context(snippets: Sequence[str], external_text: str | None = None) -> str:
    """Join retrieved snippets and external text into one prompt-context block."""
    knowledge = "\n\n".join(
        f"{STORED_KNOWLEDGE_PREFIX}{snippet}"
        for snippet in snippets
        if snippet and snippet.strip()
    )
    segments = [knowledge, external_text or ""]
    return "\n\n".join(segment for segment in segments if segment.strip())


def build_sources(
    results: Sequence[SearchResult],
    external_sources: Sequence[Attribution] = (),
) -> list[Attribution]:
    """Attributions for retrieved items (title, else source, else a default) then external ones."""
    retrieved = [
        Attribution(
            name=result.metadata.get("title") or result.metadata.get("source") or "Stored Knowledge",
            url=result.metadata.get("url") or "#",
        )
        for result in results
    ]
    return retrieved + list(external_sources)
