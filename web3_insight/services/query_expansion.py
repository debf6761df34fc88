# =============================================================================
# Query Expansion — Paraphrase Variants for Retrieval
# =============================================================================
#
# Short questions embed poorly: "DeFi?" lands far from a stored paragraph
# that explains DeFi. Searching a few templated paraphrases and keeping the
# best match per item recovers those hits.
#
#   expand_query("What is DeFi?", 3)
#   → ["What is DeFi?", "What is What is DeFi?", "Explain What is DeFi"]
#
# Deterministic and local: no model call, no I/O.
# =============================================================================

from __future__ import annotations

import re

from web3_insight.errors import InputError

_TEMPLATES = (
    "What is {q}?",
    "Explain {q}",
    "Detailed overview of {q}",
    "How does {q} work?",
    "Key facts about {q}",
)

_INTERROGATIVE_PREFIXES = ("what is ", "who is ", "tell me about ")

_TRAILING_QUESTION_MARKS = re.compile(r"\?+$")


def expand_query(query: str, max_variants: int) -> list[str]:
    """
    Build up to `max_variants` distinct search strings for `query`.

    The trimmed query always comes first. Templates are applied to the query
    with trailing question marks removed, in a fixed order. When the query
    opens with "what is", "who is" or "tell me about" and room remains, the
    question-mark-free form is added as a declarative variant.

    Raises:
        InputError: If the query is empty or max_variants < 1.
    """
    if max_variants < 1:
        raise InputError(f"max_variants must be at least 1 (got {max_variants})")

    seed = (query or "").strip()
    if not seed:
        raise InputError("Query cannot be empty")

    normalized = _TRAILING_QUESTION_MARKS.sub("", seed).strip()
    variants = [seed]

    # Nothing left to paraphrase once the question marks are gone ("???")
    templates = _TEMPLATES if normalized else ()
    for template in templates:
        if len(variants) >= max_variants:
            break
        candidate = template.format(q=normalized)
        if candidate not in variants:
            variants.append(candidate)

    if (
        normalized.lower().startswith(_INTERROGATIVE_PREFIXES)
        and len(variants) < max_variants
        and normalized not in variants
    ):
        variants.append(normalized)

    return variants[:max_variants]
