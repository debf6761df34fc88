# =============================================================================
# Metadata Filters — Closed Variant + Wire Parsing
# =============================================================================
#
# Wire shape (from ChatRequest.filters):
#
#   {"source": "CoinDesk"}                        → Equals
#   {"source": {"$in": ["CoinDesk", "Benzinga"]}} → In
#   {"title": {"$like": "%Ethereum%"}}            → Like
#   {"title": {"$ilike": "%ethereum%"}}           → ILike
#   {"url": {"$exists": true}}                    → Exists
#
# parse_metadata_filter() converts that JSON into FilterClause values at the
# request boundary. Anything it cannot convert (bad key, nested value,
# unknown operator, several operators in one object, empty $in) is dropped
# with a warning and never raised: a half-valid filter still runs as a
# search with the valid clauses only.
#
# Each clause knows how to (a) compile to a SQLAlchemy expression over the
# JSONB metadata column, used by PgVectorIndex, and (b) evaluate against a
# plain dict, used by ChromaVectorIndex. Both read the metadata value as
# text, matching PostgreSQL's `metadata->>'key'`.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Union

from sqlalchemy import ColumnElement

logger = logging.getLogger(__name__)

METADATA_KEY_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

Scalar = Union[str, int, float, bool]


def is_valid_metadata_key(key: object) -> bool:
    """True if `key` can be used in a filter or distinct-values lookup."""
    return isinstance(key, str) and bool(METADATA_KEY_PATTERN.match(key))


def metadata_text(value: Any) -> str | None:
    """
    Text form of a metadata value, as PostgreSQL's `->>` operator renders it.

    None stays None; booleans become "true"/"false"; objects and arrays are
    rendered as JSON.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _like_to_regex(pattern: str, case_sensitive: bool) -> re.Pattern[str]:
    """Translate a SQL LIKE pattern (`%`, `_`, backslash escapes) to a regex."""
    parts: list[str] = []
    escaped = False
    for char in pattern:
        if escaped:
            parts.append(re.escape(char))
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    if escaped:
        parts.append(re.escape("\\"))
    flags = re.DOTALL if case_sensitive else re.DOTALL | re.IGNORECASE
    return re.compile("".join(parts) + r"\Z", flags)


# ---------------------------------------------------------------------------
# Filter Clauses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Equals:
    key: str
    value: Scalar

    def to_sql(self, column: Any) -> ColumnElement[bool]:
        return column[self.key].astext == metadata_text(self.value)

    def matches(self, metadata: dict) -> bool:
        return metadata_text(metadata.get(self.key)) == metadata_text(self.value)


@dataclass(frozen=True)
class In:
    key: str
    values: tuple[Scalar, ...]

    def to_sql(self, column: Any) -> ColumnElement[bool]:
        return column[self.key].astext.in_([metadata_text(v) for v in self.values])

    def matches(self, metadata: dict) -> bool:
        text = metadata_text(metadata.get(self.key))
        return text is not None and text in {metadata_text(v) for v in self.values}


@dataclass(frozen=True)
class Like:
    key: str
    pattern: str

    def to_sql(self, column: Any) -> ColumnElement[bool]:
        return column[self.key].astext.like(self.pattern)

    def matches(self, metadata: dict) -> bool:
        text = metadata_text(metadata.get(self.key))
        return text is not None and bool(
            _like_to_regex(self.pattern, case_sensitive=True).match(text)
        )


@dataclass(frozen=True)
class ILike:
    key: str
    pattern: str

    def to_sql(self, column: Any) -> ColumnElement[bool]:
        return column[self.key].astext.ilike(self.pattern)

    def matches(self, metadata: dict) -> bool:
        text = metadata_text(metadata.get(self.key))
        return text is not None and bool(
            _like_to_regex(self.pattern, case_sensitive=False).match(text)
        )


@dataclass(frozen=True)
class Exists:
    key: str
    present: bool

    def to_sql(self, column: Any) -> ColumnElement[bool]:
        has_key = column.has_key(self.key)
        return has_key if self.present else ~has_key

    def matches(self, metadata: dict) -> bool:
        return (self.key in metadata) == self.present


FilterClause = Union[Equals, In, Like, ILike, Exists]


def matches_all(clauses: list[FilterClause], metadata: dict | None) -> bool:
    """Conjunction of all clauses over one metadata dict."""
    data = metadata or {}
    return all(clause.matches(data) for clause in clauses)


# ---------------------------------------------------------------------------
# Wire → Variant
# ---------------------------------------------------------------------------


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def _parse_operator(key: str, spec: dict) -> FilterClause | None:
    if len(spec) != 1:
        logger.warning(
            "Metadata filter for '%s' must have exactly one operator, got %s. "
            "Skipping filter.",
            key, sorted(spec),
        )
        return None

    op, operand = next(iter(spec.items()))

    if op == "$in":
        if not isinstance(operand, list) or not operand:
            logger.warning("Empty or non-list $in for '%s'. Skipping filter.", key)
            return None
        if not all(_is_scalar(v) for v in operand):
            logger.warning("Non-scalar $in values for '%s'. Skipping filter.", key)
            return None
        return In(key, tuple(operand))

    if op in ("$like", "$ilike"):
        if not isinstance(operand, str):
            logger.warning("Non-string %s pattern for '%s'. Skipping filter.", op, key)
            return None
        return Like(key, operand) if op == "$like" else ILike(key, operand)

    if op == "$exists":
        if not isinstance(operand, bool):
            logger.warning("Non-boolean $exists for '%s'. Skipping filter.", key)
            return None
        return Exists(key, operand)

    logger.warning("Unknown metadata filter operator '%s' for '%s'. Skipping.", op, key)
    return None


def parse_metadata_filter(raw: dict[str, Any] | None) -> list[FilterClause]:
    """
    Convert a wire-format filter mapping into validated clauses.

    Never raises: invalid entries are logged and dropped. None or an empty
    mapping yields no clauses (unfiltered search).
    """
    if not raw:
        return []
    if not isinstance(raw, dict):
        logger.warning("Metadata filter must be an object, got %s", type(raw).__name__)
        return []

    clauses: list[FilterClause] = []
    for key, value in raw.items():
        if value is None:
            continue

        if not is_valid_metadata_key(key):
            logger.warning("Invalid metadata key name: %r. Skipping filter.", key)
            continue

        if _is_scalar(value):
            clauses.append(Equals(key, value))
        elif isinstance(value, dict):
            clause = _parse_operator(key, value)
            if clause is not None:
                clauses.append(clause)
        else:
            logger.warning(
                "Unsupported filter value for '%s' (%s). Skipping filter.",
                key, type(value).__name__,
            )

    return clauses
