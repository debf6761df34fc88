#!/usr/bin/env python3
"""
Import knowledge documents from a JSON file into the similarity index.

The file holds an array of documents:

    [
        {"content": "Ethereum is ...", "metadata": {"title": "...", "source": "..."}},
        ...
    ]

Every entry is validated first; nothing is imported if any entry is
invalid. The schema is created if missing, then all documents are embedded
in one batch and stored in one transaction.

Usage:
    python scripts/import_documents.py [path/to/documents.json]

Default path: data/documents.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from web3_insight.config import settings
from web3_insight.errors import Web3InsightError
from web3_insight.models.requests import DocumentRequest
from web3_insight.services.embedder import EmbeddingGateway
from web3_insight.services.vectorstore import NewItem, get_similarity_index

DEFAULT_PATH = Path(__file__).resolve().parent.parent / "data" / "documents.json"

logger = logging.getLogger("import_documents")


def load_documents(path: Path) -> list[DocumentRequest]:
    """
    Read and validate the document file.

    Raises:
        ValueError: Unreadable file, invalid JSON, or any invalid entry.
            The message lists every problem found.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ValueError(f"File not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(raw, list):
        raise ValueError("JSON file must contain an array of documents")
    if not raw:
        raise ValueError("JSON file is empty")

    documents: list[DocumentRequest] = []
    errors: list[str] = []
    for position, entry in enumerate(raw, start=1):
        try:
            documents.append(DocumentRequest.model_validate(entry))
        except ValidationError as e:
            for err in e.errors():
                msg = str(err["msg"]).removeprefix("Value error, ")
                errors.append(f"Document {position}: {msg}")

    if errors:
        raise ValueError("Validation errors:\n  - " + "\n  - ".join(errors))
    return documents


async def import_documents(path: Path) -> list[int]:
    documents = load_documents(path)
    logger.info("Found %d document(s) to import from %s", len(documents), path)

    use_pgvector = settings.vectorstore_type == "pgvector"
    if use_pgvector:
        from web3_insight.db.engine import dispose_engine, init_database

    try:
        if use_pgvector:
            await init_database()
        index = get_similarity_index(EmbeddingGateway(settings))
        return await index.insert_batch(
            [NewItem(content=doc.content, metadata=doc.metadata) for doc in documents]
        )
    finally:
        if use_pgvector:
            await dispose_engine()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("path", nargs="?", type=Path, default=DEFAULT_PATH)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    try:
        ids = asyncio.run(import_documents(args.path))
    except (ValueError, Web3InsightError) as e:
        logger.error("%s", e)
        return 1

    logger.info("Import complete: %d document(s), ids=%s", len(ids), ids)
    return 0


if __name__ == "__main__":
    sys.exit(main())
