# =============================================================================
# Unit Tests — Document Import Script
# =============================================================================
#
# scripts/ is not a package, so the script is loaded from its path. The
# database engine functions and the index factory are patched; nothing
# touches PostgreSQL.
# =============================================================================

from __future__ import annotations

import asyncio
import importlib.util
import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_settings
from web3_insight.errors import StorageError

SCRIPT_PATH = Path(__file__).resolve().parent.parent / "scripts" / "import_documents.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("import_documents", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


import_script = _load_script()


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _write(tmp_path: Path, payload) -> Path:
    path = tmp_path / "documents.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


class TestLoadDocuments:
    def test_valid_file(self, tmp_path):
        path = _write(tmp_path, [
            {"content": "Ethereum uses the EVM", "metadata": {"source": "ethereum.org"}},
            {"content": "DeFi is open finance"},
        ])
        documents = import_script.load_documents(path)
        assert [d.content for d in documents] == ["Ethereum uses the EVM", "DeFi is open finance"]
        assert documents[1].metadata == {}

    def test_every_invalid_entry_reported(self, tmp_path):
        path = _write(tmp_path, [{"content": "ok"}, {"content": "  "}, {}])
        with pytest.raises(ValueError) as exc_info:
            import_script.load_documents(path)
        message = str(exc_info.value)
        assert "Document 2" in message
        assert "Document 3" in message

    def test_not_an_array(self, tmp_path):
        with pytest.raises(ValueError, match="array"):
            import_script.load_documents(_write(tmp_path, {"content": "x"}))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValueError, match="File not found"):
            import_script.load_documents(tmp_path / "nope.json")


class TestImportDocuments:
    def test_inserts_all_documents_in_one_batch(self, tmp_path):
        path = _write(tmp_path, [{"content": "Ethereum uses the EVM"}, {"content": "Solana is fast"}])
        index = AsyncMock()
        index.insert_batch.return_value = [1, 2]

        with patch.object(import_script, "settings", make_settings(vectorstore_type="chroma")), \
                patch.object(import_script, "get_similarity_index", return_value=index):
            ids = _run(import_script.import_documents(path))

        assert ids == [1, 2]
        items = index.insert_batch.await_args.args[0]
        assert [item.content for item in items] == ["Ethereum uses the EVM", "Solana is fast"]

    def test_schema_failure_still_disposes_engine(self, tmp_path):
        path = _write(tmp_path, [{"content": "Ethereum uses the EVM"}])
        init = AsyncMock(side_effect=StorageError("db down"))
        dispose = AsyncMock()

        with patch.object(import_script, "settings", make_settings(vectorstore_type="pgvector")), \
                patch("web3_insight.db.engine.init_database", init), \
                patch("web3_insight.db.engine.dispose_engine", dispose), \
                patch.object(import_script, "get_similarity_index") as get_index:
            with pytest.raises(StorageError):
                _run(import_script.import_documents(path))

        dispose.assert_awaited_once()
        get_index.assert_not_called()
