"""Tests for the command-line entry point."""

import os
from unittest.mock import MagicMock, patch

import pytest

from notes_ai_server import main as entry


@pytest.fixture
def environ():
    with patch.dict(os.environ, {}, clear=True):
        yield os.environ


class TestMain:
    def test_defaults_serve_on_port_4000(self, environ):
        with patch.object(entry.uvicorn, "run") as run:
            entry.main([])

        assert run.call_args.kwargs == {"host": "0.0.0.0", "port": 4000}
        assert "AI_ENGINE" not in environ
        assert "DATABASE_URL" not in environ

    def test_flags_override_environment(self, environ):
        with patch.object(entry.uvicorn, "run") as run:
            entry.main(
                [
                    "--engine", "anthropic",
                    "--database-url", "postgresql://db/notes",
                    "--diff-design", "3",
                    "--log-level", "info",
                    "--port", "5000",
                ]
            )

        assert environ["AI_ENGINE"] == "anthropic"
        assert environ["DATABASE_URL"] == "postgresql://db/notes"
        assert environ["DIFF_DESIGN"] == "3"
        assert environ["LOG_LEVEL"] == "INFO"
        assert run.call_args.kwargs["port"] == 5000

    def test_unknown_diff_design_rejected(self, environ):
        with pytest.raises(SystemExit):
            entry.main(["--diff-design", "4"])

    def test_reindex_does_not_serve(self, environ):
        with patch.object(entry, "reindex") as reindex, patch.object(entry.uvicorn, "run") as run:
            entry.main(["--reindex", "--database-url", "postgresql://db/notes"])

        reindex.assert_called_once_with()
        run.assert_not_called()
        assert environ["DATABASE_URL"] == "postgresql://db/notes"


class TestReindex:
    def test_migrates_then_backfills(self):
        store = MagicMock()
        store.__enter__.return_value = store
        store.backfill_searchable_text.return_value = 7

        with patch("notes_ai_server.notes.database.PageStore", return_value=store):
            assert entry.reindex() == 7

        store.run_migrations.assert_called_once()
        store.backfill_searchable_text.assert_called_once_with()
        store.__exit__.assert_called_once()
