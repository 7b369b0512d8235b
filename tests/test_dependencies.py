"""
Engine wiring from settings.
"""
from unittest.mock import MagicMock

from relay.core.dependencies import build_cursor_backend, build_engine
from relay.services.sync.cursors import JsonFileCursorBackend
from relay.services.sync.database import PostgresCursorBackend
from relay.services.sync.models import Source
from relay.services.sync.orchestration.chat_sync import ChatCollector
from relay.services.sync.orchestration.email_sync import MailCollector


def test_file_backend_is_default(config):
    backend = build_cursor_backend(config)

    assert isinstance(backend, JsonFileCursorBackend)
    assert str(backend.path) == config.cursor_file_path


def test_postgres_backend_when_configured(config):
    config.cursor_backend = "postgres"
    config.database_url = "postgresql://localhost/relay"

    assert isinstance(build_cursor_backend(config), PostgresCursorBackend)


def test_build_engine_wires_both_collectors(config):
    orchestrator = build_engine(MagicMock(), MagicMock(), config=config)

    sources = [source for source, _ in orchestrator.collectors]
    assert sources == [Source.CHAT, Source.GMAIL]
    assert isinstance(orchestrator.collectors[0][1], ChatCollector)
    assert isinstance(orchestrator.collectors[1][1], MailCollector)
    assert orchestrator.is_running is False
