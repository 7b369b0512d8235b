"""
Test configuration and fixtures for the sync engine tests.

Required settings are set in the environment before anything imports
relay.core.config (the module builds a global Settings instance).
"""
import os

os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("ENVIRONMENT", "test")

from unittest.mock import AsyncMock

import pytest

from relay.core.config import Settings
from relay.core.retry import RetryExecutor
from relay.services.sync.cursors import CursorStore, JsonFileCursorBackend
from relay.services.sync.sync_log import SyncLogger

from tests.fakes import InMemoryItemStore, InMemoryUserStore, make_user


@pytest.fixture
def config(tmp_path):
    """Settings with courtesy pauses disabled and a temp cursor file."""
    return Settings(
        supabase_url="https://test-project.supabase.co",
        supabase_service_key="test-service-key",
        environment="test",
        google_client_id="client-id",
        google_client_secret="client-secret",
        chat_page_pause_seconds=0,
        mail_detail_pause_seconds=0,
        mail_page_pause_seconds=0,
        cursor_file_path=str(tmp_path / "cursors.json"),
    )


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
def retry(no_sleep):
    return RetryExecutor(max_attempts=3, base_delay=1.0, sleep=no_sleep)


@pytest.fixture
def item_store():
    return InMemoryItemStore()


@pytest.fixture
def user_store():
    return InMemoryUserStore()


@pytest.fixture
def cursors(config, item_store):
    return CursorStore(JsonFileCursorBackend(config.cursor_file_path), item_store)


@pytest.fixture
def sync_logger(user_store):
    return SyncLogger(user_store)


@pytest.fixture
def user():
    return make_user()
