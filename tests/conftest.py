"""Common test fixtures for the Page Vault MCP server."""

import pytest

from pagevault_mcp.config import config
from pagevault_mcp.models.db_models import get_session_factory, init_db
from pagevault_mcp.observability import metrics
from pagevault_mcp.services.vault_service import VaultService
from pagevault_mcp.storage.block_repository import BlockRepository
from pagevault_mcp.storage.page_repository import PageRepository
from pagevault_mcp.storage.tag_repository import TagRepository


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Point the global config at a per-test database (auto-restored)."""
    monkeypatch.setattr(config, "database_path", tmp_path / "vault.sqlite")
    monkeypatch.setattr(config, "in_memory_db", False)
    yield config


@pytest.fixture
def engine(test_config):
    """Engine with the schema created, disposed after the test."""
    engine = init_db()
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def page_repository(session_factory):
    return PageRepository(session_factory)


@pytest.fixture
def block_repository(session_factory):
    return BlockRepository(session_factory)


@pytest.fixture
def tag_repository(session_factory):
    return TagRepository(session_factory)


@pytest.fixture
def vault_service(engine):
    """A VaultService sharing the test engine."""
    return VaultService(engine=engine)


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Keep the global metrics collector isolated between tests."""
    metrics.reset()
    yield
    metrics.reset()

