"""
Global test configuration and fixtures for webstarter

Every test gets its own SQLite database file and a freshly built application,
so session cookies, flash messages and migration records never leak between
tests.
"""

import logging
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from webstarter.core.config import Settings, load_settings
from webstarter.db.session import close_db_engine, create_db_engine
from webstarter.main import create_app

ENV_VARS = (
    "HOST",
    "PORT",
    "DATABASE_URL",
    "ENVIRONMENT",
    "SESSION_SECRET",
    "CORS_ALLOWED_ORIGINS",
    "REQUEST_TIMEOUT",
    "LOG_LEVEL",
    "MIGRATIONS_DIR",
)

TEST_SESSION_SECRET = "test-session-secret-for-testing-only"


# ============================================================================
# Test Environment Setup
# ============================================================================

@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the developer's shell environment out of the settings under test"""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Undo setup_logging() calls made by the code under test"""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def make_settings(database_url: str, tmp_path: Path) -> Callable[..., Settings]:
    """Factory for settings pointing at the per-test database, ignoring .env"""

    def _make(**overrides) -> Settings:
        values = {
            "DATABASE_URL": database_url,
            "SESSION_SECRET": TEST_SESSION_SECRET,
            "MIGRATIONS_DIR": str(tmp_path / "migrations"),
        }
        values.update(overrides)
        return load_settings(_env_file=None, **values)

    return _make


@pytest.fixture
def test_settings(make_settings) -> Settings:
    return make_settings()


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def engine(database_url: str) -> Generator[Engine, None, None]:
    """Connected engine for the per-test database"""
    engine = create_db_engine(database_url)
    yield engine
    close_db_engine(engine)


REVISION_SOURCE = '''from webstarter.migrate.sql import run_sql_pair

revision = {name!r}
down_revision = {revises!r}


def upgrade():
    run_sql_pair(__file__, "up")


def downgrade():
    run_sql_pair(__file__, "down")
'''

LATEST = object()


@pytest.fixture
def write_migration(test_settings):
    """
    Write a revision script and its SQL files into MIGRATIONS_DIR.

    Each migration revises the one written before it unless ``revises`` is
    given; ``revises=None`` starts a new root.
    """
    directory = Path(test_settings.MIGRATIONS_DIR)
    chain = []

    def _write(name: str, up: str = "SELECT 1;", down: Optional[str] = "SELECT 1;", revises=LATEST) -> Path:
        if revises is LATEST:
            revises = chain[-1] if chain else None
        directory.mkdir(parents=True, exist_ok=True)
        (directory / f"{name}.py").write_text(REVISION_SOURCE.format(name=name, revises=revises))
        (directory / f"{name}.up.sql").write_text(up)
        if down is not None:
            (directory / f"{name}.down.sql").write_text(down)
        chain.append(name)
        return directory

    return _write


# ============================================================================
# Application Client Fixtures
# ============================================================================

@pytest.fixture
def make_app(engine: Engine, make_settings) -> Callable[..., FastAPI]:
    """Build an application; keyword arguments override settings"""

    def _make(**overrides) -> FastAPI:
        return create_app(make_settings(**overrides), engine)

    return _make


@pytest.fixture
def app(make_app) -> FastAPI:
    return make_app()


@pytest.fixture
def client(app: FastAPI) -> Generator[TestClient, None, None]:
    """Create FastAPI test client"""
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "unit: fast tests that need no running server")
    config.addinivalue_line("markers", "integration: tests that drive the whole application")
    config.addinivalue_line("markers", "database: mark test as needing a database")
    config.addinivalue_line("markers", "critical: mark test as critical path functionality")
    config.addinivalue_line("markers", "slow: mark test as waiting on real timers or sockets")


def pytest_collection_modifyitems(config, items):
    """Add markers based on file location"""
    for item in items:
        path = str(item.fspath)
        if "integration" in path:
            item.add_marker(pytest.mark.integration)
        elif "unit" in path:
            item.add_marker(pytest.mark.unit)
