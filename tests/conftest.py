import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config.database import DatabaseConfig
from config.settings import AppConfig, LoggingConfig, WatchConfig
from server.file_handlers import register_file
from server.files_api import create_app
from server.watcher import Watcher, WatcherOptions
from services.shared.incremental import IncrementalProcessor
from services.shared.repository import FilesRepository


@pytest.fixture
def source_root(tmp_path):
    """Directory that stored source locators resolve against."""
    root = tmp_path / "sources"
    root.mkdir()
    return root


@pytest.fixture
def write_source(source_root):
    """Write ``text`` to ``relative`` under the source root and return the path."""
    def _write(relative: str, text: str) -> Path:
        path = source_root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path
    return _write


@pytest.fixture
def database_config(tmp_path):
    return DatabaseConfig(url=f"sqlite:///{tmp_path / 'docsync-test.db'}")


@pytest.fixture
async def repository(database_config):
    repo = FilesRepository.from_config(database_config)
    await repo.initialize()
    yield repo
    await repo.close()


@pytest.fixture
def processor(repository):
    return IncrementalProcessor(repository)


@pytest.fixture
async def watcher(repository, processor):
    w = Watcher(repository, processor)
    yield w
    w.stop()


@pytest.fixture
def watch_options(source_root):
    return WatcherOptions(interval_seconds=60, root_path=str(source_root), run_on_start=False)


@pytest.fixture
def register(repository, source_root):
    """Register a source file through the same path the API uses."""
    async def _register(relative: str, name=None):
        return await register_file(repository, relative, str(source_root), name=name)
    return _register


@pytest.fixture
def app_config(tmp_path, source_root):
    return AppConfig(
        database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'docsync-api.db'}"),
        watch=WatchConfig(root_path=str(source_root), interval_seconds=60, run_on_start=False),
        logging=LoggingConfig(level=os.getenv("TEST_LOG_LEVEL", "WARNING")),
    )


@pytest.fixture
def client(app_config):
    """TestClient bound to one event loop for the whole test."""
    app = create_app(app_config)
    with TestClient(app) as test_client:
        yield test_client
