"""Common test fixtures for Flowstate."""

import tempfile
from pathlib import Path

import pytest

from tests.fakes import FakeClock
from flowstate.config import config
from flowstate import observability
from flowstate.storage.database import Database
from flowstate.storage.fts_index import SearchIndex
from flowstate.storage.note_repository import NoteRepository


@pytest.fixture
def temp_dirs():
    """Create temporary directories for legacy notes and database."""
    with tempfile.TemporaryDirectory() as legacy_dir:
        with tempfile.TemporaryDirectory() as db_dir:
            yield Path(legacy_dir), Path(db_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    legacy_dir, db_dir = temp_dirs
    monkeypatch.setattr(config, "database_path", db_dir / "test_flowstate.sqlite")
    monkeypatch.setattr(config, "legacy_notes_dir", legacy_dir)
    monkeypatch.setattr(config, "log_dir", db_dir / "logs")
    yield config


@pytest.fixture
def database(test_config):
    """A migrated database in a temporary directory."""
    db = Database(test_config.get_db_url())
    db.migrate_schema()
    yield db
    db.close()


@pytest.fixture
def fake_clock():
    """Controllable clock shared by the repository under test."""
    return FakeClock()


@pytest.fixture
def repository(database, fake_clock):
    """A NoteRepository with a fake clock and a short autosave delay."""
    repo = NoteRepository(database, autosave_delay=0.2, clock=fake_clock)
    yield repo
    repo.cancel_auto_save()


@pytest.fixture
def search_index(database):
    """A SearchIndex over the test database."""
    return SearchIndex(database, max_results=50, recent_limit=20)


@pytest.fixture
def legacy_dir(temp_dirs):
    """The (initially empty) legacy import directory."""
    return temp_dirs[0]


@pytest.fixture(autouse=True)
def metrics(monkeypatch):
    """A fresh metrics collector for each test."""
    collector = observability.MetricsCollector()
    monkeypatch.setattr(observability, "metrics", collector)
    return collector
