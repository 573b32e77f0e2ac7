"""Test configuration and fixtures."""

import pytest

from container_layer_sizes.storage.history import HistoryStore


@pytest.fixture
def storage_dir(tmp_path):
    """Local OCI layout images are pulled into."""
    return tmp_path / "storage"


@pytest.fixture
def scratch_root(tmp_path):
    """Parent of the task scratch directories."""
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def store(tmp_path):
    """History store backed by a fresh SQLite database."""
    history_store = HistoryStore(tmp_path / "database.sqlite3")
    yield history_store
    history_store.close()
