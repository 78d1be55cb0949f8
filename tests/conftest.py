import os
import tempfile

import pytest

from actionqueue.scheduling.job_queue import JobQueue
from actionqueue.storage.database import Storage


@pytest.fixture
def temp_db():
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name
    yield db_path
    for path in (db_path, db_path + "-wal", db_path + "-shm"):
        try:
            os.unlink(path)
        except (FileNotFoundError, PermissionError):
            pass  # File might still be locked, will be cleaned up later


@pytest.fixture
def storage(temp_db):
    store = Storage(temp_db)
    yield store
    store.engine.dispose()


@pytest.fixture
def queue(storage):
    return JobQueue(storage)


@pytest.fixture
def home(tmp_path, monkeypatch):
    """Isolated ACTIONQUEUE_HOME so config files never touch the real one."""
    monkeypatch.setenv("ACTIONQUEUE_HOME", str(tmp_path))
    return tmp_path
