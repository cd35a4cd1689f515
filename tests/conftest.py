import time

import pytest

from queuectl.db import JsonFileStore, SQLiteStore
from queuectl.locks import FileLockCoordinator, WorkerRegistry
from queuectl.repository import Queue


@pytest.fixture(params=["sqlite", "json"])
def store(request, tmp_path):
    if request.param == "json":
        return JsonFileStore(tmp_path / "default.json")
    return SQLiteStore(tmp_path / "queue.db")


@pytest.fixture
def queue(store):
    return Queue(store)


@pytest.fixture
def locks(tmp_path):
    return FileLockCoordinator(tmp_path / "locks")


@pytest.fixture
def registry(tmp_path):
    return WorkerRegistry(tmp_path / "workers")


def wait_for(predicate, timeout=15.0, interval=0.05):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
