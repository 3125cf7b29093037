"""Shared fixtures for observer tests."""

import os
import tempfile

import pytest

from observer.indexer.projection_store import ProjectionStore
from observer.ledger.memory import InMemoryLedger


CONTRACT = "0x9fe46736679d2d9a65f0992f2272de9f3c7fa6e0"


@pytest.fixture
def db_path():
    """Temporary SQLite file, removed after the test."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            os.unlink(path + suffix)


@pytest.fixture
def store(db_path):
    store = ProjectionStore(db_path)
    yield store
    store.close()


@pytest.fixture
def ledger():
    return InMemoryLedger(contract_address=CONTRACT)
