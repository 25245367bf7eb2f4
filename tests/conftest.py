"""Shared fixtures for sync engine tests."""

import pytest

from recipesync.cache import LocalCache, StateStore
from recipesync.remote import MemoryBackend, MemoryRemoteStore
from recipesync.sync import PendingOperationLog, SyncCoordinator


@pytest.fixture
def backend():
    """In-process remote service shared by every user in a test."""
    return MemoryBackend()


@pytest.fixture
def make_coordinator(tmp_path, backend):
    """Factory for coordinators backed by the shared in-memory service.

    Each user gets a home directory under tmp_path; building a second
    coordinator with the same home simulates an app restart.
    """
    created = []

    def make(user="alice", remote=None, home=None, **kwargs):
        home = tmp_path / (home or user)
        remote = remote or MemoryRemoteStore(backend, user)
        state = StateStore(home / "state.db")
        state.connect()
        pending = PendingOperationLog(home / "pending.db")
        pending.connect()
        coordinator = SyncCoordinator(
            remote, LocalCache(home / "cache"), state, pending, **kwargs
        )
        created.append(coordinator)
        return coordinator

    yield make

    for coordinator in created:
        coordinator.pending.close()
        coordinator.state.close()
