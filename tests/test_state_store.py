"""
Tests for state blob persistence and the per-deployment lock registry.
"""

import threading
import time
import uuid

import pytest

from iacstudio.errors import NotFoundError, StateStoreError
from iacstudio.provisioning.locks import DeploymentLocks
from iacstudio.provisioning.state import CLEARED_STATE, DatabaseStateStore, InMemoryStateStore


@pytest.fixture(params=["memory", "database"])
def store_and_id(request, make_deployment, deploy_repo):
    if request.param == "memory":
        return InMemoryStateStore(), str(uuid.uuid4())
    deployment = make_deployment()
    return DatabaseStateStore(deploy_repo), deployment.id


class TestStateStore:
    """Behaviour shared by every StateStore implementation."""

    def test_never_applied(self, store_and_id):
        store, deployment_id = store_and_id
        assert store.get_state(deployment_id) is None
        assert store.is_cleared(deployment_id) is False

    def test_round_trip_is_byte_exact(self, store_and_id):
        store, deployment_id = store_and_id
        blob = b'{"version": 4,\n "serial": 3, "lineage": "\xc3\xa9"}\x00'

        store.save_state(deployment_id, blob)
        assert store.get_state(deployment_id) == blob

    def test_last_write_wins(self, store_and_id):
        store, deployment_id = store_and_id
        store.save_state(deployment_id, b'{"serial": 1}')
        store.save_state(deployment_id, b'{"serial": 2}')
        assert store.get_state(deployment_id) == b'{"serial": 2}'

    def test_clear(self, store_and_id):
        store, deployment_id = store_and_id
        store.save_state(deployment_id, b'{"serial": 1}')
        store.save_state(deployment_id, None)

        assert store.get_state(deployment_id) is None
        assert store.is_cleared(deployment_id) is True

    def test_lock_hooks_are_no_ops(self, store_and_id):
        store, deployment_id = store_and_id
        store.lock_state(deployment_id)
        store.unlock_state(deployment_id)
        store.lock_state(deployment_id)


class TestDatabaseStateStore:
    """Tests specific to the deployments-table store."""

    def test_cleared_sentinel_stored(self, make_deployment, deploy_repo):
        deployment = make_deployment()
        DatabaseStateStore(deploy_repo).save_state(deployment.id, None)
        assert deploy_repo.get_state_raw(deployment.id) == CLEARED_STATE

    def test_unknown_deployment(self, deploy_repo):
        store = DatabaseStateStore(deploy_repo)
        with pytest.raises(NotFoundError):
            store.save_state(str(uuid.uuid4()), b"{}")
        with pytest.raises(NotFoundError):
            store.get_state(str(uuid.uuid4()))

    def test_repository_failure_wrapped(self, deploy_repo, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(deploy_repo, "save_state", broken)
        with pytest.raises(StateStoreError, match="disk full"):
            DatabaseStateStore(deploy_repo).save_state("d1", b"{}")


class TestDeploymentLocks:
    """Tests for per-deployment mutual exclusion."""

    def test_serializes_same_deployment(self):
        locks = DeploymentLocks()
        active = []
        overlaps = []

        def worker():
            with locks.hold("d1"):
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
                time.sleep(0.05)
                active.pop()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []
        assert len(locks) == 0

    def test_independent_deployments(self):
        locks = DeploymentLocks()
        with locks.hold("d1"):
            assert locks.is_locked("d1")
            with locks.hold("d2"):
                assert locks.is_locked("d2")
        assert not locks.is_locked("d1")

    def test_entries_dropped_after_release(self):
        locks = DeploymentLocks()
        for _ in range(100):
            with locks.hold(uuid.uuid4()):
                assert len(locks) == 1
        assert len(locks) == 0

    def test_entry_dropped_when_block_raises(self):
        locks = DeploymentLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("d1"):
                raise RuntimeError("boom")
        assert len(locks) == 0
        assert not locks.is_locked("d1")
