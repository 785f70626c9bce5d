"""
Per-deployment mutual exclusion.

Process-local only: separate worker processes rely on the queue not
delivering the same deployment twice at once.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, List

logger = logging.getLogger(__name__)


class DeploymentLocks:
    """
    Registry of one threading.Lock per deployment id.

    An entry lives only while some thread holds or waits for it, so the
    registry stays as large as the number of in-flight deployments.
    """

    def __init__(self):
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[str, List] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    def _checkout(self, key: str) -> threading.Lock:
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._registry_lock:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, deployment_id):
        """Hold the deployment's lock for the duration of the block."""
        key = str(deployment_id)
        lock = self._checkout(key)
        try:
            if not lock.acquire(blocking=False):
                logger.info(f"[{deployment_id}] Waiting for in-flight operation to finish")
                lock.acquire()
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key)

    def is_locked(self, deployment_id) -> bool:
        with self._registry_lock:
            entry = self._locks.get(str(deployment_id))
        return entry is not None and entry[0].locked()
