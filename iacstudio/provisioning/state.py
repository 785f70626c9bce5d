"""
Terraform state persistence.

The state blob is opaque to the engine: it is stored and returned
byte-for-byte. Clearing a deployment's state (after a successful destroy)
stores the explicit sentinel CLEARED_STATE, so a cleared deployment can be
told apart from one that was never applied.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, Optional, Union

from iacstudio.errors import NotFoundError, StateStoreError

if TYPE_CHECKING:
    from iacstudio.repository import DeploymentRepository

logger = logging.getLogger(__name__)

# Stored in place of the blob when state is cleared
CLEARED_STATE = b"null"

DeploymentID = Union[str, uuid.UUID]


class StateStore(ABC):
    """Persistence of the per-deployment state blob."""

    @abstractmethod
    def save_state(self, deployment_id: DeploymentID, state: Optional[bytes]) -> None:
        """Store ``state``; None clears it. Last write wins."""

    @abstractmethod
    def _load(self, deployment_id: DeploymentID) -> Optional[bytes]:
        """Return the stored column value (None when never written)."""

    def get_state(self, deployment_id: DeploymentID) -> Optional[bytes]:
        """Return the blob, or None when never applied or cleared."""
        raw = self._load(deployment_id)
        if raw is None or raw == CLEARED_STATE:
            return None
        return raw

    def is_cleared(self, deployment_id: DeploymentID) -> bool:
        """True when the state was explicitly cleared by a destroy."""
        return self._load(deployment_id) == CLEARED_STATE

    def lock_state(self, deployment_id: DeploymentID) -> None:
        """Reserved for remote state locking; currently a no-op."""

    def unlock_state(self, deployment_id: DeploymentID) -> None:
        """Reserved for remote state locking; currently a no-op."""


class DatabaseStateStore(StateStore):
    """State kept in the ``terraform_state`` column of the deployments table."""

    def __init__(self, repository: "DeploymentRepository"):
        self.repository = repository

    def save_state(self, deployment_id: DeploymentID, state: Optional[bytes]) -> None:
        blob = CLEARED_STATE if state is None else bytes(state)
        try:
            self.repository.save_state(str(deployment_id), blob)
        except NotFoundError:
            raise
        except Exception as e:
            raise StateStoreError(f"save state for {deployment_id}: {e}")
        logger.debug(f"[{deployment_id}] Saved {len(blob)} bytes of state")

    def _load(self, deployment_id: DeploymentID) -> Optional[bytes]:
        try:
            return self.repository.get_state_raw(str(deployment_id))
        except NotFoundError:
            raise
        except Exception as e:
            raise StateStoreError(f"load state for {deployment_id}: {e}")


class InMemoryStateStore(StateStore):
    """Thread-safe dict-backed store for tests and local runs."""

    def __init__(self):
        self._states: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def save_state(self, deployment_id: DeploymentID, state: Optional[bytes]) -> None:
        with self._lock:
            self._states[str(deployment_id)] = CLEARED_STATE if state is None else bytes(state)

    def _load(self, deployment_id: DeploymentID) -> Optional[bytes]:
        with self._lock:
            return self._states.get(str(deployment_id))
