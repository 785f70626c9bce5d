"""
Persistence for projects, graph versions and deployments.

Repositories map rows to the dataclasses in iacstudio.models; they do not
enforce the lifecycle. DeploymentService layers the status machine and
log/state helpers on top, and is what the task handler talks to.

Usage:
    dm = DatabaseManager.get_instance()
    deployments = DeploymentRepository(dm)
    service = DeploymentService(deployments)

    service.update_status(deployment_id, DeploymentStatus.PLANNING)
    service.append_log(deployment_id, "info", "apply completed")
"""

import json
import logging
import threading
import uuid
from typing import Any, Dict, List, Optional, Union

from iacstudio.db import DatabaseManager
from iacstudio.errors import InvalidTransitionError, NotFoundError
from iacstudio.lifecycle import (
    ACTIVE_STATUSES,
    DeploymentStatus,
    can_transition,
    coerce_status,
    is_terminal,
    validate_transition,
)
from iacstudio.models import Deployment, DeploymentLog, Project, ProjectGraph
from iacstudio.provisioning.state import DatabaseStateStore
from iacstudio.timestamps import isonow

logger = logging.getLogger(__name__)

ID = Union[str, uuid.UUID]


def _new_id() -> str:
    return str(uuid.uuid4())


def _decode_json(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON column")
        return default


def _blob(value: Any) -> Optional[bytes]:
    # psycopg2 returns BYTEA as memoryview
    if value is None:
        return None
    return bytes(value)


# =============================================================================
# Projects and graphs
# =============================================================================

class ProjectRepository:
    """Projects table."""

    def __init__(self, dm: DatabaseManager):
        self.dm = dm

    def create(
        self,
        user_id: str,
        name: str,
        cloud_provider: str,
        settings: Optional[Dict[str, Any]] = None,
        description: str = "",
    ) -> Project:
        timestamp = isonow()
        project = Project(
            id=_new_id(),
            user_id=user_id,
            name=name,
            cloud_provider=cloud_provider,
            settings=json.dumps(settings) if settings is not None else None,
            description=description,
            created_at=timestamp,
            updated_at=timestamp,
        )
        with self.dm.connect() as conn:
            conn.cursor().execute(
                "INSERT INTO projects (id, user_id, name, description, cloud_provider, settings, "
                "archived, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)",
                (project.id, user_id, name, description, cloud_provider, project.settings,
                 timestamp, timestamp),
            )
        return project

    def get_by_id(self, project_id: ID) -> Project:
        with self.dm.connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM projects WHERE id = ?", (str(project_id),))
            row = cursor.fetchone()
        if row is None:
            raise NotFoundError(f"project not found: {project_id}")
        return Project(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            cloud_provider=row["cloud_provider"],
            settings=row["settings"],
            description=row["description"] or "",
            archived=bool(row["archived"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class GraphRepository:
    """Versioned project graphs; each save creates a new current version."""

    def __init__(self, dm: DatabaseManager):
        self.dm = dm

    def create(
        self,
        project_id: ID,
        nodes: List[Dict[str, Any]],
        edges: Optional[List[Dict[str, Any]]] = None,
    ) -> ProjectGraph:
        timestamp = isonow()
        with self.dm.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT MAX(version) AS version FROM project_graphs WHERE project_id = ?",
                (str(project_id),),
            )
            row = cursor.fetchone()
            version = (row["version"] or 0) + 1 if row else 1

            graph = ProjectGraph(
                id=_new_id(),
                project_id=str(project_id),
                version=version,
                nodes=json.dumps(nodes),
                edges=json.dumps(edges or []),
                is_current=True,
                created_at=timestamp,
                updated_at=timestamp,
            )
            cursor.execute(
                "UPDATE project_graphs SET is_current = 0, updated_at = ? WHERE project_id = ?",
                (timestamp, str(project_id)),
            )
            cursor.execute(
                "INSERT INTO project_graphs (id, project_id, version, nodes, edges, is_current, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, 1, ?, ?)",
                (graph.id, graph.project_id, version, graph.nodes, graph.edges, timestamp, timestamp),
            )
        return graph

    def get_by_id(self, graph_id: ID) -> ProjectGraph:
        with self.dm.connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM project_graphs WHERE id = ?", (str(graph_id),))
            row = cursor.fetchone()
        if row is None:
            raise NotFoundError(f"graph not found: {graph_id}")
        return self._from_row(row)

    def get_current(self, project_id: ID) -> Optional[ProjectGraph]:
        with self.dm.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM project_graphs WHERE project_id = ? AND is_current = 1",
                (str(project_id),),
            )
            row = cursor.fetchone()
        return self._from_row(row) if row else None

    @staticmethod
    def _from_row(row) -> ProjectGraph:
        return ProjectGraph(
            id=row["id"],
            project_id=row["project_id"],
            version=row["version"],
            nodes=row["nodes"],
            edges=row["edges"],
            is_current=bool(row["is_current"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


# =============================================================================
# Deployments
# =============================================================================

class DeploymentRepository:
    """Deployments table: status, state blob, outputs and log entries."""

    def __init__(self, dm: DatabaseManager):
        self.dm = dm
        # Serializes read-modify-write of the logs column within this process
        self._log_lock = threading.Lock()

    def create(
        self,
        project_id: ID,
        graph_id: ID,
        status: DeploymentStatus = DeploymentStatus.PENDING,
    ) -> Deployment:
        timestamp = isonow()
        deployment = Deployment(
            id=_new_id(),
            project_id=str(project_id),
            graph_id=str(graph_id),
            status=status,
            created_at=timestamp,
            updated_at=timestamp,
        )
        with self.dm.connect() as conn:
            conn.cursor().execute(
                "INSERT INTO deployments (id, project_id, graph_id, status, terraform_state, "
                "outputs, logs, created_at, updated_at) VALUES (?, ?, ?, ?, NULL, '{}', '[]', ?, ?)",
                (deployment.id, deployment.project_id, deployment.graph_id, status.value,
                 timestamp, timestamp),
            )
        return deployment

    def get_by_id(self, deployment_id: ID) -> Deployment:
        with self.dm.connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM deployments WHERE id = ?", (str(deployment_id),))
            row = cursor.fetchone()
        if row is None:
            raise NotFoundError(f"deployment not found: {deployment_id}")
        return self._from_row(row)

    def list_by_project(self, project_id: ID) -> List[Deployment]:
        with self.dm.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM deployments WHERE project_id = ? ORDER BY created_at DESC",
                (str(project_id),),
            )
            rows = cursor.fetchall()
        return [self._from_row(row) for row in rows]

    def get_latest_by_project(self, project_id: ID) -> Optional[Deployment]:
        deployments = self.list_by_project(project_id)
        return deployments[0] if deployments else None

    def update_status(self, deployment_id: ID, status: DeploymentStatus) -> None:
        self._update(deployment_id, "status = ?", (status.value,))

    def save_state(self, deployment_id: ID, blob: Optional[bytes]) -> None:
        self._update(deployment_id, "terraform_state = ?", (blob,))

    def get_state_raw(self, deployment_id: ID) -> Optional[bytes]:
        """Stored state column as-is (None when never written)."""
        with self.dm.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT terraform_state FROM deployments WHERE id = ?", (str(deployment_id),)
            )
            row = cursor.fetchone()
        if row is None:
            raise NotFoundError(f"deployment not found: {deployment_id}")
        return _blob(row["terraform_state"])

    def save_outputs(self, deployment_id: ID, outputs: Dict[str, Any]) -> None:
        self._update(deployment_id, "outputs = ?", (json.dumps(outputs, default=str),))

    def append_log(self, deployment_id: ID, entry: DeploymentLog) -> None:
        with self._log_lock, self.dm.connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT logs FROM deployments WHERE id = ?", (str(deployment_id),))
            row = cursor.fetchone()
            if row is None:
                raise NotFoundError(f"deployment not found: {deployment_id}")
            logs = _decode_json(row["logs"], [])
            logs.append(entry.to_dict())
            cursor.execute(
                "UPDATE deployments SET logs = ?, updated_at = ? WHERE id = ?",
                (json.dumps(logs, default=str), isonow(), str(deployment_id)),
            )

    def _update(self, deployment_id: ID, assignment: str, params: tuple) -> None:
        with self.dm.connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"UPDATE deployments SET {assignment}, updated_at = ? WHERE id = ?",
                params + (isonow(), str(deployment_id)),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"deployment not found: {deployment_id}")

    @staticmethod
    def _from_row(row) -> Deployment:
        return Deployment(
            id=row["id"],
            project_id=row["project_id"],
            graph_id=row["graph_id"],
            status=coerce_status(row["status"]),
            terraform_state=_blob(row["terraform_state"]),
            outputs=_decode_json(row["outputs"], {}),
            logs=[DeploymentLog.from_dict(e) for e in _decode_json(row["logs"], [])],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


# =============================================================================
# Service
# =============================================================================

class DeploymentService:
    """
    Deployment operations used by the task handler and callers of the engine.

    Status writes go through the lifecycle table. Because jobs are delivered
    at least once, a redelivered job may re-enter a status out of order; by
    default such a write is logged as a warning and applied anyway.
    """

    def __init__(self, repository: DeploymentRepository):
        self.repository = repository
        self.state_store = DatabaseStateStore(repository)

    def get(self, deployment_id: ID) -> Deployment:
        return self.repository.get_by_id(deployment_id)

    def update_status(
        self,
        deployment_id: ID,
        status: Union[str, DeploymentStatus],
        strict: bool = False,
    ) -> DeploymentStatus:
        target = coerce_status(status)
        current = self.repository.get_by_id(deployment_id).status

        if not can_transition(current, target):
            if strict:
                validate_transition(current, target)
            logger.warning(
                f"[{deployment_id}] Out-of-order status change {current.value} -> {target.value}",
                extra={"deployment_id": str(deployment_id), "status": target.value},
            )

        self.repository.update_status(deployment_id, target)
        logger.info(
            f"[{deployment_id}] Status {current.value} -> {target.value}",
            extra={"deployment_id": str(deployment_id), "status": target.value},
        )
        return target

    def save_outputs(self, deployment_id: ID, outputs: Dict[str, Any]) -> None:
        self.repository.save_outputs(deployment_id, outputs)

    def save_terraform_state(self, deployment_id: ID, state: Optional[bytes]) -> None:
        """Store the state blob; None clears it."""
        self.state_store.save_state(deployment_id, state)

    def get_terraform_state(self, deployment_id: ID) -> Optional[bytes]:
        return self.state_store.get_state(deployment_id)

    def append_log(
        self,
        deployment_id: ID,
        level: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> DeploymentLog:
        entry = DeploymentLog(level=level, message=message, data=data)
        self.repository.append_log(deployment_id, entry)
        return entry

    def get_logs(self, deployment_id: ID) -> List[DeploymentLog]:
        return self.repository.get_by_id(deployment_id).logs

    def cancel_deployment(self, deployment_id: ID) -> None:
        """
        Mark a non-terminal deployment as failed.

        Does not interrupt a running process; it only records the outcome.

        Raises:
            InvalidTransitionError: Deployment already reached a terminal status
        """
        current = self.repository.get_by_id(deployment_id).status
        if is_terminal(current):
            raise InvalidTransitionError(
                f"cannot cancel deployment in status {current.value}",
                meta={"from": current.value, "to": DeploymentStatus.FAILED.value},
            )
        self.repository.update_status(deployment_id, DeploymentStatus.FAILED)
        self.append_log(deployment_id, "warning", "deployment cancelled", {"previous_status": current.value})
        logger.info(f"[{deployment_id}] Cancelled from {current.value}")

    def request_destroy(self, deployment_id: ID) -> None:
        """
        Reset a deployment to pending ahead of a destroy job.

        Raises:
            InvalidTransitionError: A plan/apply/destroy is still in flight
        """
        current = self.repository.get_by_id(deployment_id).status
        if current in ACTIVE_STATUSES and current is not DeploymentStatus.PENDING:
            raise InvalidTransitionError(
                f"cannot destroy deployment in status {current.value}",
                meta={"from": current.value, "to": DeploymentStatus.PENDING.value},
            )
        self.repository.update_status(deployment_id, DeploymentStatus.PENDING)
        logger.info(f"[{deployment_id}] Destroy requested from {current.value}")
