"""
Provision/destroy job handling and the Celery tasks that deliver the jobs.

The handler walks a deployment through its lifecycle statuses, calling the
provisioner and recording outputs, state and log entries. It performs no
retries and no deduplication itself; Celery redelivers transient failures.
"""

import json
import logging
import threading
import uuid
from typing import Any, Dict, Optional, Union

import pydantic
from celery import shared_task
from pydantic import BaseModel

from iacstudio.db import DatabaseManager
from iacstudio.errors import (
    EngineError,
    ExecutorCancelledError,
    ExecutorRunError,
    InvalidPayloadError,
    StateStoreError,
    error_summary,
)
from iacstudio.lifecycle import DeploymentStatus
from iacstudio.models import Deployment, Project
from iacstudio.provisioning.orchestrator import TerraformProvisioner
from iacstudio.provisioning.state import CLEARED_STATE
from iacstudio.provisioning.types import CloudConfig, Graph, InfraConfig
from iacstudio.repository import (
    DeploymentRepository,
    DeploymentService,
    GraphRepository,
    ProjectRepository,
)
from iacstudio.settings import get_settings

logger = logging.getLogger(__name__)


class ProvisionPayload(BaseModel):
    """Job payload for both provision and destroy: ``{"deployment_id": "<uuid>"}``."""

    deployment_id: uuid.UUID


def parse_payload(payload: Union[str, bytes, Dict[str, Any], ProvisionPayload]) -> ProvisionPayload:
    """
    Decode a job payload.

    Raises:
        InvalidPayloadError: Not JSON, not an object, or deployment_id is not a UUID
    """
    if isinstance(payload, ProvisionPayload):
        return payload
    try:
        if isinstance(payload, (str, bytes)):
            return ProvisionPayload.model_validate_json(payload)
        return ProvisionPayload.model_validate(payload)
    except pydantic.ValidationError as e:
        raise InvalidPayloadError(
            f"unmarshal payload failed: {e.errors()[0]['msg'] if e.errors() else e}"
        )


def cloud_config_for(project: Project) -> CloudConfig:
    """Provider from the project; region and credentials from its settings, best-effort."""
    settings = project.settings_dict()
    region = settings.get("region")
    credentials = settings.get("credentials")
    return CloudConfig(
        provider=project.cloud_provider,
        region=region if isinstance(region, str) else "",
        credentials=credentials if isinstance(credentials, dict) else {},
    )


class ProvisionTaskHandler:
    """
    Executes provision and destroy jobs.

    Args:
        provisioner: Runs apply/destroy
        deploy_service: Status, outputs, state and log writes
        project_repo: Project lookup
        graph_repo: Graph version lookup
        deploy_repo: Deployment lookup
    """

    def __init__(
        self,
        provisioner: TerraformProvisioner,
        deploy_service: DeploymentService,
        project_repo: ProjectRepository,
        graph_repo: GraphRepository,
        deploy_repo: DeploymentRepository,
    ):
        self.provisioner = provisioner
        self.deploy_service = deploy_service
        self.project_repo = project_repo
        self.graph_repo = graph_repo
        self.deploy_repo = deploy_repo

    def handle_provision(self, payload, cancel_event: Optional[threading.Event] = None) -> None:
        """
        planning -> (load) -> applying -> applied | failed.

        Raises the underlying error after recording the failure.
        """
        job = self._parse(payload, "provision")
        deployment_id = job.deployment_id

        self.deploy_service.update_status(deployment_id, DeploymentStatus.PLANNING)

        try:
            deployment = self.deploy_repo.get_by_id(deployment_id)
            project = self.project_repo.get_by_id(deployment.project_id)
            graph_record = self.graph_repo.get_by_id(deployment.graph_id)
            graph = Graph.from_json(graph_record.nodes, graph_record.edges)
            config = InfraConfig(
                deployment_id=deployment_id,
                project_id=uuid.UUID(deployment.project_id),
                graph_id=uuid.UUID(deployment.graph_id),
                graph=graph,
                cloud_config=cloud_config_for(project),
            )
        except Exception as e:
            self._fail(deployment_id, f"load error: {e}", e)
            raise

        try:
            self.deploy_service.update_status(deployment_id, DeploymentStatus.APPLYING)
            result = self.provisioner.apply(config, cancel_event=cancel_event)
            self.deploy_service.save_outputs(deployment_id, result.outputs)
            self.deploy_service.save_terraform_state(deployment_id, result.state)
            self.deploy_service.append_log(deployment_id, "info", "apply completed")
            self.deploy_service.update_status(deployment_id, DeploymentStatus.APPLIED)
        except Exception as e:
            self._fail(deployment_id, f"apply error: {e}", e)
            raise

        logger.info(f"[{deployment_id}] Provision completed")

    def handle_destroy(self, payload, cancel_event: Optional[threading.Event] = None) -> None:
        """
        destroying -> destroyed | failed.

        Raises the underlying error after recording the failure.
        """
        job = self._parse(payload, "destroy")
        deployment_id = job.deployment_id

        self.deploy_service.update_status(deployment_id, DeploymentStatus.DESTROYING)

        try:
            deployment = self.deploy_repo.get_by_id(deployment_id)
            project = self.project_repo.get_by_id(deployment.project_id)
        except Exception as e:
            self._fail(deployment_id, f"load error: {e}", e)
            raise

        try:
            self.provisioner.destroy(
                deployment_id,
                _seedable_state(deployment),
                cancel_event=cancel_event,
                cloud_config=cloud_config_for(project),
            )
            self.deploy_service.save_terraform_state(deployment_id, None)
            self.deploy_service.append_log(deployment_id, "info", "destroy completed")
            self.deploy_service.update_status(deployment_id, DeploymentStatus.DESTROYED)
        except Exception as e:
            self._fail(deployment_id, f"destroy error: {e}", e)
            raise

        logger.info(f"[{deployment_id}] Destroy completed")

    def _parse(self, payload, kind: str) -> ProvisionPayload:
        try:
            return parse_payload(payload)
        except InvalidPayloadError as e:
            logger.error(f"Rejected {kind} job: {e}")
            raise

    def _fail(self, deployment_id: uuid.UUID, message: str, cause: Exception) -> None:
        """Record one error entry and mark the deployment failed; bookkeeping errors are logged."""
        logger.error(
            f"[{deployment_id}] {message}",
            extra={"deployment_id": str(deployment_id), "status": DeploymentStatus.FAILED.value},
        )
        try:
            self.deploy_service.append_log(deployment_id, "error", message, error_summary(cause))
            self.deploy_service.update_status(deployment_id, DeploymentStatus.FAILED)
        except EngineError as e:
            logger.error(f"[{deployment_id}] Could not record failure: {e}")


def _seedable_state(deployment: Deployment) -> Optional[bytes]:
    state = deployment.terraform_state
    if not state or state == CLEARED_STATE:
        return None
    return state


# =============================================================================
# Handler singleton
# =============================================================================

_handler: Optional[ProvisionTaskHandler] = None
_handler_lock = threading.Lock()


def get_task_handler() -> ProvisionTaskHandler:
    """Get or create the handler wired from settings."""
    global _handler
    if _handler is None:
        with _handler_lock:
            if _handler is None:
                settings = get_settings()
                dm = DatabaseManager.get_instance(
                    db_url=settings.database.database_url,
                    db_path=settings.database.database_path,
                )
                deploy_repo = DeploymentRepository(dm)
                service = DeploymentService(deploy_repo)
                _handler = ProvisionTaskHandler(
                    provisioner=TerraformProvisioner.from_settings(settings, service.state_store),
                    deploy_service=service,
                    project_repo=ProjectRepository(dm),
                    graph_repo=GraphRepository(dm),
                    deploy_repo=deploy_repo,
                )
    return _handler


def reset_task_handler() -> None:
    """Drop the handler singleton. For testing and after fork."""
    global _handler
    with _handler_lock:
        _handler = None


# =============================================================================
# Celery tasks
# =============================================================================

def _retry(task, exc: Exception):
    queue = get_settings().queue
    return task.retry(exc=exc, countdown=queue.task_retry_delay, max_retries=queue.task_max_retries)


@shared_task(bind=True, name="deployment.provision", max_retries=3, default_retry_delay=30)
def provision_deployment(self, deployment_id: str):
    """Provision a deployment (compile + apply)."""
    payload = json.dumps({"deployment_id": deployment_id})
    try:
        get_task_handler().handle_provision(payload)
    except ExecutorCancelledError:
        raise
    except (ExecutorRunError, StateStoreError) as e:
        logger.error(f"Provision failed for {deployment_id}: {e}")
        raise _retry(self, e)
    return {"deployment_id": deployment_id, "status": DeploymentStatus.APPLIED.value}


@shared_task(bind=True, name="deployment.destroy", max_retries=3, default_retry_delay=30)
def destroy_deployment(self, deployment_id: str):
    """Destroy a deployment's infrastructure."""
    payload = json.dumps({"deployment_id": deployment_id})
    try:
        get_task_handler().handle_destroy(payload)
    except ExecutorCancelledError:
        raise
    except (ExecutorRunError, StateStoreError) as e:
        logger.error(f"Destroy failed for {deployment_id}: {e}")
        raise _retry(self, e)
    return {"deployment_id": deployment_id, "status": DeploymentStatus.DESTROYED.value}
