"""
Tests for project/graph/deployment persistence and DeploymentService.
"""

import json
import uuid

import pytest

from iacstudio.errors import InvalidTransitionError, NotFoundError
from iacstudio.lifecycle import DeploymentStatus
from iacstudio.models import DeploymentLog
from iacstudio.provisioning.state import CLEARED_STATE


class TestProjectRepository:
    def test_create_and_get(self, project_repo):
        project = project_repo.create("user-1", "demo", "aws", settings={"region": "eu-west-1"})
        loaded = project_repo.get_by_id(project.id)

        assert loaded.name == "demo"
        assert loaded.cloud_provider == "aws"
        assert loaded.settings_dict() == {"region": "eu-west-1"}
        assert loaded.archived is False

    def test_missing(self, project_repo):
        with pytest.raises(NotFoundError, match="project not found"):
            project_repo.get_by_id(str(uuid.uuid4()))

    def test_malformed_settings_are_empty(self, project_repo):
        project = project_repo.create("user-1", "demo", "aws")
        project.settings = "{broken"
        assert project.settings_dict() == {}


class TestGraphRepository:
    def test_versions_increment(self, project_repo, graph_repo):
        project = project_repo.create("user-1", "demo", "aws")
        first = graph_repo.create(project.id, [{"id": "a"}])
        second = graph_repo.create(project.id, [{"id": "b"}])

        assert (first.version, second.version) == (1, 2)
        assert graph_repo.get_current(project.id).id == second.id
        assert graph_repo.get_by_id(first.id).is_current is False
        assert json.loads(graph_repo.get_by_id(first.id).nodes) == [{"id": "a"}]

    def test_missing(self, graph_repo):
        with pytest.raises(NotFoundError, match="graph not found"):
            graph_repo.get_by_id(str(uuid.uuid4()))


class TestDeploymentRepository:
    def test_create(self, make_deployment, deploy_repo):
        deployment = make_deployment()
        loaded = deploy_repo.get_by_id(deployment.id)

        assert loaded.status is DeploymentStatus.PENDING
        assert loaded.terraform_state is None
        assert loaded.outputs == {}
        assert loaded.logs == []

    def test_missing(self, deploy_repo):
        with pytest.raises(NotFoundError, match="deployment not found"):
            deploy_repo.get_by_id(str(uuid.uuid4()))
        with pytest.raises(NotFoundError):
            deploy_repo.update_status(str(uuid.uuid4()), DeploymentStatus.FAILED)

    def test_outputs_and_logs(self, make_deployment, deploy_repo):
        deployment = make_deployment()
        deploy_repo.save_outputs(deployment.id, {"web_id": "i-1"})
        deploy_repo.append_log(deployment.id, DeploymentLog(level="info", message="one"))
        deploy_repo.append_log(deployment.id, DeploymentLog(level="error", message="two", data={"code": "x"}))

        loaded = deploy_repo.get_by_id(deployment.id)
        assert loaded.outputs == {"web_id": "i-1"}
        assert [(e.level, e.message) for e in loaded.logs] == [("info", "one"), ("error", "two")]
        assert loaded.logs[1].data == {"code": "x"}
        assert loaded.logs[0].timestamp.endswith("+00:00")

    def test_latest_by_project(self, make_deployment, deploy_repo):
        deployment = make_deployment()
        newer = deploy_repo.create(deployment.project_id, deployment.graph_id)

        assert deploy_repo.get_latest_by_project(deployment.project_id).id == newer.id
        assert len(deploy_repo.list_by_project(deployment.project_id)) == 2
        assert deploy_repo.get_latest_by_project(str(uuid.uuid4())) is None


class TestDeploymentService:
    def test_update_status(self, make_deployment, deploy_service):
        deployment = make_deployment()
        deploy_service.update_status(deployment.id, "planning")
        assert deploy_service.get(deployment.id).status is DeploymentStatus.PLANNING

    def test_out_of_order_is_written_with_warning(self, make_deployment, deploy_service, caplog):
        deployment = make_deployment()
        deploy_service.update_status(deployment.id, DeploymentStatus.PLANNING)
        deploy_service.update_status(deployment.id, DeploymentStatus.FAILED)

        deploy_service.update_status(deployment.id, DeploymentStatus.PLANNING)

        assert deploy_service.get(deployment.id).status is DeploymentStatus.PLANNING
        assert "Out-of-order status change failed -> planning" in caplog.text

    def test_strict_rejects(self, make_deployment, deploy_service):
        deployment = make_deployment()
        with pytest.raises(InvalidTransitionError):
            deploy_service.update_status(deployment.id, DeploymentStatus.APPLIED, strict=True)
        assert deploy_service.get(deployment.id).status is DeploymentStatus.PENDING

    def test_state_helpers(self, make_deployment, deploy_service, deploy_repo):
        deployment = make_deployment()
        deploy_service.save_terraform_state(deployment.id, b'{"serial":1}')
        assert deploy_service.get_terraform_state(deployment.id) == b'{"serial":1}'

        deploy_service.save_terraform_state(deployment.id, None)
        assert deploy_service.get_terraform_state(deployment.id) is None
        assert deploy_repo.get_state_raw(deployment.id) == CLEARED_STATE

    def test_append_and_get_logs(self, make_deployment, deploy_service):
        deployment = make_deployment()
        deploy_service.append_log(deployment.id, "info", "apply completed")
        logs = deploy_service.get_logs(deployment.id)
        assert logs[0].message == "apply completed"
        assert "data" not in logs[0].to_dict()

    def test_cancel(self, make_deployment, deploy_service):
        deployment = make_deployment()
        deploy_service.update_status(deployment.id, DeploymentStatus.PLANNING)

        deploy_service.cancel_deployment(deployment.id)

        loaded = deploy_service.get(deployment.id)
        assert loaded.status is DeploymentStatus.FAILED
        assert loaded.logs[-1].message == "deployment cancelled"

    def test_cancel_terminal_rejected(self, make_deployment, deploy_service):
        deployment = make_deployment()
        deploy_service.update_status(deployment.id, DeploymentStatus.FAILED)
        with pytest.raises(InvalidTransitionError, match="cannot cancel"):
            deploy_service.cancel_deployment(deployment.id)

    def test_request_destroy_resets_to_pending(self, make_deployment, deploy_service, deploy_repo):
        deployment = make_deployment()
        deploy_repo.update_status(deployment.id, DeploymentStatus.APPLIED)

        deploy_service.request_destroy(deployment.id)

        assert deploy_service.get(deployment.id).status is DeploymentStatus.PENDING

    def test_request_destroy_while_active(self, make_deployment, deploy_service, deploy_repo):
        deployment = make_deployment()
        deploy_repo.update_status(deployment.id, DeploymentStatus.APPLYING)
        with pytest.raises(InvalidTransitionError, match="cannot destroy"):
            deploy_service.request_destroy(deployment.id)
