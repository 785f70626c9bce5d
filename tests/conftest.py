"""Shared pytest fixtures for provisioning engine tests."""
import os
import stat
import sys
from pathlib import Path
from typing import List, Optional

import pytest

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

os.environ.setdefault('APP_ENV', 'test')


# =============================================================================
# Singletons
# =============================================================================

@pytest.fixture(autouse=True)
def _reset_singletons():
    """Reset settings, DB and handler singletons between tests for isolation."""
    from iacstudio.settings import get_settings
    get_settings.cache_clear()
    yield
    from iacstudio.db import DatabaseManager
    from iacstudio.tasks import reset_task_handler
    DatabaseManager.reset()
    reset_task_handler()
    get_settings.cache_clear()


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def db(tmp_path, monkeypatch):
    """Per-test SQLite database with the engine schema."""
    monkeypatch.delenv("DATABASE_URL", raising=False)

    from iacstudio.db import DatabaseManager, init_schema

    dm = DatabaseManager(db_path=tmp_path / "test_iacstudio.db")
    init_schema(dm)
    yield dm
    dm.close()


@pytest.fixture
def project_repo(db):
    from iacstudio.repository import ProjectRepository
    return ProjectRepository(db)


@pytest.fixture
def graph_repo(db):
    from iacstudio.repository import GraphRepository
    return GraphRepository(db)


@pytest.fixture
def deploy_repo(db):
    from iacstudio.repository import DeploymentRepository
    return DeploymentRepository(db)


@pytest.fixture
def deploy_service(deploy_repo):
    from iacstudio.repository import DeploymentService
    return DeploymentService(deploy_repo)


WEB_INSTANCE = {
    "id": "web",
    "type": "aws_instance",
    "properties": {"ami": "ami-0c55b159cbfafe1f0", "instance_type": "t3.micro", "name": "web"},
}


@pytest.fixture
def make_deployment(project_repo, graph_repo, deploy_repo):
    """Factory: project + graph version + pending deployment; returns the Deployment."""

    def _make(nodes=None, edges=None, cloud_provider="aws", settings=None):
        project = project_repo.create(
            user_id="user-1",
            name="demo",
            cloud_provider=cloud_provider,
            settings=settings if settings is not None else {"region": "us-east-1"},
        )
        graph = graph_repo.create(project.id, nodes if nodes is not None else [WEB_INSTANCE], edges)
        return deploy_repo.create(project.id, graph.id)

    return _make


# =============================================================================
# Fake terraform binary
# =============================================================================

_FAKE_TERRAFORM = r"""#!/bin/sh
# Test double for terraform. Every call appends "<cwd>|<args>" to $FAKE_TF_LOG
# and "<subcommand> <AWS_ACCESS_KEY_ID>" to $FAKE_TF_LOG.env.
cmd="$1"
echo "$(pwd)|$*" >> "$FAKE_TF_LOG"
echo "$cmd ${AWS_ACCESS_KEY_ID:-<unset>}" >> "$FAKE_TF_LOG.env"

case ",$FAKE_TF_FAIL," in
  *",$cmd,"*)
    echo "Error: simulated $cmd failure" >&2
    exit 1
    ;;
esac

if [ "$FAKE_TF_HANG" = "$cmd" ]; then
  exec sleep 30
fi

case "$cmd" in
  init)
    [ -f main.tf ] && cp main.tf "$FAKE_TF_LOG.main.tf"
    [ -f provider.tf ] && cp provider.tf "$FAKE_TF_LOG.provider.tf"
    [ -f terraform.tfstate ] && cp terraform.tfstate "$FAKE_TF_LOG.init-state"
    echo "Terraform has been successfully initialized!"
    ;;
  plan)
    for arg in "$@"; do
      case "$arg" in
        -out=*) : > "${arg#-out=}" ;;
      esac
    done
    echo "Plan: 1 to add, 0 to change, 0 to destroy."
    exit "${FAKE_TF_PLAN_EXIT:-2}"
    ;;
  show)
    echo '{"format_version":"1.2","resource_changes":[{"address":"aws_instance.web","change":{"actions":["create"]}},{"address":"aws_s3_bucket.logs","change":{"actions":["delete","create"]}}]}'
    ;;
  apply)
    printf '{"version":4,"serial":%s,"resources":[]}' "${FAKE_TF_SERIAL:-1}" > terraform.tfstate
    echo "Apply complete! Resources: 1 added, 0 changed, 0 destroyed."
    ;;
  output)
    echo '{"web_id":{"sensitive":false,"type":"string","value":"i-0abc123"}}'
    ;;
  destroy)
    [ -f terraform.tfstate ] && cp terraform.tfstate "$FAKE_TF_LOG.destroy-state"
    echo "Destroy complete! Resources: 1 destroyed."
    ;;
esac
exit 0
"""


class FakeTerraform:
    """Handle on the fake terraform script and what it recorded."""

    def __init__(self, bin_dir: Path, log: Path, monkeypatch):
        self.bin_dir = bin_dir
        self.log = log
        self._monkeypatch = monkeypatch

    def calls(self) -> List[List[str]]:
        """Recorded invocations as [cwd, subcommand, args...]."""
        if not self.log.exists():
            return []
        calls = []
        for line in self.log.read_text().splitlines():
            cwd, _, args = line.partition("|")
            calls.append([cwd] + args.split())
        return calls

    def commands(self) -> List[str]:
        return [call[1] for call in self.calls() if len(call) > 1]

    def access_keys(self) -> List[str]:
        """AWS_ACCESS_KEY_ID seen by each invocation, as "<subcommand> <key or <unset>>"."""
        path = Path(f"{self.log}.env")
        return path.read_text().splitlines() if path.exists() else []

    def working_dirs(self) -> List[Path]:
        return [Path(call[0]) for call in self.calls()]

    def fail(self, *commands: str) -> None:
        self._monkeypatch.setenv("FAKE_TF_FAIL", ",".join(commands))

    def hang(self, command: str) -> None:
        self._monkeypatch.setenv("FAKE_TF_HANG", command)

    def plan_exit(self, code: int) -> None:
        self._monkeypatch.setenv("FAKE_TF_PLAN_EXIT", str(code))

    def serial(self, value: int) -> None:
        self._monkeypatch.setenv("FAKE_TF_SERIAL", str(value))

    def seen(self, suffix: str) -> Optional[bytes]:
        """Copy the script made of a file (main.tf, init-state, destroy-state)."""
        path = Path(f"{self.log}.{suffix}")
        return path.read_bytes() if path.exists() else None


@pytest.fixture
def fake_terraform(tmp_path, monkeypatch):
    """Put a fake terraform first on PATH; returns a FakeTerraform handle."""
    if os.name != "posix":
        pytest.skip("fake terraform script requires a POSIX shell")

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "terraform"
    script.write_text(_FAKE_TERRAFORM)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    log = tmp_path / "terraform.log"
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.setenv("FAKE_TF_LOG", str(log))
    for var in ("FAKE_TF_FAIL", "FAKE_TF_HANG", "FAKE_TF_PLAN_EXIT", "FAKE_TF_SERIAL", "AWS_ACCESS_KEY_ID"):
        monkeypatch.delenv(var, raising=False)

    return FakeTerraform(bin_dir, log, monkeypatch)


@pytest.fixture
def work_dir(tmp_path):
    """Base directory for per-call terraform working directories."""
    path = tmp_path / "work"
    path.mkdir()
    return path
