"""
Provisioning orchestrator: compile -> executor -> state store, per lifecycle call.

Each call owns a fresh working directory which is removed before the call
returns, whatever the outcome. Calls for the same deployment are
serialized through DeploymentLocks; calls for different deployments run
fully in parallel.

Usage:
    provisioner = TerraformProvisioner.from_settings(get_settings(), state_store=store)
    result = provisioner.apply(infra_config)
"""

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional, Union

from iacstudio.errors import EngineError, ExecutorInitError, ExecutorRunError
from iacstudio.provisioning.compiler import GraphCompiler
from iacstudio.provisioning.executor import TerraformExecutor, new_working_dir
from iacstudio.provisioning.locks import DeploymentLocks
from iacstudio.provisioning.state import StateStore
from iacstudio.provisioning.types import CloudConfig, CompiledCode, InfraConfig, Plan, Result

if TYPE_CHECKING:
    from iacstudio.settings import Settings

logger = logging.getLogger(__name__)

# Credential keys accepted in project settings, mapped to the AWS provider's env vars
_AWS_CREDENTIAL_ENV = {
    "access_key_id": "AWS_ACCESS_KEY_ID",
    "access_key": "AWS_ACCESS_KEY_ID",
    "secret_access_key": "AWS_SECRET_ACCESS_KEY",
    "secret_key": "AWS_SECRET_ACCESS_KEY",
    "session_token": "AWS_SESSION_TOKEN",
}


def provider_env(cloud_config: CloudConfig) -> Dict[str, str]:
    """Environment variables that hand the project's credentials to the provider."""
    if cloud_config.provider != "aws":
        return {}
    env = {}
    for key, var in _AWS_CREDENTIAL_ENV.items():
        value = cloud_config.credentials.get(key)
        if isinstance(value, str) and value:
            env[var] = value
    return env


def summarize_plan(plan_output: str) -> Dict[str, int]:
    """Count adds/changes/deletes in a ``terraform show -json`` plan; best-effort."""
    counts = {"add": 0, "change": 0, "delete": 0}
    if not plan_output:
        return counts
    try:
        rendered = json.loads(plan_output)
    except json.JSONDecodeError:
        return counts

    for change in rendered.get("resource_changes") or []:
        actions = (change.get("change") or {}).get("actions") or []
        if "create" in actions:
            counts["add"] += 1
        if "delete" in actions:
            counts["delete"] += 1
        if "update" in actions:
            counts["change"] += 1
    return counts


class TerraformProvisioner:
    """
    Runs plan/apply/destroy for one deployment at a time.

    Args:
        base_working_dir: Parent of the per-call working directories
        state_store: Where state blobs are persisted (optional)
        compiler: Graph compiler (default: GraphCompiler())
        locks: Per-deployment lock registry (default: a private one)
        binary: Terraform executable name
        timeout: Time box in seconds for each terraform invocation
    """

    def __init__(
        self,
        base_working_dir: Union[str, Path],
        state_store: Optional[StateStore] = None,
        compiler: Optional[GraphCompiler] = None,
        locks: Optional[DeploymentLocks] = None,
        binary: str = "terraform",
        timeout: float = 3600,
    ):
        self.base_working_dir = Path(base_working_dir)
        self.state_store = state_store
        self.compiler = compiler or GraphCompiler()
        self.locks = locks or DeploymentLocks()
        self.binary = binary
        self.timeout = timeout

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        state_store: Optional[StateStore] = None,
    ) -> "TerraformProvisioner":
        return cls(
            base_working_dir=settings.terraform.working_dir,
            state_store=state_store,
            binary=settings.terraform.binary,
            timeout=settings.terraform.timeout_seconds,
        )

    def _executor(
        self,
        deployment_id: Union[str, uuid.UUID],
        cancel_event: Optional[threading.Event],
        env: Optional[Dict[str, str]] = None,
    ) -> TerraformExecutor:
        try:
            working_dir = new_working_dir(self.base_working_dir, deployment_id)
        except OSError as e:
            error = ExecutorInitError(f"create working dir: {e}").wrap("executor initialize")
            error.result = Result(success=False, error_message=str(error))
            raise error
        return TerraformExecutor(
            working_dir,
            binary=self.binary,
            timeout=self.timeout,
            cancel_event=cancel_event,
            env=env,
            deployment_id=deployment_id,
        )

    def _compile(self, config: InfraConfig) -> CompiledCode:
        try:
            return self.compiler.compile(config.graph, config.cloud_config)
        except EngineError as e:
            raise e.wrap("compile graph")

    # ----- lifecycle ----------------------------------------------------------

    def plan(self, config: InfraConfig, cancel_event: Optional[threading.Event] = None) -> Plan:
        """Compile and plan without changing infrastructure or stored state."""
        code = self._compile(config)

        with self.locks.hold(config.deployment_id):
            executor = self._executor(config.deployment_id, cancel_event, provider_env(config.cloud_config))
            with executor:
                seeded = self.get_state(config.deployment_id)
                if seeded:
                    executor.seed_state(seeded)
                _initialize(executor, code)
                try:
                    plan_result = executor.plan()
                except EngineError as e:
                    raise e.wrap("executor plan")

        counts = summarize_plan(plan_result.plan_output)
        return Plan(
            has_changes=plan_result.has_changes,
            changes=sum(counts.values()),
            resource_adds=counts["add"],
            resource_mods=counts["change"],
            resource_dels=counts["delete"],
            plan_output=plan_result.plan_output,
        )

    def apply(self, config: InfraConfig, cancel_event: Optional[threading.Event] = None) -> Result:
        """
        Compile and apply; on success the new state is persisted.

        Raises:
            UnsupportedResourceType, ValidationError, CompileError: Before any process runs
            ExecutorInitError, ExecutorRunError: With ``result`` describing the failure
        """
        deployment_id = config.deployment_id
        code = self._compile(config)

        with self.locks.hold(deployment_id):
            executor = self._executor(deployment_id, cancel_event, provider_env(config.cloud_config))
            with executor:
                try:
                    _initialize(executor, code)
                    try:
                        apply_result = executor.apply()
                    except EngineError as e:
                        raise e.wrap("executor apply")
                except (ExecutorInitError, ExecutorRunError) as e:
                    e.result = Result(success=False, error_message=str(e))
                    raise

            if self.state_store is not None:
                try:
                    self.state_store.save_state(deployment_id, apply_result.state)
                except EngineError as e:
                    logger.error(f"[{deployment_id}] Failed to persist state after apply: {e}")

        logger.info(f"[{deployment_id}] Apply succeeded with {len(apply_result.outputs)} outputs")
        return Result(success=True, outputs=apply_result.outputs, state=apply_result.state)

    def destroy(
        self,
        deployment_id: Union[str, uuid.UUID],
        state: Optional[bytes] = None,
        cancel_event: Optional[threading.Event] = None,
        cloud_config: Optional[CloudConfig] = None,
    ) -> Result:
        """
        Destroy what the given (or stored) state tracks; stored state is cleared on success.

        With no state at all this is an init + destroy over an empty configuration.
        ``cloud_config`` supplies the same provider credentials apply used.
        """
        with self.locks.hold(deployment_id):
            if not state and self.state_store is not None:
                try:
                    state = self.state_store.get_state(deployment_id)
                except EngineError as e:
                    raise e.wrap("load state")

            env = provider_env(cloud_config) if cloud_config is not None else None
            executor = self._executor(deployment_id, cancel_event, env)
            with executor:
                try:
                    if state:
                        executor.seed_state(state)
                    _initialize(executor, CompiledCode())
                    try:
                        executor.destroy()
                    except EngineError as e:
                        raise e.wrap("executor destroy")
                except (ExecutorInitError, ExecutorRunError) as e:
                    e.result = Result(success=False, error_message=str(e))
                    raise

            if self.state_store is not None:
                try:
                    self.state_store.save_state(deployment_id, None)
                except EngineError as e:
                    logger.error(f"[{deployment_id}] Failed to clear state after destroy: {e}")

        logger.info(f"[{deployment_id}] Destroy succeeded")
        return Result(success=True)

    def get_state(self, deployment_id: Union[str, uuid.UUID]) -> Optional[bytes]:
        if self.state_store is None:
            return None
        return self.state_store.get_state(deployment_id)


def _initialize(executor: TerraformExecutor, code: CompiledCode) -> None:
    try:
        executor.initialize(code)
    except EngineError as e:
        raise e.wrap("executor initialize")
