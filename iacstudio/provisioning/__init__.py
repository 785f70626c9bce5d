"""
Terraform provisioning: graph compilation, execution and state persistence.

This package turns a resource graph into Terraform source and drives the
terraform binary through init/plan/apply/destroy:
- GraphCompiler: graph + cloud config -> CompiledCode (pure)
- TerraformExecutor: one working directory, one external process at a time
- StateStore: opaque state blob persistence
- TerraformProvisioner: compile -> execute -> persist, per lifecycle call

Usage:
    from iacstudio.provisioning import TerraformProvisioner, InMemoryStateStore

    provisioner = TerraformProvisioner("/tmp/iac", state_store=InMemoryStateStore())
    result = provisioner.apply(infra_config)
    provisioner.destroy(infra_config.deployment_id)
"""

from iacstudio.provisioning.compiler import (
    RESOURCE_COMPILERS,
    SUPPORTED_RESOURCE_TYPES,
    GraphCompiler,
)
from iacstudio.provisioning.executor import TerraformExecutor, new_working_dir
from iacstudio.provisioning.locks import DeploymentLocks
from iacstudio.provisioning.orchestrator import TerraformProvisioner
from iacstudio.provisioning.state import (
    CLEARED_STATE,
    DatabaseStateStore,
    InMemoryStateStore,
    StateStore,
)
from iacstudio.provisioning.types import (
    ApplyResult,
    CloudConfig,
    CompiledCode,
    Edge,
    Graph,
    InfraConfig,
    Node,
    Plan,
    PlanResult,
    Result,
)

__all__ = [
    "RESOURCE_COMPILERS",
    "SUPPORTED_RESOURCE_TYPES",
    "GraphCompiler",
    "TerraformExecutor",
    "new_working_dir",
    "DeploymentLocks",
    "TerraformProvisioner",
    "CLEARED_STATE",
    "DatabaseStateStore",
    "InMemoryStateStore",
    "StateStore",
    "ApplyResult",
    "CloudConfig",
    "CompiledCode",
    "Edge",
    "Graph",
    "InfraConfig",
    "Node",
    "Plan",
    "PlanResult",
    "Result",
]
