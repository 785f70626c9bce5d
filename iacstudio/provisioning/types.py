"""
Value types passed through the provisioning engine.
"""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from iacstudio.errors import CompileError


@dataclass(frozen=True)
class Node:
    """A resource in the graph; ``type`` selects the resource compiler (e.g. "aws_instance")."""

    id: str
    type: str
    properties: Mapping[str, Any] = field(default_factory=dict)
    position: Optional[Mapping[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        return cls(
            id=str(data.get("id", "")),
            type=str(data.get("type", "")),
            properties=data.get("properties") or {},
            position=data.get("position"),
        )


@dataclass(frozen=True)
class Edge:
    """A declared relationship between two nodes (e.g. kind "depends_on")."""

    id: str
    source: str
    target: str
    kind: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        return cls(
            id=str(data.get("id", "")),
            source=str(data.get("from", "")),
            target=str(data.get("to", "")),
            kind=str(data.get("type", "")),
        )


@dataclass(frozen=True)
class Graph:
    """Immutable snapshot of a graph version."""

    nodes: Tuple[Node, ...] = ()
    edges: Tuple[Edge, ...] = ()

    @classmethod
    def from_json(cls, nodes_json: Optional[str], edges_json: Optional[str]) -> "Graph":
        """
        Decode stored graph JSON.

        Empty or missing columns decode to no nodes/edges.

        Raises:
            CompileError: If either column is not a JSON list of objects
        """
        nodes = tuple(Node.from_dict(n) for n in _decode_list(nodes_json, "nodes"))
        edges = tuple(Edge.from_dict(e) for e in _decode_list(edges_json, "edges"))
        return cls(nodes=nodes, edges=edges)


def _decode_list(raw: Optional[str], label: str):
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CompileError(f"unmarshal {label} failed: {e}")
    if data is None:
        return []
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise CompileError(f"unmarshal {label} failed: expected a list of objects")
    return data


@dataclass(frozen=True)
class CloudConfig:
    """Target cloud: provider name, region and (unvaulted) credentials."""

    provider: str = ""
    region: str = ""
    credentials: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class InfraConfig:
    """Everything one lifecycle call needs."""

    deployment_id: uuid.UUID
    project_id: uuid.UUID
    graph_id: uuid.UUID
    graph: Graph
    cloud_config: CloudConfig
    variables: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CompiledCode:
    """Generated Terraform source, one segment per file."""

    main: str = ""
    variables: str = ""
    outputs: str = ""
    provider: str = ""

    def files(self) -> Dict[str, str]:
        """Map of file name to content as written into the working directory."""
        return {
            "main.tf": self.main,
            "variables.tf": self.variables,
            "outputs.tf": self.outputs,
            "provider.tf": self.provider,
        }


@dataclass
class PlanResult:
    has_changes: bool
    plan_output: str = ""


@dataclass
class ApplyResult:
    outputs: Dict[str, Any]
    state: bytes


@dataclass
class Plan:
    """Summary of a plan run; counts come from the rendered plan's resource_changes."""

    has_changes: bool = False
    changes: int = 0
    resource_adds: int = 0
    resource_mods: int = 0
    resource_dels: int = 0
    plan_output: str = ""


@dataclass
class Result:
    """Outcome of apply/destroy."""

    success: bool
    outputs: Dict[str, Any] = field(default_factory=dict)
    state: Optional[bytes] = None
    error_message: str = ""
