"""
Persisted records: projects, graph versions and deployments.

Records are plain dataclasses mapped to rows by iacstudio.repository.
JSON columns are kept as text here and decoded where they are consumed.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from iacstudio.lifecycle import DeploymentStatus
from iacstudio.timestamps import isonow


@dataclass
class Project:
    """A user's IaC project; ``settings`` is JSON text with optional region/credentials."""

    id: str
    user_id: str
    name: str
    cloud_provider: str
    settings: Optional[str] = None
    description: str = ""
    archived: bool = False
    created_at: str = ""
    updated_at: str = ""

    def settings_dict(self) -> Dict[str, Any]:
        """Decode settings JSON; malformed or absent settings yield an empty dict."""
        if not self.settings:
            return {}
        try:
            data = json.loads(self.settings)
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}


@dataclass
class ProjectGraph:
    """One immutable version of a project's resource graph."""

    id: str
    project_id: str
    version: int
    nodes: str = "[]"
    edges: str = "[]"
    is_current: bool = False
    created_at: str = ""
    updated_at: str = ""


@dataclass
class DeploymentLog:
    """A structured entry in a deployment's log."""

    level: str
    message: str
    timestamp: str = field(default_factory=isonow)
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization (``data`` omitted when empty)."""
        entry = asdict(self)
        if not entry["data"]:
            entry.pop("data")
        return entry

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeploymentLog":
        return cls(
            level=data.get("level", "info"),
            message=data.get("message", ""),
            timestamp=data.get("timestamp", ""),
            data=data.get("data"),
        )


@dataclass
class Deployment:
    """
    One execution of a project graph.

    Attributes:
        id: Deployment ID (UUID string)
        project_id: Owning project
        graph_id: Graph version being deployed
        status: Lifecycle status
        terraform_state: Opaque state blob (None = never applied, b"null" = cleared)
        outputs: Terraform outputs from the last successful apply
        logs: Appended log entries
    """

    id: str
    project_id: str
    graph_id: str
    status: DeploymentStatus = DeploymentStatus.PENDING
    terraform_state: Optional[bytes] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    logs: List[DeploymentLog] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
