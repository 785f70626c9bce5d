"""
Error taxonomy for the provisioning engine.

Error Hierarchy:
- EngineError: base class, carries a stable ErrorCode and optional metadata
  - ValidationError / UnsupportedResourceType / CompileError: graph compilation
  - ExecutorInitError / ExecutorRunError (+ timeout, cancelled): Terraform lifecycle
  - StateStoreError: state blob persistence
  - NotFoundError: missing deployment, project or graph
  - InvalidTransitionError: deployment status machine
  - InvalidPayloadError: malformed job payload

Errors raised deep in the stack are wrapped with context on the way up,
keeping their type:

    try:
        code = compiler.compile(graph, cloud)
    except EngineError as e:
        raise e.wrap("compile graph")

    # -> ValidationError("compile graph: validation failed for n1: missing required field: ami")
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    """Stable error codes for programmatic handling."""

    UNKNOWN = "unknown"
    INVALID = "invalid"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INTERNAL = "internal"
    UNAVAILABLE = "unavailable"
    DEADLINE = "deadline_exceeded"


# =============================================================================
# Base
# =============================================================================

class EngineError(Exception):
    """
    Base class for all engine errors.

    The message is human-readable and is what ends up in deployment
    log entries (e.g. "apply error: <message>").
    """
    code = ErrorCode.UNKNOWN

    def __init__(self, message: str, meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.meta: Dict[str, Any] = dict(meta or {})

    def __str__(self) -> str:
        return self.message

    def wrap(self, context: str) -> "EngineError":
        """Prefix the message with ``context`` and return self for re-raising."""
        self.message = f"{context}: {self.message}"
        self.args = (self.message,)
        return self

    def with_meta(self, key: str, value: Any) -> "EngineError":
        """Attach metadata to the error."""
        self.meta[key] = value
        return self


# =============================================================================
# Compilation
# =============================================================================

class ValidationError(EngineError):
    """A node is missing a property its resource type requires."""
    code = ErrorCode.INVALID

    def __init__(self, node_id: str, field: str):
        super().__init__(
            f"validation failed for {node_id}: missing required field: {field}",
            meta={"node_id": node_id, "field": field},
        )
        self.node_id = node_id
        self.field = field


class UnsupportedResourceType(EngineError):
    """No compiler exists for a node's resource type."""
    code = ErrorCode.INVALID

    def __init__(self, resource_type: str):
        super().__init__(
            f"unsupported resource type: {resource_type}",
            meta={"resource_type": resource_type},
        )
        self.resource_type = resource_type


class CompileError(EngineError):
    """A node passed validation but could not be rendered, or the graph could not be decoded."""
    code = ErrorCode.INVALID


# =============================================================================
# Executor
# =============================================================================

class ExecutorInitError(EngineError):
    """The working directory or the Terraform binary could not be prepared."""
    code = ErrorCode.UNAVAILABLE
    # Set by the orchestrator, as on ExecutorRunError
    result = None


class ExecutorRunError(EngineError):
    """A Terraform plan/apply/destroy invocation failed."""
    code = ErrorCode.INTERNAL

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        super().__init__(message, meta={"command": command, "returncode": returncode})
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        # Set by the orchestrator: Result(success=False, error_message=...)
        self.result = None


class ExecutorTimeoutError(ExecutorRunError):
    """A Terraform invocation exceeded its time box and was killed."""
    code = ErrorCode.DEADLINE


class ExecutorCancelledError(ExecutorRunError):
    """A Terraform invocation was interrupted by a cancellation request."""


# =============================================================================
# Persistence and lifecycle
# =============================================================================

class StateStoreError(EngineError):
    """The opaque state blob could not be read or written."""
    code = ErrorCode.INTERNAL


class NotFoundError(EngineError):
    """Deployment, project or graph does not exist."""
    code = ErrorCode.NOT_FOUND


class InvalidTransitionError(EngineError):
    """A deployment status change is not allowed by the lifecycle."""
    code = ErrorCode.CONFLICT


class InvalidPayloadError(EngineError):
    """A job payload could not be decoded."""
    code = ErrorCode.INVALID


def error_summary(e: Exception) -> Dict[str, Any]:
    """
    Summarize an exception for the ``data`` field of a deployment log entry.

    Engine errors expose their code and metadata; anything else is
    reported with the ``internal`` code.
    """
    if isinstance(e, EngineError):
        summary = {"error": str(e), "code": e.code.value}
        if e.meta:
            summary["meta"] = {k: v for k, v in e.meta.items() if v is not None}
        return summary

    logger.debug(f"Summarizing non-engine error: {type(e).__name__}")
    return {"error": str(e), "code": ErrorCode.INTERNAL.value}
