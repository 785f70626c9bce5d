"""
Terraform executor: drives the external ``terraform`` binary in one working directory.

One executor instance serves one lifecycle call. The working directory is
created fresh for it (see new_working_dir) and removed by cleanup(); the
executor is also a context manager that cleans up on exit.

Every invocation is a subprocess polled until it finishes. It is
terminated, then killed, when the time box elapses or the cancel event
is set.

Usage:
    workdir = new_working_dir(settings.terraform.working_dir, deployment_id)
    with TerraformExecutor(workdir, timeout=600) as executor:
        executor.initialize(code)
        result = executor.apply()
"""

import json
import logging
import os
import shutil
import signal
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from iacstudio.errors import (
    ExecutorCancelledError,
    ExecutorInitError,
    ExecutorRunError,
    ExecutorTimeoutError,
)
from iacstudio.provisioning.types import ApplyResult, CompiledCode, PlanResult

logger = logging.getLogger(__name__)

STATE_FILE = "terraform.tfstate"
PLAN_FILE = "tfplan"

# Seconds between checks of the deadline and cancel event
POLL_INTERVAL = 0.2
# Grace period after SIGTERM before SIGKILL
TERMINATE_GRACE = 5.0
# Longest stderr/stdout excerpt carried in error messages
_MAX_ERROR_OUTPUT = 2000


@dataclass
class CommandResult:
    """Captured outcome of one terraform invocation."""

    command: str
    returncode: int
    stdout: str
    stderr: str
    elapsed: float

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def new_working_dir(base_dir: Union[str, Path], deployment_id: Union[str, uuid.UUID]) -> Path:
    """
    Create a fresh per-call directory ``<base>/<deployment_id>/<monotonic ns>``.

    The directory is created here so two concurrent calls can never share
    one; on a collision a ``-<n>`` suffix is appended.
    """
    parent = Path(base_dir) / str(deployment_id)
    stamp = str(time.monotonic_ns())
    candidate = parent / stamp
    attempt = 0
    while True:
        try:
            candidate.mkdir(parents=True, exist_ok=False)
            return candidate
        except FileExistsError:
            attempt += 1
            candidate = parent / f"{stamp}-{attempt}"


class TerraformExecutor:
    """
    Runs init/plan/apply/destroy in a single working directory.

    Args:
        working_dir: Directory holding the generated files and state
        binary: Terraform executable name or path (looked up on PATH)
        timeout: Time box in seconds for each invocation
        cancel_event: Optional event; when set, the running command is stopped
        env: Extra environment variables for every invocation
        deployment_id: Used only to prefix log lines
    """

    def __init__(
        self,
        working_dir: Union[str, Path],
        binary: str = "terraform",
        timeout: float = 3600,
        cancel_event: Optional[threading.Event] = None,
        env: Optional[Mapping[str, str]] = None,
        deployment_id: Optional[Union[str, uuid.UUID]] = None,
    ):
        self.working_dir = Path(working_dir)
        self.binary = binary
        self.timeout = timeout
        self.cancel_event = cancel_event
        self.extra_env: Dict[str, str] = dict(env or {})
        self.deployment_id = str(deployment_id) if deployment_id else self.working_dir.name
        self._binary_path: Optional[str] = None
        self._initialized = False

    def __enter__(self) -> "TerraformExecutor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    # ----- setup / teardown ---------------------------------------------------

    def seed_state(self, blob: bytes) -> Path:
        """Write a prior state blob verbatim as terraform.tfstate."""
        self.working_dir.mkdir(parents=True, exist_ok=True)
        state_path = self.working_dir / STATE_FILE
        state_path.write_bytes(blob)
        logger.debug(f"[{self.deployment_id}] Seeded {len(blob)} bytes of state")
        return state_path

    def initialize(self, code: CompiledCode) -> None:
        """
        Write the generated files, locate the binary and run ``terraform init``.

        Raises:
            ExecutorInitError: Directory not writable, binary missing or init failed
        """
        try:
            self.working_dir.mkdir(parents=True, exist_ok=True)
            for name, content in code.files().items():
                (self.working_dir / name).write_text(content, encoding="utf-8")
        except OSError as e:
            raise ExecutorInitError(f"write terraform files: {e}")

        env = self._build_env()
        binary_path = shutil.which(self.binary, path=env.get("PATH"))
        if binary_path is None:
            raise ExecutorInitError(
                f"terraform binary {self.binary!r} not found on PATH",
                meta={"binary": self.binary},
            )
        self._binary_path = binary_path

        try:
            result = self._run(["init", "-input=false", "-no-color", "-upgrade"])
        except ExecutorRunError as e:
            raise ExecutorInitError(f"terraform init: {e}", meta=e.meta)
        if not result.ok:
            raise ExecutorInitError(
                _failure_message("init", result),
                meta={"command": result.command, "returncode": result.returncode},
            )

        self._initialized = True
        logger.info(
            f"[{self.deployment_id}] Terraform initialized",
            extra={"deployment_id": self.deployment_id, "working_dir": str(self.working_dir)},
        )

    def cleanup(self) -> None:
        """Remove the working directory and everything in it. Safe to call twice."""
        if self.working_dir.exists():
            shutil.rmtree(self.working_dir, ignore_errors=True)
            logger.debug(f"[{self.deployment_id}] Removed {self.working_dir}")

    # ----- lifecycle steps ----------------------------------------------------

    def plan(self) -> PlanResult:
        """
        Compute the change set.

        Exit code 0 means no changes, 2 means changes pending. The rendered
        plan is best-effort: a failed ``show`` leaves plan_output empty.
        """
        self._require_initialized()

        result = self._run(
            ["plan", "-input=false", "-no-color", "-detailed-exitcode", f"-out={PLAN_FILE}"],
        )
        if result.returncode not in (0, 2):
            raise _run_error("plan", result)
        has_changes = result.returncode == 2

        plan_output = ""
        try:
            shown = self._run(["show", "-json", "-no-color", PLAN_FILE])
        except ExecutorRunError as e:
            logger.warning(f"[{self.deployment_id}] Could not render plan: {e}")
        else:
            if shown.ok:
                plan_output = shown.stdout
            else:
                logger.warning(f"[{self.deployment_id}] Could not render plan: {_excerpt(shown)}")

        return PlanResult(has_changes=has_changes, plan_output=plan_output)

    def apply(self) -> ApplyResult:
        """Apply without confirmation, then collect outputs and the resulting state."""
        self._require_initialized()

        result = self._run(["apply", "-input=false", "-no-color", "-auto-approve"])
        if not result.ok:
            raise _run_error("apply", result)

        return ApplyResult(outputs=self._read_outputs(), state=self._read_state())

    def destroy(self) -> None:
        """Destroy everything tracked by the state in the working directory."""
        self._require_initialized()

        result = self._run(["destroy", "-input=false", "-no-color", "-auto-approve"])
        if not result.ok:
            raise _run_error("destroy", result)

    # ----- helpers ------------------------------------------------------------

    def _read_outputs(self) -> Dict[str, Any]:
        try:
            result = self._run(["output", "-json", "-no-color"])
        except ExecutorRunError as e:
            logger.warning(f"[{self.deployment_id}] Could not read outputs: {e}")
            return {}
        if not result.ok:
            logger.warning(f"[{self.deployment_id}] Could not read outputs: {_excerpt(result)}")
            return {}
        try:
            raw = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            logger.warning(f"[{self.deployment_id}] Malformed output JSON: {e}")
            return {}
        if not isinstance(raw, dict):
            return {}
        return {
            name: meta.get("value") if isinstance(meta, dict) else meta
            for name, meta in raw.items()
        }

    def _read_state(self) -> bytes:
        state_path = self.working_dir / STATE_FILE
        if state_path.exists():
            return state_path.read_bytes()

        result = self._run(["show", "-json", "-no-color"])
        if not result.ok:
            raise _run_error("show", result)
        return result.stdout.encode("utf-8")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise ExecutorInitError("executor not initialized")

    def _build_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env["TF_IN_AUTOMATION"] = "1"
        env["TF_INPUT"] = "0"
        env.update(self.extra_env)
        return env

    def _run(self, args: Sequence[str]) -> CommandResult:
        """
        Run one terraform subcommand inside the time box.

        Raises:
            ExecutorTimeoutError: Time box elapsed; process was killed
            ExecutorCancelledError: Cancel event set; process was killed
            ExecutorRunError: Process could not be started
        """
        command = f"terraform {args[0]}"
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ExecutorCancelledError(f"{command} cancelled before start", command=command)

        cmd: List[str] = [self._binary_path or self.binary, *args]
        logger.info(
            f"[{self.deployment_id}] Running {command}",
            extra={"deployment_id": self.deployment_id, "command": command},
        )

        start_time = time.monotonic()
        deadline = start_time + self.timeout
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(self.working_dir),
                env=self._build_env(),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            raise ExecutorRunError(f"{command}: {e}", command=command)

        while True:
            try:
                stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if self.cancel_event is not None and self.cancel_event.is_set():
                    stdout, stderr = _terminate(proc)
                    logger.warning(f"[{self.deployment_id}] {command} cancelled")
                    raise ExecutorCancelledError(
                        f"{command} cancelled",
                        command=command,
                        returncode=proc.returncode,
                        stderr=stderr,
                    )
                if time.monotonic() >= deadline:
                    stdout, stderr = _terminate(proc)
                    logger.error(f"[{self.deployment_id}] {command} timed out after {self.timeout}s")
                    raise ExecutorTimeoutError(
                        f"{command} timed out after {self.timeout} seconds",
                        command=command,
                        returncode=proc.returncode,
                        stderr=stderr,
                    )

        elapsed = time.monotonic() - start_time
        logger.debug(f"[{self.deployment_id}] {command} exited {proc.returncode} in {elapsed:.1f}s")
        return CommandResult(
            command=command,
            returncode=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            elapsed=elapsed,
        )


def _terminate(proc: subprocess.Popen) -> Tuple[str, str]:
    """SIGTERM the process group, then SIGKILL after the grace period."""
    _signal(proc, signal.SIGTERM)
    try:
        stdout, stderr = proc.communicate(timeout=TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        _signal(proc, signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)
        try:
            stdout, stderr = proc.communicate(timeout=TERMINATE_GRACE)
        except subprocess.TimeoutExpired:
            logger.error(f"Process {proc.pid} did not exit after kill")
            return "", ""
    return stdout or "", stderr or ""


def _signal(proc: subprocess.Popen, sig: int) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


def _excerpt(result: CommandResult) -> str:
    text = (result.stderr or result.stdout).strip()
    return text[-_MAX_ERROR_OUTPUT:]


def _failure_message(step: str, result: CommandResult) -> str:
    detail = _excerpt(result)
    message = f"terraform {step} exited with code {result.returncode}"
    return f"{message}: {detail}" if detail else message


def _run_error(step: str, result: CommandResult) -> ExecutorRunError:
    return ExecutorRunError(
        _failure_message(step, result),
        command=result.command,
        returncode=result.returncode,
        stderr=result.stderr,
    )
