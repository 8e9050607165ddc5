# context.py
"""
Run-scoped state that expressions read.

The ContextStore is the only object shared between concurrently running
jobs. Each job publishes its result and outputs under its own key, so
writers never touch the same entry; only the mask set takes a lock.
"""

from __future__ import annotations

import copy
import platform
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .config import ContinueOnErrorPolicy
from .model import JobInstance, JobStatus

_SUCCESS = "success"
_FAILURE = "failure"
_SKIPPED = "skipped"
_CANCELLED = "cancelled"


@dataclass(frozen=True)
class ExecutionScopeView:
    """
    Statuses the status functions may see.

    Step scope: conclusions of the job's earlier steps; a skipped step does
    not break success(). Job scope: results of the direct dependencies; a
    skipped dependency does break success().
    """
    statuses: Tuple[str, ...] = ()
    cancelled: bool = False
    skipped_is_success: bool = True

    def success(self) -> bool:
        if self.cancelled:
            return False
        ok = {_SUCCESS, _SKIPPED} if self.skipped_is_success else {_SUCCESS}
        return all(s in ok for s in self.statuses)

    def failure(self) -> bool:
        return _FAILURE in self.statuses


@dataclass(frozen=True)
class ContextView:
    """Immutable snapshot handed to the evaluator."""
    contexts: Mapping[str, Any]
    scope: ExecutionScopeView = field(default_factory=ExecutionScopeView)
    workspace: Path = field(default_factory=Path.cwd)

    def with_contexts(self, **extra: Any) -> "ContextView":
        merged = dict(self.contexts)
        merged.update(extra)
        return ContextView(contexts=merged, scope=self.scope, workspace=self.workspace)


def runner_context(runs_on: Optional[str], temp: Path, tool_cache: Optional[Path] = None) -> Dict[str, Any]:
    label = (runs_on or "").lower()
    if label.startswith("windows"):
        os_name = "Windows"
    elif label.startswith("macos"):
        os_name = "macOS"
    elif label.startswith("ubuntu"):
        os_name = "Linux"
    else:
        os_name = {"Darwin": "macOS", "Windows": "Windows"}.get(platform.system(), "Linux")
    machine = platform.machine().lower()
    arch = {"x86_64": "X64", "amd64": "X64", "arm64": "ARM64", "aarch64": "ARM64"}.get(machine, machine.upper())
    return {
        "name": platform.node() or "actionflow",
        "os": os_name,
        "arch": arch,
        "temp": str(temp),
        "tool_cache": str(tool_cache or temp / "tool-cache"),
        "label": runs_on or "",
    }


class ContextStore:
    """Per-run store of github/env/secrets/inputs contexts, job results and masks."""

    def __init__(
        self,
        *,
        github: Mapping[str, Any],
        env: Optional[Mapping[str, str]] = None,
        secrets: Optional[Mapping[str, str]] = None,
        inputs: Optional[Mapping[str, Any]] = None,
        workspace: Path,
        runner_temp: Path,
        policy: ContinueOnErrorPolicy = ContinueOnErrorPolicy.ISOLATE,
    ):
        self.github: Dict[str, Any] = dict(github)
        self.env: Dict[str, str] = dict(env or {})
        self.secrets: Dict[str, str] = dict(secrets or {})
        self.inputs: Dict[str, Any] = dict(inputs or {})
        self.workspace = workspace
        self.runner_temp = runner_temp
        self.policy = policy

        # job_id -> instances in matrix order (written only by that job's owners)
        self._jobs: Dict[str, List[JobInstance]] = {}
        self._masks: set = set()
        self._mask_lock = threading.Lock()
        self._cancelled = threading.Event()

        for value in self.secrets.values():
            self.add_mask(value)

    # ---- cancellation ----
    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancelled

    # ---- masks ----
    def add_mask(self, value: str) -> None:
        if not value:
            return
        with self._mask_lock:
            self._masks.add(value)
            for line in value.splitlines():
                if line.strip():
                    self._masks.add(line)

    def masks(self) -> frozenset:
        with self._mask_lock:
            return frozenset(self._masks)

    # ---- job results ----
    def register_job(self, job_id: str, instances: Iterable[JobInstance]) -> None:
        self._jobs[job_id] = list(instances)

    def instances(self, job_id: str) -> List[JobInstance]:
        return self._jobs.get(job_id, [])

    def effective_result(self, job_id: str) -> JobStatus:
        """
        Aggregate status of a job (all matrix rows) as dependents see it.
        Failure > Cancelled > Success; Skipped only when every row skipped.
        """
        statuses = []
        for inst in self.instances(job_id):
            status = inst.status
            if (
                status is JobStatus.SUCCESS
                and inst.continued_failure
                and self.policy is ContinueOnErrorPolicy.PROPAGATE
            ):
                status = JobStatus.FAILURE
            statuses.append(status)
        if not statuses:
            return JobStatus.PENDING
        if JobStatus.FAILURE in statuses:
            return JobStatus.FAILURE
        if JobStatus.CANCELLED in statuses:
            return JobStatus.CANCELLED
        if all(s is JobStatus.SKIPPED for s in statuses):
            return JobStatus.SKIPPED
        if all(s.is_terminal for s in statuses):
            return JobStatus.SUCCESS
        return JobStatus.RUNNING

    def job_outputs(self, job_id: str) -> Dict[str, str]:
        """Outputs of a job; matrix rows merge in order, later rows win."""
        merged: Dict[str, str] = {}
        for inst in self.instances(job_id):
            merged.update(inst.outputs)
        return merged

    def needs_context(self, needs: Iterable[str]) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name in needs:
            out[name] = {
                "result": self.effective_result(name).value,
                "outputs": dict(self.job_outputs(name)),
            }
        return out

    # ---- views ----
    def base_contexts(self) -> Dict[str, Any]:
        return {
            "github": copy.deepcopy(self.github),
            "env": dict(self.env),
            "secrets": dict(self.secrets),
            "inputs": copy.deepcopy(self.inputs),
            "vars": {},
        }

    def view_for_job(self, instance: JobInstance) -> ContextView:
        """View used for the job's `if`, env and outputs (job scope)."""
        spec = instance.spec
        statuses = tuple(self.effective_result(n).value for n in spec.needs)
        contexts = self.base_contexts()
        contexts["github"]["job"] = instance.job_id
        contexts.update(
            needs=self.needs_context(spec.needs),
            matrix=copy.deepcopy(instance.matrix),
            strategy={"job-index": instance.index, "job-total": len(self.instances(instance.job_id))},
            runner=runner_context(spec.runs_on, self.runner_temp),
            job={"status": _SUCCESS},
        )
        scope = ExecutionScopeView(statuses=statuses, cancelled=self.cancelled, skipped_is_success=False)
        return ContextView(contexts=contexts, scope=scope, workspace=self.workspace)
