# model.py
from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .errors import InvalidTransition


# ----------------------------------------------------------------------
# Statuses
# ----------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _JOB_TERMINAL


_JOB_TERMINAL = {JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.CANCELLED, JobStatus.SKIPPED}


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (StepStatus.PENDING, StepStatus.RUNNING)


class RunStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"

    @property
    def badge(self) -> str:
        return self.value

    @property
    def exit_code(self) -> int:
        return {RunStatus.SUCCESS: 0, RunStatus.FAILURE: 1, RunStatus.CANCELLED: 2}[self]


# ----------------------------------------------------------------------
# Definitions (immutable, parsed once per run)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class StepSpec:
    """A single step inside a job: either a command body or an action."""
    name: str
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    condition: Optional[str] = None
    with_: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, Any] = field(default_factory=dict)
    continue_on_error: Union[bool, str] = False
    shell: Optional[str] = None
    working_directory: Optional[str] = None
    timeout_minutes: Optional[float] = None

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        if self.run:
            return f"Run {self.run.strip().splitlines()[0]}"
        return f"Run {self.uses}"


@dataclass(frozen=True)
class MatrixSpec:
    """
    `strategy.matrix` of a job.

    axes keep their declared order; combinations() is the row-major
    cartesian product, then `exclude`, then `include`.
    """
    axes: Mapping[str, Tuple[Any, ...]]
    include: Tuple[Mapping[str, Any], ...] = ()
    exclude: Tuple[Mapping[str, Any], ...] = ()

    def combinations(self) -> List[Dict[str, Any]]:
        names = list(self.axes)
        rows: List[Dict[str, Any]] = []
        if names:
            for values in itertools.product(*(self.axes[n] for n in names)):
                rows.append(dict(zip(names, values)))

        rows = [r for r in rows if not any(_matches(r, ex) for ex in self.exclude)]

        extra: List[Dict[str, Any]] = []
        for inc in self.include:
            matched = False
            for row in rows:
                # an include may add keys but must not overwrite an original axis value
                if all(row.get(k) == v for k, v in inc.items() if k in self.axes):
                    row.update({k: v for k, v in inc.items() if k not in self.axes})
                    matched = True
            if not matched:
                extra.append(dict(inc))
        return rows + extra


def _matches(row: Mapping[str, Any], partial: Mapping[str, Any]) -> bool:
    return all(row.get(k) == v for k, v in partial.items())


@dataclass(frozen=True)
class JobSpec:
    """
    A job: ordered steps + dependencies.

    `needs` order is irrelevant for scheduling but kept for deterministic
    output merging.
    """
    name: str
    steps: Tuple[StepSpec, ...]
    needs: Tuple[str, ...] = ()
    condition: Optional[str] = None
    matrix: Optional[MatrixSpec] = None
    outputs: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, Any] = field(default_factory=dict)
    display_name: Optional[str] = None
    runs_on: Optional[str] = None
    timeout_minutes: Optional[float] = None


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    jobs: Mapping[str, JobSpec]
    triggers: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, Any] = field(default_factory=dict)
    source: Optional[str] = None

    def job_names(self) -> List[str]:
        return list(self.jobs)

    def iter_expressions(self) -> Iterator[str]:
        """Every string in the definition that may hold an expression."""
        yield from _strings(self.env)
        for job in self.jobs.values():
            if job.condition:
                yield job.condition
            yield from _strings(job.env)
            yield from _strings(job.outputs)
            for step in job.steps:
                for value in (step.condition, step.run, step.working_directory):
                    if value:
                        yield value
                if isinstance(step.continue_on_error, str):
                    yield step.continue_on_error
                yield from _strings(step.env)
                yield from _strings(step.with_)


def _strings(obj: Any) -> Iterator[str]:
    if isinstance(obj, str):
        yield obj
    elif isinstance(obj, Mapping):
        for v in obj.values():
            yield from _strings(v)
    elif isinstance(obj, (list, tuple)):
        for v in obj:
            yield from _strings(v)


# ----------------------------------------------------------------------
# Runtime state (owned by a run)
# ----------------------------------------------------------------------

@dataclass
class LogLine:
    text: str
    group: Optional[str] = None
    level: str = "info"


@dataclass
class Annotation:
    level: str  # warning | error | notice
    message: str
    file: Optional[str] = None
    line: Optional[int] = None
    col: Optional[int] = None
    title: Optional[str] = None


@dataclass
class StepResult:
    name: str
    step_id: Optional[str] = None
    status: StepStatus = StepStatus.PENDING
    continued: bool = False
    timed_out: bool = False
    exit_code: Optional[int] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    masked: set = field(default_factory=set)
    log: List[LogLine] = field(default_factory=list)
    annotations: List[Annotation] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def outcome(self) -> StepStatus:
        return self.status

    @property
    def conclusion(self) -> StepStatus:
        """Status as seen by later steps: a continued failure counts as success."""
        if self.status is StepStatus.FAILURE and self.continued:
            return StepStatus.SUCCESS
        return self.status

    def transition(self, new: StepStatus) -> None:
        if self.status.is_terminal:
            raise InvalidTransition(f"step {self.name!r}", self.status.value, new.value)
        self.status = new


@dataclass
class JobInstance:
    """One schedulable unit: a JobSpec, or one row of its matrix."""
    job_id: str
    spec: JobSpec
    matrix: Dict[str, Any] = field(default_factory=dict)
    index: int = 0
    status: JobStatus = JobStatus.PENDING
    needs_results: Dict[str, JobStatus] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def display(self) -> str:
        base = self.spec.display_name or self.job_id
        if self.matrix:
            return f"{base} ({', '.join(str(v) for v in self.matrix.values())})"
        return base

    @property
    def continued_failure(self) -> bool:
        return any(s.continued for s in self.steps)

    def transition(self, new: JobStatus) -> None:
        if self.status.is_terminal:
            raise InvalidTransition(f"job {self.display!r}", self.status.value, new.value)
        self.status = new


@dataclass(frozen=True)
class RunOutcome:
    run_id: str
    status: RunStatus
    jobs: Dict[str, List[JobStatus]]

    @property
    def exit_code(self) -> int:
        return self.status.exit_code


def worst_status(statuses) -> RunStatus:
    """Failure > Cancelled > Success, ignoring skipped jobs."""
    seen = {s for s in statuses if s is not JobStatus.SKIPPED}
    if JobStatus.FAILURE in seen:
        return RunStatus.FAILURE
    if JobStatus.CANCELLED in seen:
        return RunStatus.CANCELLED
    return RunStatus.SUCCESS
