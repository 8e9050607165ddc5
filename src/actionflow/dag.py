# dag.py
from __future__ import annotations

import heapq
import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from .context import ContextStore
from .errors import CycleError, DefinitionError, EvalError
from .job import JobRunner, should_run
from .model import JobInstance, JobSpec, JobStatus, WorkflowDefinition
from .ui.console import get_console

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Planning
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class PlannedJob:
    name: str
    spec: JobSpec
    rows: Tuple[Mapping[str, Any], ...]

    def instantiate(self) -> List[JobInstance]:
        return [
            JobInstance(job_id=self.name, spec=self.spec, matrix=dict(row), index=i)
            for i, row in enumerate(self.rows)
        ]


@dataclass(frozen=True)
class ExecutionPlan:
    """
    order:  one topological order (declaration order breaks ties)
    stages: groups that may run in parallel
    jobs:   job name -> matrix rows, in expansion order
    """
    definition: WorkflowDefinition
    order: Tuple[str, ...]
    stages: Tuple[Tuple[str, ...], ...]
    jobs: Mapping[str, PlannedJob]
    dependents: Mapping[str, Tuple[str, ...]]

    def instance_count(self) -> int:
        return sum(len(j.rows) for j in self.jobs.values())


def build_dag(definition: WorkflowDefinition) -> Tuple[Dict[str, List[str]], Dict[str, int]]:
    """
    Build the dependency graph from `needs`.

    Returns adj (job -> dependents, declaration order) and indeg.
    Raises DefinitionError for a reference to a missing job.
    """
    names = definition.job_names()
    adj: Dict[str, List[str]] = {n: [] for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for name, job in definition.jobs.items():
        if job.name != name:
            raise DefinitionError(f"job key {name!r} does not match job name {job.name!r}", job=name)
        for dep in dict.fromkeys(job.needs):
            if dep not in adj:
                raise DefinitionError(
                    f"needs unknown job '{dep}'. Known jobs: {sorted(names)}",
                    job=name,
                )
            adj[dep].append(name)
            indeg[name] += 1
    return adj, indeg


def find_cycle(definition: WorkflowDefinition) -> Optional[List[str]]:
    """Return one dependency cycle as a path [a, b, ..., a], or None."""
    white, grey, black = 0, 1, 2
    color = {n: white for n in definition.jobs}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = grey
        stack.append(node)
        for dep in definition.jobs[node].needs:
            if color.get(dep) == grey:
                start = stack.index(dep)
                return stack[start:] + [dep]
            if color.get(dep) == white:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = black
        return None

    for name in definition.jobs:
        if color[name] == white:
            found = visit(name)
            if found:
                # report in execution direction: dependency -> dependent
                return list(reversed(found))
    return None


def topo_order(definition: WorkflowDefinition, adj: Dict[str, List[str]], indeg: Dict[str, int]) -> List[str]:
    rank = {n: i for i, n in enumerate(definition.jobs)}
    indeg = dict(indeg)
    heap = [(rank[n], n) for n, d in indeg.items() if d == 0]
    heapq.heapify(heap)
    order: List[str] = []
    while heap:
        _, node = heapq.heappop(heap)
        order.append(node)
        for child in adj[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, (rank[child], child))
    return order


def topo_levels(definition: WorkflowDefinition, adj: Dict[str, List[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """Topological "levels" (stages); each stage can run in parallel."""
    rank = {n: i for i, n in enumerate(definition.jobs)}
    indeg = dict(indeg)
    level = sorted((n for n, d in indeg.items() if d == 0), key=rank.get)
    levels: List[List[str]] = []
    while level:
        levels.append(level)
        nxt: List[str] = []
        for node in level:
            for child in adj[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        level = sorted(nxt, key=rank.get)
    return levels


def expand_matrix(job: JobSpec) -> Tuple[Mapping[str, Any], ...]:
    if job.matrix is None:
        return ({},)
    for axis, values in job.matrix.axes.items():
        if not isinstance(values, (list, tuple)) or len(values) == 0:
            raise DefinitionError(f"matrix axis '{axis}' must be a non-empty list", job=job.name)
    rows = job.matrix.combinations()
    if not rows:
        raise DefinitionError("matrix produces no combinations", job=job.name)
    return tuple(rows)


def plan(definition: WorkflowDefinition) -> ExecutionPlan:
    """
    Validate the job graph and compute an ExecutionPlan.

    Raises DefinitionError (unknown needs, bad matrix) or CycleError.
    """
    if not definition.jobs:
        raise DefinitionError("workflow has no jobs")

    adj, indeg = build_dag(definition)
    cycle = find_cycle(definition)
    if cycle:
        raise CycleError("dependency cycle detected", cycle=cycle)

    order = topo_order(definition, adj, indeg)
    if len(order) != len(definition.jobs):  # pragma: no cover - find_cycle catches this first
        stuck = sorted(set(definition.jobs) - set(order))
        raise CycleError("dependency cycle detected", cycle=stuck)

    jobs = {name: PlannedJob(name, spec, expand_matrix(spec)) for name, spec in definition.jobs.items()}
    return ExecutionPlan(
        definition=definition,
        order=tuple(order),
        stages=tuple(tuple(level) for level in topo_levels(definition, adj, indeg)),
        jobs=jobs,
        dependents={n: tuple(children) for n, children in adj.items()},
    )


# ----------------------------------------------------------------------
# Scheduling
# ----------------------------------------------------------------------

class Scheduler:
    """
    Runs an ExecutionPlan to completion.

    A job stays Blocked until every instance of every dependency is
    terminal; each completion wakes the loop, which re-evaluates readiness.
    Jobs that become ready together are submitted in declaration order.
    """

    def __init__(self, plan: ExecutionPlan, store: ContextStore, job_runner: JobRunner, max_workers: int):
        self.plan = plan
        self.store = store
        self.job_runner = job_runner
        self.max_workers = max_workers
        self.instances: Dict[str, List[JobInstance]] = {}
        self._rank = {n: i for i, n in enumerate(plan.definition.jobs)}

        for name in plan.order:
            insts = plan.jobs[name].instantiate()
            for inst in insts:
                inst.transition(JobStatus.BLOCKED if inst.spec.needs else JobStatus.QUEUED)
            self.instances[name] = insts
            store.register_job(name, insts)

    def run(self) -> Dict[str, List[JobInstance]]:
        waiting: Dict[str, Set[str]] = {n: set(self.plan.jobs[n].spec.needs) for n in self.plan.order}
        ready: List[str] = [n for n in self.plan.order if not waiting[n]]
        in_flight: Dict[Future, JobInstance] = {}
        remaining: Dict[str, int] = {n: len(insts) for n, insts in self.instances.items()}

        def finished(name: str) -> None:
            for child in self.plan.dependents[name]:
                waiting[child].discard(name)
                if not waiting[child]:
                    ready.append(child)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="job") as pool:
            while ready or in_flight:
                while ready:
                    ready.sort(key=self._rank.get)
                    name = ready.pop(0)
                    submitted = 0
                    for inst in self.instances[name]:
                        if self._release(inst):
                            in_flight[pool.submit(self.job_runner.run, inst)] = inst
                            submitted += 1
                    remaining[name] = submitted
                    if submitted == 0:
                        finished(name)

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: (self._rank[in_flight[f].job_id], in_flight[f].index)):
                    inst = in_flight.pop(fut)
                    try:
                        fut.result()
                    except Exception as e:  # noqa: BLE001 - a crashed job must not stop the run
                        logger.exception("job %s crashed", inst.display)
                        if not inst.status.is_terminal:
                            inst.error = f"{type(e).__name__}: {e}"
                            inst.transition(JobStatus.FAILURE)
                            get_console().print_job_result(inst.display, inst.status.value, inst.error)
                    remaining[inst.job_id] -= 1
                    if remaining[inst.job_id] == 0:
                        finished(inst.job_id)

        return self.instances

    def _release(self, inst: JobInstance) -> bool:
        """Blocked -> Queued (True) or straight to Skipped/Cancelled/Failure (False)."""
        console = get_console()
        spec = inst.spec
        inst.needs_results = {n: self.store.effective_result(n) for n in spec.needs}

        if self.store.cancelled:
            inst.error = "run cancelled"
            inst.transition(JobStatus.CANCELLED)
            console.print_job_skipped(inst.display, "run cancelled")
            return False

        try:
            ok = should_run(inst, self.store)
        except EvalError as e:
            inst.error = str(e)
            inst.transition(JobStatus.FAILURE)
            console.print_job_result(inst.display, inst.status.value, inst.error)
            return False

        if not ok:
            inst.transition(JobStatus.SKIPPED)
            reason = f"if: {spec.condition}" if spec.condition else "a dependency did not succeed"
            console.print_job_skipped(inst.display, reason)
            return False

        if inst.status is JobStatus.BLOCKED:
            inst.transition(JobStatus.QUEUED)
        return True
