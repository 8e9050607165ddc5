# runner.py
from __future__ import annotations

import itertools
import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .actions import ActionRegistry
from .config import EngineConfig
from .context import ContextStore
from .dag import ExecutionPlan, Scheduler, plan
from .executor import StepExecutor
from .job import JobRunner
from .model import JobInstance, JobStatus, RunOutcome, RunStatus, WorkflowDefinition, worst_status
from .secrets import SecretsProvider, resolve_secrets
from .trigger import TriggerEvent, dispatch_inputs, github_context
from .ui.console import get_console

logger = logging.getLogger(__name__)

_SECRET_REF = re.compile(r"secrets\s*(?:\.\s*([A-Za-z_][A-Za-z0-9_-]*)|\[\s*'([^']+)'\s*\])")
_run_numbers = itertools.count(1)


def referenced_secrets(definition: WorkflowDefinition) -> List[str]:
    """Names of all secrets the definition mentions, in first-seen order."""
    names: Dict[str, None] = {}
    for text in definition.iter_expressions():
        for m in _SECRET_REF.finditer(text):
            names[m.group(1) or m.group(2)] = None
    return list(names)


@dataclass
class RunInstance:
    """
    One triggered execution of a workflow.

    Owns the ContextStore and every JobInstance; all statuses stay
    queryable after the run completes.
    """
    run_id: str
    definition: WorkflowDefinition
    plan: ExecutionPlan
    trigger: TriggerEvent
    store: ContextStore
    scheduler: Scheduler
    status: Optional[RunStatus] = None
    error: Optional[str] = None
    _done: threading.Event = field(default_factory=threading.Event, repr=False)
    _thread: Optional[threading.Thread] = field(default=None, repr=False)

    @property
    def jobs(self) -> Dict[str, List[JobInstance]]:
        return self.scheduler.instances

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def cancelled(self) -> bool:
        return self.store.cancelled

    def job(self, name: str, index: int = 0) -> JobInstance:
        return self.jobs[name][index]

    def all_instances(self) -> List[JobInstance]:
        return [inst for name in self.plan.order for inst in self.jobs[name]]

    def outcome(self) -> RunOutcome:
        if self.status is None:
            raise RuntimeError(f"run {self.run_id} has not finished")
        return RunOutcome(
            run_id=self.run_id,
            status=self.status,
            jobs={name: [i.status for i in insts] for name, insts in self.jobs.items()},
        )


class RunCoordinator:
    """
    Top-level orchestrator.

        coordinator = RunCoordinator(config, registry=..., secrets=...)
        run = coordinator.start(definition, trigger)
        outcome = coordinator.wait(run)
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        registry: Optional[ActionRegistry] = None,
        secrets: Optional[SecretsProvider] = None,
    ):
        self.config = config or EngineConfig()
        self.registry = registry or ActionRegistry()
        self.secrets = secrets

    def start(self, definition: WorkflowDefinition, trigger: Optional[TriggerEvent] = None) -> RunInstance:
        """Validate, seed contexts and start scheduling in the background. Raises DefinitionError."""
        trigger = trigger or TriggerEvent()
        execution_plan = plan(definition)

        run_id = uuid.uuid4().hex[:12]
        workspace = Path(self.config.workspace).resolve()
        runner_temp = Path(self.config.runner_temp) / run_id

        github = github_context(
            trigger,
            run_id=run_id,
            run_number=next(_run_numbers),
            workflow=definition.name,
            workspace=workspace,
        )
        store = ContextStore(
            github=github,
            env=definition.env,
            secrets=resolve_secrets(self.secrets, referenced_secrets(definition)),
            inputs=dispatch_inputs(definition.triggers, trigger),
            workspace=workspace,
            runner_temp=runner_temp,
            policy=self.config.continue_on_error_policy,
        )
        if "GITHUB_TOKEN" in store.secrets:
            store.github["token"] = store.secrets["GITHUB_TOKEN"]

        executor = StepExecutor(self.config, self.registry, on_cancel_request=lambda _job: store.cancel())
        job_runner = JobRunner(store, executor, runner_temp)
        scheduler = Scheduler(execution_plan, store, job_runner, self.config.worker_count())

        run = RunInstance(
            run_id=run_id,
            definition=definition,
            plan=execution_plan,
            trigger=trigger,
            store=store,
            scheduler=scheduler,
        )
        get_console().print_run_started(definition.name, trigger.event_name, execution_plan.instance_count(), run_id)
        logger.debug("run %s planned: %s", run_id, execution_plan.stages)

        run._thread = threading.Thread(target=self._drive, args=(run,), name=f"run-{run_id}", daemon=True)
        run._thread.start()
        return run

    def _drive(self, run: RunInstance) -> None:
        try:
            run.scheduler.run()
        except Exception as e:  # noqa: BLE001 - surfaced through run.error / Failure
            logger.exception("run %s aborted", run.run_id)
            run.error = f"{type(e).__name__}: {e}"
            for inst in run.all_instances():
                if not inst.status.is_terminal:
                    inst.error = run.error
                    inst.transition(JobStatus.FAILURE)
        finally:
            statuses = [inst.status for inst in run.all_instances()]
            run.status = worst_status(statuses)
            if run.error and run.status is RunStatus.SUCCESS:
                run.status = RunStatus.FAILURE
            run._done.set()

    def wait(self, run: RunInstance, timeout: Optional[float] = None) -> RunOutcome:
        """Block until the run completes. Raises TimeoutError if `timeout` elapses first."""
        if not run._done.wait(timeout):
            raise TimeoutError(f"run {run.run_id} still running after {timeout}s")
        outcome = run.outcome()
        get_console().print_results(
            {inst.display: inst.status.value for inst in run.all_instances()},
            outcome.status.value,
        )
        return outcome

    def cancel(self, run: RunInstance) -> None:
        """Cancel: pending jobs become Cancelled, running steps are signalled."""
        logger.debug("run %s cancel requested", run.run_id)
        run.store.cancel()

    def run(self, definition: WorkflowDefinition, trigger: Optional[TriggerEvent] = None) -> RunInstance:
        """start() + wait(); returns the finished RunInstance."""
        instance = self.start(definition, trigger)
        self.wait(instance)
        return instance
