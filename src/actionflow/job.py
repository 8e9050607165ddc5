# job.py
from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Dict

from .context import ContextStore, ContextView
from .errors import EvalError
from .executor import JobContext, StepExecutor
from .expressions import evaluate_condition, interpolate, interpolate_value, to_string
from .model import JobInstance, JobStatus, StepStatus
from .ui.console import get_console

logger = logging.getLogger(__name__)


def should_run(instance: JobInstance, store: ContextStore) -> bool:
    """
    Evaluate the job's `if` against its direct dependencies.
    Raises EvalError for a malformed condition.
    """
    return evaluate_condition(instance.spec.condition, store.view_for_job(instance))


class JobRunner:
    """
    Drives one JobInstance from Queued to a terminal status.

    Steps run strictly in declared order. After the first blocking failure
    later steps only run when their `if` says so (failure(), always()).
    """

    def __init__(self, store: ContextStore, executor: StepExecutor, runner_temp: Path):
        self.store = store
        self.executor = executor
        self.runner_temp = runner_temp

    def run(self, instance: JobInstance) -> JobInstance:
        console = get_console()
        if self.store.cancelled:
            return self._complete(instance, JobStatus.CANCELLED, error="run cancelled")
        instance.transition(JobStatus.RUNNING)
        console.print_job_start(instance.display)

        view = self.store.view_for_job(instance)
        try:
            env = self._job_env(instance, view)
        except EvalError as e:
            return self._complete(instance, JobStatus.FAILURE, error=str(e))

        self.runner_temp.mkdir(parents=True, exist_ok=True)
        temp_dir = Path(tempfile.mkdtemp(prefix=f"{instance.job_id}-", dir=self.runner_temp))
        job_ctx = JobContext(instance=instance, store=self.store, view=view, env=env, temp_dir=temp_dir)
        try:
            for step in instance.spec.steps:
                result = self.executor.execute(step, job_ctx)
                instance.steps.append(result)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

        blocking = any(
            s.timed_out or (s.status is StepStatus.FAILURE and not s.continued)
            for s in instance.steps
        )
        if job_ctx.saw_run_cancel or self.store.cancelled:
            status = JobStatus.CANCELLED
        elif blocking:
            status = JobStatus.FAILURE
        else:
            status = JobStatus.SUCCESS

        error = None
        if status in (JobStatus.SUCCESS, JobStatus.FAILURE):
            try:
                instance.outputs = self._outputs(instance, job_ctx)
            except EvalError as e:
                status, error = JobStatus.FAILURE, str(e)
        elif status is JobStatus.CANCELLED:
            error = "run cancelled"
        if status is JobStatus.FAILURE and error is None:
            failed = [s.name for s in instance.steps if s.timed_out or (s.status is StepStatus.FAILURE and not s.continued)]
            error = f"failed step(s): {', '.join(failed)}"
        return self._complete(instance, status, error=error)

    def _job_env(self, instance: JobInstance, view: ContextView) -> Dict[str, str]:
        env = {k: to_string(v) for k, v in interpolate_value(dict(self.store.env), view).items()}
        job_view = view.with_contexts(env=dict(env))
        env.update({k: to_string(v) for k, v in interpolate_value(dict(instance.spec.env), job_view).items()})
        return env

    def _outputs(self, instance: JobInstance, job_ctx: JobContext) -> Dict[str, str]:
        view = job_ctx.step_view()
        return {name: to_string(interpolate(expr, view)) for name, expr in instance.spec.outputs.items()}

    def _complete(self, instance: JobInstance, status: JobStatus, error: str | None = None) -> JobInstance:
        instance.error = error
        instance.transition(status)
        get_console().print_job_result(instance.display, status.value, error)
        logger.debug("job %s -> %s", instance.display, status.value)
        return instance
