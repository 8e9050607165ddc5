# executor.py
from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import commands as cmd
from .actions import ActionCall, ActionOutcome, ActionRegistry
from .config import EngineConfig
from .context import ContextStore, ContextView, ExecutionScopeView
from .errors import ActionRegistryError, EvalError, StepFailure, StepTimeout
from .expressions import evaluate, evaluate_condition, interpolate, interpolate_value, is_truthy, to_string
from .model import Annotation, JobInstance, LogLine, StepResult, StepSpec, StepStatus
from .ui.console import get_console

logger = logging.getLogger(__name__)

SHELLS = {
    "bash": "bash --noprofile --norc -eo pipefail {0}",
    "sh": "sh -e {0}",
    "python": shlex.quote(sys.executable) + " {0}",
}

_POLL_SECONDS = 0.05


# ----------------------------------------------------------------------
# Per-job state the executor reads and mutates
# ----------------------------------------------------------------------

@dataclass
class JobContext:
    """
    Everything a step sees of its job: the job-scoped view, the env
    accumulated by earlier steps, and the `steps` context.
    Never shared between jobs.
    """
    instance: JobInstance
    store: ContextStore
    view: ContextView
    env: Dict[str, str]
    temp_dir: Path
    steps: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    scope_statuses: List[str] = field(default_factory=list)
    saw_run_cancel: bool = False
    counter: int = 0

    @property
    def label(self) -> str:
        return self.instance.display

    def step_view(self, extra_env: Optional[Dict[str, str]] = None) -> ContextView:
        env = dict(self.env)
        env.update(extra_env or {})
        contexts = dict(self.view.contexts)
        contexts["env"] = env
        contexts["steps"] = {k: dict(v) for k, v in self.steps.items()}
        contexts["job"] = {"status": "success" if ExecutionScopeView(tuple(self.scope_statuses)).success() else "failure"}
        scope = ExecutionScopeView(
            statuses=tuple(self.scope_statuses),
            cancelled=self.store.cancelled,
            skipped_is_success=True,
        )
        return ContextView(contexts=contexts, scope=scope, workspace=self.view.workspace)

    def record(self, step: StepSpec, result: StepResult) -> None:
        self.scope_statuses.append("failure" if result.timed_out else result.conclusion.value)
        if step.id:
            self.steps[step.id] = {
                "outputs": dict(result.outputs),
                "outcome": result.outcome.value,
                "conclusion": result.conclusion.value,
            }


@dataclass
class _Completed:
    exit_code: Optional[int]
    lines: List[str]
    outputs: Dict[str, str] = field(default_factory=dict)
    env_updates: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    timed_out: bool = False


# ----------------------------------------------------------------------
# Step executor
# ----------------------------------------------------------------------

class StepExecutor:
    """Runs one step (command or delegated action) and applies its workflow commands."""

    def __init__(
        self,
        config: EngineConfig,
        registry: Optional[ActionRegistry] = None,
        on_cancel_request: Optional[Callable[[str], None]] = None,
    ):
        self.config = config
        self.registry = registry or ActionRegistry()
        self.on_cancel_request = on_cancel_request

    # ---- public ----
    def execute(self, step: StepSpec, job: JobContext) -> StepResult:
        console = get_console()
        result = StepResult(name=step.label, step_id=step.id)
        view = job.step_view()

        try:
            should_run = evaluate_condition(step.condition, view)
        except EvalError as e:
            result.transition(StepStatus.FAILURE)
            result.error = str(e)
            return self._finish(step, job, result)

        if not should_run:
            if job.store.cancelled:
                job.saw_run_cancel = True
                result.transition(StepStatus.CANCELLED)
            else:
                result.transition(StepStatus.SKIPPED)
            return self._finish(step, job, result)

        result.transition(StepStatus.RUNNING)
        console.print_step(job.label, result.name)

        try:
            step_env = {k: to_string(v) for k, v in interpolate_value(dict(step.env), view).items()}
            view = job.step_view(step_env)
            continue_on_error = self._continue_on_error(step, view)
            if step.run is not None:
                completed = self._run_command(step, job, view, step_env)
            else:
                completed = self._run_action(step, job, view, step_env)
        except (EvalError, ActionRegistryError, OSError, ValueError) as e:
            result.transition(StepStatus.FAILURE)
            result.error = str(e)
            result.continued = self._continue_on_error_safe(step, view)
            self._log(job, result, result.error, level="error")
            return self._finish(step, job, result)

        result.exit_code = completed.exit_code
        failed_by_command = self._apply(completed, job, result)

        if completed.timed_out:
            result.timed_out = True
            result.error = str(StepTimeout(job.label, result.name, self._timeout_seconds(step, job)))
            result.transition(StepStatus.CANCELLED)
        elif completed.cancelled:
            job.saw_run_cancel = True
            result.transition(StepStatus.CANCELLED)
        elif completed.exit_code != 0 or failed_by_command:
            result.transition(StepStatus.FAILURE)
            result.continued = continue_on_error
            if result.error is None:
                result.error = str(StepFailure(job.label, result.name, completed.exit_code))
        else:
            result.transition(StepStatus.SUCCESS)
        return self._finish(step, job, result)

    # ---- helpers ----
    def _finish(self, step: StepSpec, job: JobContext, result: StepResult) -> StepResult:
        result.masked = set(job.store.masks())
        job.record(step, result)
        note = "continue-on-error" if result.continued else result.error
        if result.status is not StepStatus.SKIPPED:
            get_console().print_step_result(job.label, result.name, result.status.value, note)
        logger.debug("[%s] step %r -> %s", job.label, result.name, result.status.value)
        return result

    def _continue_on_error(self, step: StepSpec, view: ContextView) -> bool:
        value = step.continue_on_error
        if isinstance(value, str):
            return is_truthy(evaluate(value, view))
        return bool(value)

    def _continue_on_error_safe(self, step: StepSpec, view: ContextView) -> bool:
        try:
            return self._continue_on_error(step, view)
        except EvalError:
            return False

    def _timeout_seconds(self, step: StepSpec, job: JobContext) -> float:
        minutes = [self.config.step_timeout_minutes]
        for value in (step.timeout_minutes, job.instance.spec.timeout_minutes):
            if value is not None:
                minutes.append(float(value))
        return min(minutes) * 60

    def _base_env(self, job: JobContext, step_env: Dict[str, str]) -> Dict[str, str]:
        github = job.view.contexts.get("github", {})
        env = os.environ.copy()
        env.update({
            "CI": "true",
            "GITHUB_ACTIONS": "true",
            "GITHUB_WORKSPACE": str(job.view.workspace),
            "GITHUB_JOB": job.instance.job_id,
            "RUNNER_TEMP": str(job.temp_dir),
            "RUNNER_OS": str(job.view.contexts.get("runner", {}).get("os", "")),
        })
        for key in ("event_name", "actor", "ref", "ref_name", "sha", "repository", "run_id", "run_number", "workflow"):
            if key in github:
                env[f"GITHUB_{key.upper()}"] = to_string(github[key])
        env.update(job.env)
        env.update(step_env)
        return env

    # ---- command steps ----
    def _shell_argv(self, step: StepSpec, script: Path) -> List[str]:
        shell = step.shell or self.config.default_shell
        if not shell:
            shell = "bash" if shutil.which("bash") else "sh"
        template = SHELLS.get(shell, shell)
        if "{0}" not in template:
            template = f"{template} {{0}}"
        return [part.replace("{0}", str(script)) for part in shlex.split(template)]

    def _run_command(self, step: StepSpec, job: JobContext, view: ContextView, step_env: Dict[str, str]) -> _Completed:
        job.counter += 1
        n = job.counter
        script = job.temp_dir / f"step_{n}.sh"
        env_file = job.temp_dir / f"set_env_{n}"
        output_file = job.temp_dir / f"set_output_{n}"
        script.write_text(interpolate(step.run, view), encoding="utf-8")
        env_file.touch()
        output_file.touch()

        cwd = Path(job.view.workspace)
        if step.working_directory:
            cwd = cwd / interpolate(step.working_directory, view)
        if not cwd.is_dir():
            raise ValueError(f"working-directory not found: {cwd}")

        env = self._base_env(job, step_env)
        env["GITHUB_ENV"] = str(env_file)
        env["GITHUB_OUTPUT"] = str(output_file)

        argv = self._shell_argv(step, script)
        logger.debug("[%s] exec %s in %s", job.label, argv, cwd)
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            start_new_session=(os.name == "posix"),
        )
        out, cancelled, timed_out = self._wait_process(proc, self._timeout_seconds(step, job), job.store.cancel_event)

        completed = _Completed(
            exit_code=proc.returncode,
            lines=out.splitlines(),
            cancelled=cancelled,
            timed_out=timed_out,
        )
        completed.env_updates = cmd.read_file_commands(env_file)
        completed.outputs = cmd.read_file_commands(output_file)
        return completed

    def _wait_process(self, proc: subprocess.Popen, timeout: float, cancel_event: threading.Event):
        deadline = time.monotonic() + timeout
        chunks: List[str] = []
        while True:
            try:
                out, _ = proc.communicate(timeout=_POLL_SECONDS)
                chunks.append(out or "")
                return "".join(chunks), False, False
            except subprocess.TimeoutExpired:
                pass
            if cancel_event.is_set():
                return self._stop(proc, chunks), True, False
            if time.monotonic() >= deadline:
                return self._stop(proc, chunks), False, True

    def _stop(self, proc: subprocess.Popen, chunks: List[str]) -> str:
        """Signal the process, give it the grace period, then kill it."""
        _signal(proc, terminate=True)
        try:
            out, _ = proc.communicate(timeout=self.config.cancel_grace_seconds)
        except subprocess.TimeoutExpired:
            _signal(proc, terminate=False)
            out, _ = proc.communicate()
        chunks.append(out or "")
        return "".join(chunks)

    # ---- action steps ----
    def _run_action(self, step: StepSpec, job: JobContext, view: ContextView, step_env: Dict[str, str]) -> _Completed:
        inputs = {k: to_string(v) for k, v in interpolate_value(dict(step.with_), view).items()}
        step_cancel = threading.Event()
        call = ActionCall(
            name=step.uses.partition("@")[0],
            version=step.uses.partition("@")[2] or None,
            inputs=inputs,
            env=self._base_env(job, step_env),
            workspace=Path(job.view.workspace),
            cancel_event=step_cancel,
        )
        box: Dict[str, Any] = {}

        def target() -> None:
            try:
                box["outcome"] = self.registry.invoke(step.uses, call)
            except ActionRegistryError as e:
                box["error"] = e

        # resolve first so an unknown action fails without a thread
        self.registry.resolve(step.uses)
        worker = threading.Thread(target=target, name=f"action:{step.uses}", daemon=True)
        worker.start()

        deadline = time.monotonic() + self._timeout_seconds(step, job)
        cancelled = timed_out = False
        while worker.is_alive():
            worker.join(_POLL_SECONDS)
            if not worker.is_alive():
                break
            if job.store.cancelled:
                cancelled = True
            elif time.monotonic() >= deadline:
                timed_out = True
            if cancelled or timed_out:
                step_cancel.set()
                worker.join(self.config.cancel_grace_seconds)
                break

        if cancelled or timed_out:
            return _Completed(exit_code=None, lines=[], cancelled=cancelled, timed_out=timed_out)
        if "error" in box:
            raise box["error"]
        outcome: ActionOutcome = box["outcome"]
        return _Completed(exit_code=outcome.exit_code, lines=list(outcome.lines), outputs=dict(outcome.outputs))

    # ---- workflow commands ----
    def _apply(self, completed: _Completed, job: JobContext, result: StepResult) -> bool:
        """Apply commands from the output stream, then the env/output files. True if ::fail:: was seen."""
        masker = cmd.Masker(job.store.masks())
        parser = cmd.CommandParser()
        group: Optional[str] = None
        failed = False

        for line in completed.lines:
            item = parser.parse(line)
            if isinstance(item, cmd.Echo):
                self._log(job, result, masker(item.text), group=group)
            elif isinstance(item, cmd.AddMask):
                job.store.add_mask(item.value)
                masker.add(item.value)
            elif isinstance(item, cmd.SetEnv):
                job.env[item.name] = item.value
            elif isinstance(item, cmd.SetOutput):
                result.outputs[item.name] = item.value
            elif isinstance(item, cmd.Group):
                group = masker(item.title)
                self._log(job, result, group, group=group, level="group")
            elif isinstance(item, cmd.EndGroup):
                group = None
            elif isinstance(item, cmd.Annotation):
                message = masker(item.message)
                props = item.properties
                result.annotations.append(Annotation(
                    level=item.level,
                    message=message,
                    file=props.get("file"),
                    line=_int_or_none(props.get("line")),
                    col=_int_or_none(props.get("col")),
                    title=props.get("title"),
                ))
                self._log(job, result, message, group=group, level=item.level)
            elif isinstance(item, cmd.Debug):
                self._log(job, result, masker(item.message), group=group, level="debug")
            elif isinstance(item, cmd.Cancel):
                self._log(job, result, masker(item.message or "cancel requested"), level="warning")
                if self.on_cancel_request is not None:
                    self.on_cancel_request(job.instance.job_id)
                else:
                    job.store.cancel()
            elif isinstance(item, cmd.Fail):
                failed = True
                result.error = masker(item.message) or "failed by ::fail::"
                self._log(job, result, result.error, level="error")

        job.env.update(completed.env_updates)
        result.outputs.update(completed.outputs)
        return failed

    def _log(self, job: JobContext, result: StepResult, text: str, group: Optional[str] = None, level: str = "info") -> None:
        result.log.append(LogLine(text=text, group=group, level=level))
        get_console().print_log(job.label, text, group=group, level=level)


def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def _signal(proc: subprocess.Popen, terminate: bool) -> None:
    if proc.poll() is not None:
        return
    if os.name == "posix":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGTERM if terminate else signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    if terminate:
        proc.terminate()
    else:
        proc.kill()
