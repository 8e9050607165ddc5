# src/actionflow/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .errors import DefinitionError
from .model import JobSpec, MatrixSpec, StepSpec, WorkflowDefinition


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: Optional[str] = None,
    if_: Optional[str] = None,
    env: Optional[Dict[str, Any]] = None,
    continue_on_error: Union[bool, str] = False,
    shell: Optional[str] = None,
    cwd: Optional[str] = None,
    timeout_minutes: Optional[float] = None,
) -> StepSpec:
    """Create a command step."""
    return StepSpec(
        name=name,
        id=id,
        run=cmd,
        condition=if_,
        env=env or {},
        continue_on_error=continue_on_error,
        shell=shell,
        working_directory=cwd,
        timeout_minutes=timeout_minutes,
    )


def uses(
    action: str,
    *,
    name: str = "",
    id: Optional[str] = None,
    if_: Optional[str] = None,
    with_: Optional[Dict[str, Any]] = None,
    env: Optional[Dict[str, Any]] = None,
    continue_on_error: Union[bool, str] = False,
) -> StepSpec:
    """Create a step delegated to the action registry."""
    return StepSpec(
        name=name,
        id=id,
        uses=action,
        condition=if_,
        with_=with_ or {},
        env=env or {},
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    include: Optional[Iterable[Mapping[str, Any]]] = None,
    exclude: Optional[Iterable[Mapping[str, Any]]] = None,
    **axes: Iterable[Any],
) -> MatrixSpec:
    """
    Example:
        job("test", sh(...), matrix=matrix(os=["linux", "mac"], py=["3.11", "3.12"]))
    """
    return MatrixSpec(
        axes={k: tuple(v) for k, v in axes.items()},
        include=tuple(dict(i) for i in include or ()),
        exclude=tuple(dict(e) for e in exclude or ()),
    )


# ---------------------------------------------------------------------
# Job / workflow
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepSpec,  # allow: job("x", sh(...), sh(...))
    needs: Optional[List[str]] = None,
    if_: Optional[str] = None,
    matrix: Optional[MatrixSpec] = None,
    outputs: Optional[Dict[str, str]] = None,
    env: Optional[Dict[str, Any]] = None,
    display_name: Optional[str] = None,
    runs_on: Optional[str] = None,
    timeout_minutes: Optional[float] = None,
) -> JobSpec:
    if not steps:
        raise DefinitionError("job must have at least one step", job=name)
    return JobSpec(
        name=name,
        steps=tuple(steps),
        needs=tuple(needs or ()),
        condition=if_,
        matrix=matrix,
        outputs=dict(outputs or {}),
        env=dict(env or {}),
        display_name=display_name,
        runs_on=runs_on,
        timeout_minutes=timeout_minutes,
    )


def workflow(
    *jobs: JobSpec,
    name: str = "workflow",
    on: Optional[Mapping[str, Any]] = None,
    env: Optional[Dict[str, Any]] = None,
) -> WorkflowDefinition:
    """
    Workflow definition helper:

        from actionflow.dsl import workflow, job, sh

        wf = workflow(
            job("build", sh("compile", "make")),
            job("test", sh("run", "make test"), needs=["build"]),
            name="ci",
        )
    """
    by_name: Dict[str, JobSpec] = {}
    for j in jobs:
        if j.name in by_name:
            raise DefinitionError("duplicate job name", job=j.name)
        by_name[j.name] = j
    return WorkflowDefinition(name=name, jobs=by_name, triggers=dict(on or {}), env=dict(env or {}))


wf = workflow  # short alias
