"""Tests for planning: graph validation, topological order and matrix expansion."""

from __future__ import annotations

import pytest

from actionflow.dag import expand_matrix, find_cycle, plan
from actionflow.dsl import job, matrix, sh, workflow
from actionflow.errors import CycleError, DefinitionError
from actionflow.model import JobSpec, MatrixSpec, StepSpec, WorkflowDefinition


def _echo(name="step"):
    return sh(name, "echo hi")


def test_dependency_chain_runs_in_reverse_declaration_order():
    wf = workflow(
        job("job1", _echo(), needs=["job2"]),
        job("job2", _echo(), needs=["job3"]),
        job("job3", _echo()),
    )
    p = plan(wf)
    assert p.order == ("job3", "job2", "job1")
    assert p.stages == (("job3",), ("job2",), ("job1",))
    assert p.dependents["job3"] == ("job2",)


def test_independent_jobs_keep_declaration_order():
    wf = workflow(job("z", _echo()), job("a", _echo()), job("m", _echo()))
    p = plan(wf)
    assert p.order == ("z", "a", "m")
    assert p.stages == (("z", "a", "m"),)


def test_diamond_stages():
    wf = workflow(
        job("build", _echo()),
        job("lint", _echo(), needs=["build"]),
        job("test", _echo(), needs=["build"]),
        job("deploy", _echo(), needs=["lint", "test"]),
    )
    p = plan(wf)
    assert p.stages == (("build",), ("lint", "test"), ("deploy",))
    assert p.order.index("deploy") == 3


def test_cycle_is_reported_with_its_path():
    wf = workflow(
        job("a", _echo(), needs=["c"]),
        job("b", _echo(), needs=["a"]),
        job("c", _echo(), needs=["b"]),
    )
    with pytest.raises(CycleError) as exc:
        plan(wf)
    cycle = exc.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert " -> " in str(exc.value)
    assert isinstance(exc.value, DefinitionError)


def test_self_dependency_is_a_cycle():
    wf = workflow(job("a", _echo(), needs=["a"]))
    assert find_cycle(wf) == ["a", "a"]
    with pytest.raises(CycleError):
        plan(wf)


def test_unknown_needs():
    wf = workflow(job("a", _echo(), needs=["ghost"]))
    with pytest.raises(DefinitionError) as exc:
        plan(wf)
    assert "ghost" in str(exc.value)
    assert exc.value.job == "a"


def test_duplicate_job_names_rejected_by_dsl():
    with pytest.raises(DefinitionError):
        workflow(job("a", _echo()), job("a", _echo()))


def test_empty_workflow_rejected():
    with pytest.raises(DefinitionError):
        plan(WorkflowDefinition(name="empty", jobs={}))


def test_mismatched_job_key_rejected():
    spec = JobSpec(name="real", steps=(StepSpec(name="s", run="true"),))
    with pytest.raises(DefinitionError):
        plan(WorkflowDefinition(name="wf", jobs={"alias": spec}))


# ----------------------------------------------------------------------
# Matrix
# ----------------------------------------------------------------------

def test_matrix_rows_are_row_major():
    spec = job("test", _echo(), matrix=matrix(os=["A", "B"], node=[1, 2]))
    assert list(expand_matrix(spec)) == [
        {"os": "A", "node": 1},
        {"os": "A", "node": 2},
        {"os": "B", "node": 1},
        {"os": "B", "node": 2},
    ]


def test_matrix_exclude():
    spec = job("test", _echo(), matrix=matrix(os=["A", "B"], node=[1, 2], exclude=[{"os": "B", "node": 1}]))
    assert {"os": "B", "node": 1} not in expand_matrix(spec)
    assert len(expand_matrix(spec)) == 3


def test_matrix_include_extends_matching_rows_and_appends_new_ones():
    spec = job(
        "test",
        _echo(),
        matrix=matrix(
            os=["A", "B"],
            node=[1],
            include=[{"os": "A", "experimental": True}, {"os": "C", "node": 9}],
        ),
    )
    assert list(expand_matrix(spec)) == [
        {"os": "A", "node": 1, "experimental": True},
        {"os": "B", "node": 1},
        {"os": "C", "node": 9},
    ]


def test_matrix_rejects_empty_axis():
    spec = JobSpec(name="m", steps=(StepSpec(name="s", run="true"),), matrix=MatrixSpec(axes={"os": ()}))
    with pytest.raises(DefinitionError):
        expand_matrix(spec)


def test_matrix_that_excludes_everything_is_rejected():
    spec = job("m", _echo(), matrix=matrix(os=["A"], exclude=[{"os": "A"}]))
    with pytest.raises(DefinitionError):
        expand_matrix(spec)


def test_plan_instantiates_one_instance_per_row():
    wf = workflow(job("test", _echo(), matrix=matrix(py=["3.11", "3.12", "3.13"])), job("lint", _echo()))
    p = plan(wf)
    assert p.instance_count() == 4
    instances = p.jobs["test"].instantiate()
    assert [i.index for i in instances] == [0, 1, 2]
    assert instances[1].matrix == {"py": "3.12"}
    assert instances[1].display == "test (3.12)"
