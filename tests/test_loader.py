"""Tests for loading workflow definitions from YAML."""

from __future__ import annotations

from pathlib import Path

import pytest

from actionflow.errors import DefinitionError
from actionflow.loader import load_workflow, loads_workflow

WORKFLOWS = Path(__file__).parent / "workflows"


def test_load_sample_workflow():
    wf = load_workflow(WORKFLOWS / "workflow_commands.yml")
    assert wf.name == "Workflow Commands Demo"
    assert wf.triggers == {"push": {"branches": ["main"]}}
    spec = wf.jobs["workflow-commands"]
    assert spec.runs_on == "ubuntu-latest"
    assert spec.outputs == {"greeting": "${{ steps.output_step.outputs.greeting }}"}

    by_name = {s.name: s for s in spec.steps}
    assert by_name["Set output"].id == "output_step"
    assert by_name["Cancel workflow example"].condition == "false"
    assert by_name["Upload logs as artifacts"].uses == "actions/upload-artifact@v4"
    assert by_name["Upload logs as artifacts"].with_ == {"name": "log-files", "path": "logs/"}
    assert wf.source.endswith("workflow_commands.yml")


def test_bare_on_key_is_read_as_triggers():
    wf = loads_workflow("on: push\njobs:\n  a:\n    steps:\n      - run: echo hi\n")
    assert wf.triggers == {"push": {}}


def test_trigger_list():
    wf = loads_workflow("on: [push, workflow_dispatch]\njobs:\n  a:\n    steps:\n      - run: echo hi\n")
    assert wf.triggers == {"push": {}, "workflow_dispatch": {}}


def test_name_defaults_to_file_stem(tmp_path):
    path = tmp_path / "nightly.yaml"
    path.write_text("jobs:\n  a:\n    steps:\n      - run: echo hi\n", encoding="utf-8")
    assert load_workflow(path).name == "nightly"


def test_job_fields():
    text = """
jobs:
  build:
    name: Build it
    runs-on: [ubuntu-latest]
    timeout-minutes: 5
    env:
      MODE: release
    steps:
      - run: make
  test:
    needs: build
    if: false
    strategy:
      matrix:
        py: ["3.11", "3.12"]
        include:
          - py: "3.13"
    steps:
      - name: run tests
        run: pytest
        continue-on-error: true
        working-directory: src
        shell: sh
"""
    wf = loads_workflow(text)
    build, test = wf.jobs["build"], wf.jobs["test"]
    assert build.display_name == "Build it"
    assert build.runs_on == "ubuntu-latest"
    assert build.timeout_minutes == 5.0
    assert build.env == {"MODE": "release"}
    assert test.needs == ("build",)
    assert test.condition == "false"
    assert test.matrix.axes == {"py": ("3.11", "3.12")}
    assert test.matrix.include == ({"py": "3.13"},)
    step = test.steps[0]
    assert step.continue_on_error is True
    assert step.working_directory == "src"
    assert step.shell == "sh"


def test_duplicate_job_keys_are_rejected():
    text = "jobs:\n  a:\n    steps:\n      - run: one\n  a:\n    steps:\n      - run: two\n"
    with pytest.raises(DefinitionError) as exc:
        loads_workflow(text)
    assert "duplicate key 'a'" in str(exc.value)


@pytest.mark.parametrize(
    "text",
    [
        "jobs: {}\n",
        "just a string\n",
        "jobs:\n  a:\n    steps: []\n",
        "jobs:\n  a:\n    steps:\n      - name: nothing to do\n",
        "jobs:\n  a:\n    steps:\n      - run: x\n        uses: y@v1\n",
        "jobs:\n  a:\n    steps:\n      - id: s\n        run: x\n      - id: s\n        run: y\n",
        "jobs:\n  a:\n    needs: [1]\n    steps:\n      - run: x\n",
        "jobs:\n  a:\n    timeout-minutes: 0\n    steps:\n      - run: x\n",
        "jobs:\n  a:\n    strategy:\n      matrix:\n        os: []\n    steps:\n      - run: x\n",
        "jobs:\n  a:\n    steps:\n      - run: x\n        continue-on-error: 3\n",
        "jobs:\n  a: [\n",
    ],
)
def test_malformed_definitions(text):
    with pytest.raises(DefinitionError):
        loads_workflow(text)


def test_wrong_suffix(tmp_path):
    path = tmp_path / "workflow.json"
    path.write_text("{}", encoding="utf-8")
    with pytest.raises(DefinitionError):
        load_workflow(path)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_workflow(tmp_path / "missing.yml")
