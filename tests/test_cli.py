"""Tests for the `actionflow` command line."""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from actionflow.cli import cli

WORKFLOWS = Path(__file__).parent / "workflows"


@pytest.fixture
def runner():
    return CliRunner()


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_validate(runner):
    result = runner.invoke(cli, ["validate", str(WORKFLOWS / "context.yml")])
    assert result.exit_code == 0
    assert "OK: Workflow Contexts Demo (1 job(s), 1 instance(s))" in result.output


def test_validate_rejects_cycles(runner, tmp_path):
    path = _write(
        tmp_path / "cycle.yml",
        "jobs:\n  a:\n    needs: b\n    steps:\n      - run: x\n  b:\n    needs: a\n    steps:\n      - run: x\n",
    )
    result = runner.invoke(cli, ["validate", str(path)])
    assert result.exit_code == 1


def test_plan_lists_stages_and_matrix_rows(runner, tmp_path):
    path = _write(
        tmp_path / "ci.yml",
        "name: ci\n"
        "jobs:\n"
        "  build:\n    steps:\n      - run: make\n"
        "  test:\n    needs: build\n    strategy:\n      matrix:\n        py: ['3.11', '3.12']\n"
        "    steps:\n      - run: make test\n",
    )
    result = runner.invoke(cli, ["plan", str(path)])
    assert result.exit_code == 0
    assert "=== Stage 1: build ===" in result.output
    assert "=== Stage 2: test ===" in result.output
    assert '{"py": "3.12"}' in result.output


def test_missing_workflow_file(runner, tmp_path):
    result = runner.invoke(cli, ["validate", str(tmp_path / "nope.yml")])
    assert result.exit_code == 1


def test_run_success_and_secret(runner, tmp_path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    result = runner.invoke(
        cli,
        [
            "run",
            str(WORKFLOWS / "context.yml"),
            "--workspace", str(workspace),
            "--secret", "MY_SECRET=s3cr3t",
            "--workers", "2",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Secret Value: ***" in result.output
    assert "s3cr3t" not in result.output
    assert "RUN SUCCESS" in result.output


def test_run_failure_exit_code(runner, tmp_path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    path = _write(tmp_path / "fail.yml", "jobs:\n  a:\n    steps:\n      - run: exit 4\n")
    result = runner.invoke(cli, ["--quiet", "run", str(path), "--workspace", str(workspace)])
    assert result.exit_code == 1
    assert "RUN FAILURE" in result.output


def test_run_with_stubbed_action(runner, tmp_path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    path = _write(
        tmp_path / "act.yml",
        "jobs:\n  a:\n    steps:\n      - uses: actions/checkout@v4\n      - run: echo done\n",
    )
    without = runner.invoke(cli, ["run", str(path), "--workspace", str(workspace)])
    assert without.exit_code == 1

    with_stub = runner.invoke(
        cli, ["run", str(path), "--workspace", str(workspace), "--stub-action", "actions/checkout@v4"]
    )
    assert with_stub.exit_code == 0, with_stub.output


def test_run_rejects_malformed_secret(runner, tmp_path):
    result = runner.invoke(cli, ["run", str(WORKFLOWS / "context.yml"), "--secret", "no-equals-sign"])
    assert result.exit_code != 0
