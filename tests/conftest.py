"""
Shared fixtures for actionflow tests.

Every test gets a quiet console writing into a buffer, and an engine
config whose workspace and runner temp live under tmp_path. Command steps
use `sh` so the suite does not depend on bash being installed.
"""

from __future__ import annotations

import io
import time
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

from actionflow.config import EngineConfig
from actionflow.context import ContextView, ExecutionScopeView
from actionflow.model import JobStatus
from actionflow.runner import RunCoordinator, RunInstance
from actionflow.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def console_buffer():
    """Route engine output into a buffer instead of the terminal."""
    buffer = io.StringIO()
    set_console(Console(quiet=False, stream=buffer))
    yield buffer
    set_console(Console())


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def config(tmp_path: Path, workspace: Path) -> EngineConfig:
    return EngineConfig(
        max_workers=4,
        cancel_grace_seconds=1,
        workspace=workspace,
        runner_temp=tmp_path / "runner-temp",
        default_shell="sh",
    )


@pytest.fixture
def run_workflow(config: EngineConfig):
    """Run a definition to completion and return the finished RunInstance."""

    def _run(definition, *, registry=None, secrets=None, trigger=None, **overrides) -> RunInstance:
        cfg = config.merged(**overrides) if overrides else config
        coordinator = RunCoordinator(cfg, registry=registry, secrets=secrets)
        instance = coordinator.start(definition, trigger)
        coordinator.wait(instance, timeout=60)
        return instance

    return _run


@pytest.fixture
def make_view(workspace: Path):
    """Build a ContextView from plain dicts."""

    def _make(
        contexts: Optional[Dict[str, Any]] = None,
        statuses: tuple = (),
        cancelled: bool = False,
        skipped_is_success: bool = True,
    ) -> ContextView:
        scope = ExecutionScopeView(
            statuses=tuple(statuses),
            cancelled=cancelled,
            skipped_is_success=skipped_is_success,
        )
        return ContextView(contexts=contexts or {}, scope=scope, workspace=workspace)

    return _make


def wait_for_status(instance, status: JobStatus, timeout: float = 10.0) -> None:
    """Poll a JobInstance until it reaches `status`."""
    deadline = time.monotonic() + timeout
    while instance.status is not status:
        if time.monotonic() > deadline:
            raise AssertionError(f"{instance.display} never reached {status.value} (is {instance.status.value})")
        time.sleep(0.01)


def log_text(step_result) -> str:
    return "\n".join(line.text for line in step_result.log)
