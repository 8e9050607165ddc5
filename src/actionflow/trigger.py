# trigger.py
# Trigger descriptors, plus a small wrapper around the Git CLI used to build
# one for a local run. Trigger filters (`on.push.branches`, cron, ...) are
# resolved by whoever fires the trigger, not by the engine.

from __future__ import annotations

import getpass
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class TriggerEvent:
    """Pre-resolved trigger: which event fired and with what payload."""
    event_name: str = "push"
    payload: Mapping[str, Any] = field(default_factory=dict)
    actor: str = ""
    ref: str = ""
    sha: str = ""
    repository: str = ""
    inputs: Mapping[str, Any] = field(default_factory=dict)

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref


def github_context(
    trigger: TriggerEvent,
    *,
    run_id: str,
    run_number: int,
    workflow: str,
    workspace: Path,
) -> Dict[str, Any]:
    owner = trigger.repository.split("/")[0] if "/" in trigger.repository else ""
    return {
        "event_name": trigger.event_name,
        "event": dict(trigger.payload),
        "actor": trigger.actor,
        "ref": trigger.ref,
        "ref_name": trigger.ref_name,
        "sha": trigger.sha,
        "repository": trigger.repository,
        "repository_owner": owner,
        "run_id": run_id,
        "run_number": run_number,
        "workflow": workflow,
        "workspace": str(workspace),
    }


def dispatch_inputs(triggers: Mapping[str, Any], trigger: TriggerEvent) -> Dict[str, Any]:
    """`inputs` context: declared workflow_dispatch defaults overlaid by the trigger's inputs."""
    inputs: Dict[str, Any] = {}
    dispatch = triggers.get("workflow_dispatch") or {}
    declared = dispatch.get("inputs") if isinstance(dispatch, Mapping) else None
    if isinstance(declared, Mapping):
        for name, schema in declared.items():
            if isinstance(schema, Mapping) and "default" in schema:
                inputs[name] = schema["default"]
    inputs.update(trigger.inputs)
    return inputs


# ----------------------------------------------------------------------
# Local git facts
# ----------------------------------------------------------------------

def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """Run git and return stripped stdout. Raises CalledProcessError / FileNotFoundError."""
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """Full ref of the current branch, or the commit SHA when detached."""
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd)


def remote_repository(cwd: Optional[str] = None, remote: str = "origin") -> str:
    """'owner/name' from the remote URL (https or scp-style)."""
    url = _git(["remote", "get-url", remote], cwd).rstrip("/")
    if url.endswith(".git"):
        url = url[: -len(".git")]
    path = url.split(":", 1)[1] if url.startswith("git@") else url
    parts = [p for p in path.split("/") if p]
    return "/".join(parts[-2:])


def local_trigger(
    event_name: str = "push",
    *,
    payload: Optional[Mapping[str, Any]] = None,
    inputs: Optional[Mapping[str, Any]] = None,
    cwd: Optional[str] = None,
) -> TriggerEvent:
    """Trigger descriptor for the checkout in `cwd`; placeholders outside a repo."""
    try:
        sha = head_sha(cwd)
        ref = current_ref(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        sha, ref = "0" * 40, "refs/heads/main"
    try:
        repository = remote_repository(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        repository = f"local/{Path(cwd or '.').resolve().name}"
    try:
        actor = getpass.getuser()
    except (KeyError, OSError):
        actor = "local"

    return TriggerEvent(
        event_name=event_name,
        payload=dict(payload or {}),
        actor=actor,
        ref=ref,
        sha=sha,
        repository=repository,
        inputs=dict(inputs or {}),
    )
