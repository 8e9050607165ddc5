# loader.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import DefinitionError
from .model import JobSpec, MatrixSpec, StepSpec, WorkflowDefinition


# ----------------------------------------------------------------------
# YAML with duplicate-key detection
# ----------------------------------------------------------------------

class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys (e.g. two jobs named `build`)."""


def _construct_mapping(loader: _UniqueKeyLoader, node: yaml.MappingNode, deep: bool = False):
    loader.flatten_mapping(node)
    mapping: Dict[Any, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise DefinitionError(f"duplicate key {key!r} (line {key_node.start_mark.line + 1})")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


_UniqueKeyLoader.add_constructor(yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_mapping)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> WorkflowDefinition:
    """Load a workflow definition from a .yml/.yaml file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix not in (".yml", ".yaml"):
        raise DefinitionError(f"Workflow must be a .yml or .yaml file, got: {wf_path.name}")
    return loads_workflow(wf_path.read_text(encoding="utf-8"), source=str(wf_path))


def loads_workflow(text: str, source: Optional[str] = None) -> WorkflowDefinition:
    try:
        data = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise DefinitionError(f"invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise DefinitionError("workflow document must be a mapping")
    return parse_workflow(data, source=source)


def parse_workflow(data: Mapping[Any, Any], source: Optional[str] = None) -> WorkflowDefinition:
    """Build a WorkflowDefinition from an already-parsed document."""
    # YAML 1.1 reads a bare `on:` key as boolean True
    triggers = data.get("on", data.get(True, {}))
    jobs_raw = data.get("jobs")
    if not isinstance(jobs_raw, dict) or not jobs_raw:
        raise DefinitionError("workflow must define a non-empty `jobs` mapping")

    jobs: Dict[str, JobSpec] = {}
    for job_id, job_raw in jobs_raw.items():
        job_id = str(job_id)
        if job_id in jobs:
            raise DefinitionError("duplicate job name", job=job_id)
        jobs[job_id] = _parse_job(job_id, job_raw)

    name = data.get("name") or (Path(source).stem if source else "workflow")
    return WorkflowDefinition(
        name=str(name),
        jobs=jobs,
        triggers=_normalize_triggers(triggers),
        env=_mapping(data.get("env"), "env"),
        source=source,
    )


# ----------------------------------------------------------------------
# Pieces
# ----------------------------------------------------------------------

def _normalize_triggers(raw: Any) -> Dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, str):
        return {raw: {}}
    if isinstance(raw, list):
        return {str(e): {} for e in raw}
    if isinstance(raw, dict):
        return {str(k): (v if v is not None else {}) for k, v in raw.items()}
    raise DefinitionError(f"`on` must be a string, list or mapping, got {type(raw).__name__}")


def _mapping(raw: Any, what: str, job: Optional[str] = None) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise DefinitionError(f"`{what}` must be a mapping", job=job)
    return {str(k): v for k, v in raw.items()}


def _condition(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, bool):
        return "true" if raw else "false"
    return str(raw)


def _needs(raw: Any, job_id: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (raw,)
    if isinstance(raw, list) and all(isinstance(n, str) for n in raw):
        return tuple(raw)
    raise DefinitionError("`needs` must be a job name or a list of job names", job=job_id)


def _parse_job(job_id: str, raw: Any) -> JobSpec:
    if not isinstance(raw, dict):
        raise DefinitionError("job must be a mapping", job=job_id)
    steps_raw = raw.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise DefinitionError("job must have at least one step", job=job_id)

    steps = tuple(_parse_step(job_id, i, s) for i, s in enumerate(steps_raw))
    ids = [s.id for s in steps if s.id]
    dupes = sorted({i for i in ids if ids.count(i) > 1})
    if dupes:
        raise DefinitionError(f"duplicate step ids: {dupes}", job=job_id)

    strategy = raw.get("strategy") or {}
    if not isinstance(strategy, dict):
        raise DefinitionError("`strategy` must be a mapping", job=job_id)

    runs_on = raw.get("runs-on")
    if isinstance(runs_on, list):
        runs_on = runs_on[0] if runs_on else None

    return JobSpec(
        name=job_id,
        steps=steps,
        needs=_needs(raw.get("needs"), job_id),
        condition=_condition(raw.get("if")),
        matrix=_parse_matrix(job_id, strategy.get("matrix")),
        outputs={str(k): str(v) for k, v in _mapping(raw.get("outputs"), "outputs", job_id).items()},
        env=_mapping(raw.get("env"), "env", job_id),
        display_name=raw.get("name"),
        runs_on=str(runs_on) if runs_on is not None else None,
        timeout_minutes=_number(raw.get("timeout-minutes"), "timeout-minutes", job_id),
    )


def _parse_matrix(job_id: str, raw: Any) -> Optional[MatrixSpec]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise DefinitionError("`strategy.matrix` must be a mapping", job=job_id)

    axes: Dict[str, Tuple[Any, ...]] = {}
    include: List[Mapping[str, Any]] = []
    exclude: List[Mapping[str, Any]] = []
    for key, values in raw.items():
        key = str(key)
        if key in ("include", "exclude"):
            if not isinstance(values, list) or not all(isinstance(v, dict) for v in values):
                raise DefinitionError(f"matrix `{key}` must be a list of mappings", job=job_id)
            (include if key == "include" else exclude).extend(values)
            continue
        if not isinstance(values, list) or not values:
            raise DefinitionError(f"matrix axis '{key}' must be a non-empty list", job=job_id)
        axes[key] = tuple(values)

    if not axes and not include:
        raise DefinitionError("matrix declares no axes", job=job_id)
    return MatrixSpec(axes=axes, include=tuple(include), exclude=tuple(exclude))


def _parse_step(job_id: str, index: int, raw: Any) -> StepSpec:
    where = f"step {index + 1}"
    if not isinstance(raw, dict):
        raise DefinitionError(f"{where} must be a mapping", job=job_id)
    run, uses = raw.get("run"), raw.get("uses")
    if (run is None) == (uses is None):
        raise DefinitionError(f"{where} must have exactly one of `run` or `uses`", job=job_id)

    coe = raw.get("continue-on-error", False)
    if not isinstance(coe, (bool, str)):
        raise DefinitionError(f"{where}: `continue-on-error` must be a boolean or expression", job=job_id)

    return StepSpec(
        name=str(raw.get("name") or ""),
        id=str(raw["id"]) if raw.get("id") is not None else None,
        run=str(run) if run is not None else None,
        uses=str(uses) if uses is not None else None,
        condition=_condition(raw.get("if")),
        with_=_mapping(raw.get("with"), "with", job_id),
        env=_mapping(raw.get("env"), "env", job_id),
        continue_on_error=coe,
        shell=raw.get("shell"),
        working_directory=raw.get("working-directory"),
        timeout_minutes=_number(raw.get("timeout-minutes"), "timeout-minutes", job_id),
    )


def _number(raw: Any, what: str, job_id: str) -> Optional[float]:
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
        raise DefinitionError(f"`{what}` must be a positive number", job=job_id)
    return float(raw)
