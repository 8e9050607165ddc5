# config.py
from __future__ import annotations

import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError


ENV_PREFIX = "ACTIONFLOW_"


class ContinueOnErrorPolicy(str, Enum):
    """
    How a job whose only failures were `continue-on-error` steps looks to
    its dependents.

    isolate:   dependents see the job as success
    propagate: dependents see the job as failure (the job itself stays success)
    """
    ISOLATE = "isolate"
    PROPAGATE = "propagate"


class EngineConfig(BaseModel):
    """Engine settings. Precedence: defaults < config file < env vars < CLI flags."""

    max_workers: Optional[int] = Field(default=None, ge=1)
    step_timeout_minutes: float = Field(default=360, gt=0)
    cancel_grace_seconds: float = Field(default=7.5, ge=0)
    continue_on_error_policy: ContinueOnErrorPolicy = ContinueOnErrorPolicy.ISOLATE
    workspace: Path = Field(default_factory=Path.cwd)
    runner_temp: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()) / "actionflow")
    default_shell: Optional[str] = None

    def worker_count(self) -> int:
        if self.max_workers is not None:
            return self.max_workers
        c = os.cpu_count() or 2
        return max(2, c - 1)

    def merged(self, **overrides: Any) -> "EngineConfig":
        """Return a copy with every non-None override applied."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return _validate(data, source="overrides")

    @classmethod
    def from_env(cls, base: Optional["EngineConfig"] = None, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        environ = os.environ if environ is None else environ
        data = (base or cls()).model_dump()
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in environ:
                data[name] = environ[key]
        return _validate(data, source="environment")


def load_config(path: str | Path) -> EngineConfig:
    """Load an EngineConfig from a YAML file (keys may use dashes or underscores)."""
    cfg_path = Path(path).expanduser()
    if not cfg_path.exists():
        raise ConfigError("config file not found", source=str(cfg_path))
    try:
        raw = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML: {e}", source=str(cfg_path)) from e
    if not isinstance(raw, dict):
        raise ConfigError("top level must be a mapping", source=str(cfg_path))

    data: Dict[str, Any] = {str(k).replace("-", "_"): v for k, v in raw.items()}
    unknown = sorted(set(data) - set(EngineConfig.model_fields))
    if unknown:
        raise ConfigError(f"unknown keys: {unknown}", source=str(cfg_path))
    return _validate(data, source=str(cfg_path))


def _validate(data: Dict[str, Any], source: str) -> EngineConfig:
    try:
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(str(e), source=source) from e
