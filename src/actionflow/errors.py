# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class ActionflowError(Exception):
    """Base class for every error raised by the engine."""


# ----------------------------------------------------------------------
# Definition errors (fatal, raised before any job runs)
# ----------------------------------------------------------------------

@dataclass
class DefinitionError(ActionflowError):
    """
    A workflow definition that cannot be scheduled.

    Raised for duplicate job names, unknown `needs` references, malformed
    matrices and malformed steps. The run never starts.
    """
    message: str
    job: Optional[str] = None

    def __str__(self) -> str:
        if self.job:
            return f"[{self.job}] {self.message}"
        return self.message


@dataclass
class CycleError(DefinitionError):
    cycle: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"{self.message}: {' -> '.join(self.cycle)}"


# ----------------------------------------------------------------------
# Expression errors
# ----------------------------------------------------------------------

@dataclass
class EvalError(ActionflowError):
    """Malformed expression. Callers turn it into a step/job failure."""
    kind: str
    expression: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind} error in expression '{self.expression}': {self.message}"


# ----------------------------------------------------------------------
# Execution errors
# ----------------------------------------------------------------------

@dataclass
class StepFailure(ActionflowError):
    job: str
    step: str
    exit_code: int
    message: str = ""

    def __str__(self) -> str:
        msg = f"[{self.job}] step '{self.step}' failed (exit={self.exit_code})"
        if self.message:
            msg += f": {self.message}"
        return msg


@dataclass
class StepTimeout(ActionflowError):
    job: str
    step: str
    seconds: float

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' timed out after {self.seconds:g}s"


@dataclass
class ActionRegistryError(ActionflowError):
    """Unknown action, or an action whose handler raised."""
    action: str
    message: str

    def __str__(self) -> str:
        return f"action '{self.action}': {self.message}"


@dataclass
class SecretNotFound(ActionflowError):
    name: str

    def __str__(self) -> str:
        return f"secret not found: {self.name}"


@dataclass
class InvalidTransition(ActionflowError):
    entity: str
    current: str
    requested: str

    def __str__(self) -> str:
        return f"{self.entity}: cannot move from {self.current} to {self.requested}"


@dataclass
class ConfigError(ActionflowError):
    message: str
    source: Optional[str] = None

    def __str__(self) -> str:
        if self.source:
            return f"{self.source}: {self.message}"
        return self.message
