# actions.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .errors import ActionRegistryError

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Contract between the step executor and an external action
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ActionCall:
    """What an action receives: capability, version and resolved inputs."""
    name: str
    version: Optional[str]
    inputs: Mapping[str, str]
    env: Mapping[str, str]
    workspace: Path
    cancel_event: threading.Event


@dataclass
class ActionOutcome:
    """
    StepResult-compatible outcome of an action.

    `lines` go through the workflow command parser like command output.
    """
    exit_code: int = 0
    outputs: Dict[str, str] = field(default_factory=dict)
    lines: List[str] = field(default_factory=list)


ActionHandler = Callable[[ActionCall], ActionOutcome]


def split_reference(ref: str) -> Tuple[str, Optional[str]]:
    """'actions/checkout@v3' -> ('actions/checkout', 'v3')"""
    name, sep, version = ref.strip().partition("@")
    return name, (version if sep else None)


class ActionRegistry:
    """
    Resolves `uses:` references to handlers.

    Handlers are registered per name, optionally per version; a handler
    registered without a version serves every version.
    """

    def __init__(self) -> None:
        self._handlers: Dict[Tuple[str, Optional[str]], ActionHandler] = {}

    def register(self, name: str, handler: ActionHandler, version: Optional[str] = None) -> None:
        self._handlers[(name.lower(), version)] = handler

    def stub(self, name: str, outputs: Optional[Mapping[str, str]] = None) -> None:
        """Register a handler that succeeds without doing anything."""

        def _noop(call: ActionCall) -> ActionOutcome:
            return ActionOutcome(outputs=dict(outputs or {}), lines=[f"{call.name}: stubbed"])

        self.register(name, _noop)

    def names(self) -> List[str]:
        return sorted({n for n, _v in self._handlers})

    def resolve(self, ref: str) -> ActionHandler:
        name, version = split_reference(ref)
        key = name.lower()
        handler = self._handlers.get((key, version)) or self._handlers.get((key, None))
        if handler is None:
            raise ActionRegistryError(ref, "no handler registered")
        return handler

    def invoke(self, ref: str, call: ActionCall) -> ActionOutcome:
        handler = self.resolve(ref)
        logger.debug("invoking action %s with inputs %s", ref, sorted(call.inputs))
        try:
            outcome = handler(call)
        except ActionRegistryError:
            raise
        except Exception as e:
            raise ActionRegistryError(ref, f"{type(e).__name__}: {e}") from e
        if not isinstance(outcome, ActionOutcome):
            raise ActionRegistryError(ref, f"handler returned {type(outcome).__name__}, expected ActionOutcome")
        return outcome
