"""Console output formatting utilities for actionflow."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional, TextIO


class Console:
    """Centralized console output formatting. Safe to call from job threads."""

    def __init__(self, debug: bool = False, quiet: bool = False, stream: Optional[TextIO] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show ::debug:: lines and full stack traces
            quiet: If True, suppress step log lines (statuses are still printed)
            stream: Output stream (defaults to stdout at call time)
        """
        self.debug = debug
        self.quiet = quiet
        self._stream = stream
        self._lock = threading.Lock()

    def _out(self, text: str = "", err: bool = False) -> None:
        stream = sys.stderr if err else (self._stream or sys.stdout)
        with self._lock:
            print(text, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}\n{'-' * len(title)}")

    def print_run_started(self, workflow: str, event: str, job_count: int, run_id: str) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED\n"
            f"Workflow: {workflow}\n"
            f"Event: {event}\n"
            f"Run ID: {run_id}\n"
            f"Jobs: {job_count}\n"
        )

    def print_plan(self, stages: Iterable[Iterable[str]]) -> None:
        for idx, stage in enumerate(stages, start=1):
            self._out(f"=== Stage {idx}: {', '.join(stage)} ===")

    def print_job_start(self, name: str) -> None:
        self._out(f"\nJOB STARTED: {name}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"\nJOB SKIPPED: {name} ({reason})")

    def print_job_result(self, name: str, status: str, error: Optional[str] = None) -> None:
        self._out(f"JOB {status.upper()}: {name}")
        if error:
            self._out(f"  {error}")

    def print_step(self, job: str, name: str) -> None:
        self._out(f"[{job}] ▶ {name}")

    def print_step_result(self, job: str, name: str, status: str, note: Optional[str] = None) -> None:
        suffix = f" ({note})" if note else ""
        self._out(f"[{job}]   {name}: {status}{suffix}")

    def print_log(self, job: str, line: str, group: Optional[str] = None, level: str = "info") -> None:
        """Print one (already masked) step log line."""
        if self.quiet:
            return
        if level == "debug" and not self.debug:
            return
        prefix = f"[{job}]"
        if level == "group":
            self._out(f"{prefix} ▼ {line}")
        elif level == "debug":
            self._out(f"{prefix} [debug] {line}")
        elif level in ("warning", "error", "notice"):
            self._out(f"{prefix} {level.upper()}: {line}")
        elif group:
            self._out(f"{prefix}   | {line}")
        else:
            self._out(f"{prefix} {line}")

    def print_results(self, results: dict[str, str], status: str) -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40 + "\nRESULTS\n" + "=" * 40)
        for job, job_status in results.items():
            self._out(f"  {job}: {job_status.upper()}")
        self._out(f"\nRUN {status.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out("\n".join(lines), err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
