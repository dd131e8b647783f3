"""Console output formatting utilities for ciengine."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from ..concurrency import AdmissionDecision
    from ..model import JobResult, RunOutcome


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors are printed (used by --json)
        """
        self.debug = debug
        self.quiet = quiet
        # jobs report from worker threads; keep multi-line blocks together
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        if self.quiet and not err:
            return
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, workflow: str, run_id: str, event: str, key: Optional[str]) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Run ID: {run_id}",
            f"Event: {event}",
            f"Concurrency group: {key or '-'}",
        )

    def print_event_ignored(self, workflow: str, event: str) -> None:
        self._out(f"\nEVENT IGNORED: {event} does not trigger {workflow}")

    def print_admission(self, decision: "AdmissionDecision") -> None:
        """Print what the concurrency manager decided for the run."""
        line = f"ADMISSION: {decision.kind.value}"
        if decision.previous_run_id:
            line += f" (previous run {decision.previous_run_id[:8]})"
        lines = [line]
        for rid in decision.superseded_run_ids:
            lines.append(f"  superseded queued run {rid[:8]}")
        self._out(*lines)

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_job_cancelled(self, name: str, reason: Optional[str]) -> None:
        self._out(f"JOB CANCELLED: {name}" + (f" ({reason})" if reason else ""))

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP SKIPPED: {name}")

    def print_success(self, name: str) -> None:
        """Print success message."""
        self._out(f"[{name}] STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_plan_level(self, index: int, jobs: Iterable[str]) -> None:
        self._out(f"Level {index}:")
        for name in jobs:
            self._out(f"  {name}")

    def print_results(self, outcome: "RunOutcome") -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, f"RESULTS ({outcome.status.value.upper()})", "=" * 40]
        for job in outcome.jobs:
            lines.append(f"  {job.name}: {job.status.value.upper()}")
            for step in job.steps:
                code = f" (exit={step.exit_code})" if step.exit_code is not None else ""
                lines.append(f"    - {step.name}: {step.status.value}{code}")
        self._out(*lines)

    def print_job_result(self, result: "JobResult") -> None:
        if result.status.value == "succeeded":
            self.print_success(result.name)
        elif result.status.value == "failed":
            self.print_failure(result.name, result.error or "", is_job=True)
        else:
            self.print_job_cancelled(result.name, result.error)

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
        lines = [f"\nERROR: {title}", f"{message}"]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
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
