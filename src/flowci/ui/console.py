"""Console output formatting utilities for flowci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from flowci.state import RunSnapshot, TransitionEvent


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only warnings, errors and the final results are printed
        """
        self.debug = debug
        self.quiet = quiet
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_run_started(
        self,
        workflow: str,
        run_id: str,
        job_count: int,
        event: str,
    ) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._out(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Run ID: {run_id}",
            f"Event: {event}",
            f"Jobs: {job_count}",
            "",
        )

    def print_transition(self, event: "TransitionEvent") -> None:
        """Render one job status transition."""
        if self.quiet:
            return
        status = event.status.upper()
        line = f"[{event.instance}] {status}"
        if event.worker and event.status == "running":
            line += f" on {event.worker}"
        if event.reason:
            line += f" ({event.reason})"
        self._out(line)

    def print_step(self, job: str, step: str) -> None:
        """Print step start message."""
        if self.quiet:
            return
        self._out(f"[{job}] ▶ {step}")

    def print_step_result(self, job: str, step: str, status: str, duration: float, output: str = "") -> None:
        """Print a finished step; failed steps also show the tail of their output."""
        if self.quiet and status != "failed":
            return
        lines = [f"[{job}] {step}: {status} ({duration:.1f}s)"]
        if status == "failed" and output:
            tail = output.strip().splitlines()[-20:]
            lines.extend(f"    {line}" for line in tail)
        self._out(*lines)

    def print_cache(self, job: str, message: str) -> None:
        if self.quiet:
            return
        self._out(f"[{job}] cache: {message}")

    def print_plan(self, stages: List[List[str]]) -> None:
        """Print the stage-by-stage job plan."""
        for idx, stage in enumerate(stages):
            self._out(f"=== Stage {idx + 1} ===")
            self._out(*(f"  {name}" for name in stage))

    def print_results(self, snapshot: "RunSnapshot") -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job in snapshot.jobs:
            lines.append(f"  {job.instance}: {job.status.upper()} ({job.duration:.1f}s)")
            for step in job.steps:
                lines.append(f"      {step.name}: {step.status}")
        lines.append(f"Run {snapshot.run_id}: {snapshot.conclusion.upper()}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[Iterable[str]] = None,
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
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_exception(self, exc: BaseException) -> None:
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
