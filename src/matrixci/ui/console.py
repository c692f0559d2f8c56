"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..guards import GuardVerdict
    from ..model import JobDescriptor, RunReport, Step


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show full step output and stack traces
        """
        self.debug = debug
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        run_id: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED", f"Workflow: {workflow}", f"Run ID: {run_id}", f"Jobs: {job_count}", "")

    def print_plan(self, job: "JobDescriptor", decisions: list[tuple["Step", "GuardVerdict"]]) -> None:
        """Print which steps a job would run."""
        lines = [f"\n{job.id}  ({job.display_name})"]
        for step, verdict in decisions:
            mark = "run " if verdict.passed else "skip"
            extra = f"  [{verdict.diagnostic}]" if verdict.diagnostic else ""
            lines.append(f"  {mark}  {step.name}{extra}")
        self._out(*lines)

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, step: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {step}")

    def print_step_skipped(self, job: str, step: str, reason: str) -> None:
        self._out(f"[{job}] SKIP: {step} ({reason})")

    def print_job_done(self, job: str, status: str) -> None:
        self._out(f"[{job}] STATUS: {status}")

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
            reason: Failure reason/error output
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
            # Show last line of output for non-debug mode; full output is in the results
            stripped = (reason or "").strip()
            error_line = stripped.splitlines()[-1] if stripped else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_results(self, report: "RunReport") -> None:
        """Print final results: every job, and the first failing step of each failed job."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for r in report.results:
            status_display = r.status.value.upper()
            lines.append(f"  {r.job.id}: {status_display}")
        failures = [r for r in report.results if r.first_failure is not None]
        for r in failures:
            rec = r.first_failure
            lines.append("")
            lines.append(f"--- {r.job.id}: step '{rec.step}' failed" + (f" (exit={rec.exit_code})" if rec.exit_code is not None else ""))
            lines.append(rec.output.rstrip("\n") if rec.output else "(no output)")
        if report.ok:
            lines.append("\nAll jobs succeeded.")
        else:
            lines.append(f"\nFailed jobs: {', '.join(report.failed_jobs)}")
        self._out(*lines)

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
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
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
