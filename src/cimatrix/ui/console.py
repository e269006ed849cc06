"""Console output formatting utilities for cimatrix."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ..model import Diagnostic, JobResult, JobSpec, OverallResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs report from worker threads; keep their lines whole
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        commit: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED", f"Repository: {repository}", f"Workflow: {workflow}"]
        if commit:
            lines.append(f"Commit: {commit}")
        lines.extend([f"Jobs: {job_count}", ""])
        self._emit(*lines)

    def print_patch(self, name: str, matches: int) -> None:
        """Print the effect of one manifest patch rule."""
        if matches:
            self._emit(f"PATCH: {name} ({matches} line{'s' if matches != 1 else ''})")
        else:
            self.print_debug(f"patch rule {name!r} matched nothing")

    def print_plan(self, jobs: Iterable["JobSpec"]) -> None:
        """Print the expanded job list without running anything."""
        for spec in jobs:
            self._emit(f"\nJOB: {spec.id} [{spec.kind.value}]")
            for k, v in sorted(spec.env.items()):
                self._emit(f"  env {k}={v}")
            for i, step in enumerate(spec.steps):
                flags = []
                if step.continue_on_error:
                    flags.append("continue-on-error")
                if not step.executes_tests:
                    flags.append("compile-only")
                if step.cwd:
                    flags.append(f"cwd={step.cwd}")
                suffix = f" ({', '.join(flags)})" if flags else ""
                self._emit(f"  {i}. {step.name}: {step.command()}{suffix}")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._emit(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._emit(f"[{job}] STEP: {name}")

    def print_job_finished(self, result: "JobResult") -> None:
        """Print the terminal status of a job."""
        if result.passed:
            self._emit(f"[{result.job_id}] STATUS: success ({result.duration:.1f}s)")
            return
        step = result.failing_step_name
        reason = result.error or (f"step {result.failing_step} '{step}'" if step else result.status.value)
        self.print_failure(result.job_id, reason, is_job=True)

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
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._emit(*lines)

    def print_output_tail(self, output: str, limit: int = 40) -> None:
        """Print the last lines of a failing step's output."""
        tail = output.rstrip().splitlines()[-limit:]
        if tail:
            self._emit(*(f"  | {line}" for line in tail))

    def print_warning(self, message: str) -> None:
        """Print a non-fatal warning."""
        self._emit(f"WARNING: {message}", err=True)

    def print_diagnostics(self, diagnostics: Iterable["Diagnostic"]) -> None:
        """Print the run's diagnostic log."""
        diagnostics = list(diagnostics)
        if not diagnostics:
            return
        self.print_header("DIAGNOSTICS")
        for d in diagnostics:
            where = f" [{d.job}]" if d.job else ""
            self._emit(f"  {d.severity.value.upper()} {d.kind.value}{where}: {d.message.splitlines()[0]}")

    def print_results(self, results: dict[str, "JobResult"], overall: "OverallResult") -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job, result in results.items():
            lines.append(f"  {job}: {result.status.value.upper()}")
        lines.append("")
        lines.append(f"OVERALL: {overall.status.value.upper()}")
        for job in overall.failing_jobs:
            lines.append(f"  failed: {job}")
        self._emit(*lines)

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
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


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
