# coverage.py
from __future__ import annotations

from pathlib import Path
from typing import Protocol

from .errors import ReportingFailure
from .executor import CancelToken, Executor
from .model import CoverageOutcome, CoverageReport, JobSpec, JobStatus, ReportingStatus
from .runner import run_job
from .ui.console import Console, get_console


class CoverageReporter(Protocol):
    """External coverage sink. Raises ReportingFailure when the upload fails."""

    def report(self, report: CoverageReport) -> None:
        ...


def collect_coverage(
    spec: JobSpec,
    artifact: str,
    executor: Executor,
    reporter: CoverageReporter,
    *,
    repo_root: str | Path = ".",
    cancel: CancelToken | None = None,
    console: Console | None = None,
    log_dir: str | Path | None = None,
) -> CoverageOutcome:
    """
    Run the instrumented build/test pass and hand its artifact to `reporter`.

    Whatever artifact the pass writes is reported, even a partial one left
    behind by a failed pass. An artifact left over from an earlier run is
    removed first so it is never mistaken for this run's output. The upload
    result is recorded on the outcome and never touches the job's own status.
    """
    console = console or get_console()
    path = Path(repo_root).resolve() / artifact
    if path.is_file():
        console.print_debug(f"[{spec.id}] removing stale coverage artifact {path}")
        path.unlink()

    result = run_job(spec, executor, repo_root=repo_root, cancel=cancel, console=console, log_dir=log_dir)

    produced = path.is_file()
    report = CoverageReport(artifact=str(path), generated=result.passed and produced)

    if result.status is JobStatus.CANCELLED:
        return CoverageOutcome(job=result, report=report, reporting=ReportingStatus.SKIPPED,
                               reporting_error="coverage job cancelled")
    if not produced:
        console.print_warning(f"[{spec.id}] no coverage artifact at {path}, nothing to report")
        return CoverageOutcome(job=result, report=report, reporting=ReportingStatus.SKIPPED,
                               reporting_error=f"no coverage artifact at {path}")
    if not report.generated:
        console.print_warning(f"[{spec.id}] coverage run failed, reporting partial artifact {path}")

    try:
        reporter.report(report)
    except ReportingFailure as e:
        console.print_warning(f"[{spec.id}] coverage upload failed: {e.message}")
        return CoverageOutcome(job=result, report=report, reporting=ReportingStatus.FAILED, reporting_error=str(e))
    except Exception as e:
        # any error from the sink is still only a reporting failure
        error = f"{type(e).__name__}: {e}"
        console.print_warning(f"[{spec.id}] coverage upload failed: {error}")
        return CoverageOutcome(job=result, report=report, reporting=ReportingStatus.FAILED, reporting_error=error)

    console.print_info(f"[{spec.id}] coverage reported ({path.name})")
    return CoverageOutcome(job=result, report=report, reporting=ReportingStatus.REPORTED)
