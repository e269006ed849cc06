# aggregate.py
from __future__ import annotations

from typing import Iterable, List, Mapping, Optional

from .errors import is_fatal
from .model import Diagnostic, JobResult, JobStatus, OverallResult, OverallStatus


def job_failed(result: Optional[JobResult]) -> bool:
    """A job passes only with status Success. Cancelled and missing count as failed."""
    if result is None:
        return True
    return result.status is not JobStatus.SUCCESS


def aggregate(
    results: Mapping[str, JobResult],
    *,
    expected: Optional[Iterable[str]] = None,
    diagnostics: Iterable[Diagnostic] = (),
) -> OverallResult:
    """
    Fold top-level job results into the overall outcome.

    `expected` is the full list of top-level job ids in report order; jobs
    that never produced a result are failures. Diagnostics only fail a job
    when the failure policy says their kind is fatal, so an advisory
    coverage upload failure can never turn the run red.
    """
    order: List[str] = list(expected) if expected is not None else list(results)
    for job_id in results:
        if job_id not in order:
            order.append(job_id)

    failing = [job_id for job_id in order if job_failed(results.get(job_id))]

    for d in diagnostics:
        if d.job and d.job not in failing and is_fatal(d.kind):
            failing.append(d.job)

    failing.sort(key=lambda j: order.index(j) if j in order else len(order))
    status = OverallStatus.SOME_FAILED if failing else OverallStatus.ALL_PASSED
    return OverallResult(status=status, failing_jobs=tuple(failing))
