# report.py
# Machine-readable run report written by `cimatrix run --report-json`.
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from .model import JobResult, JobSpec
from .pipeline import PipelineRun


class StepReport(BaseModel):
    index: int
    name: str
    command: str
    status: str
    exit_code: Optional[int] = None
    tolerated: bool = False
    tests_executed: bool = True


class JobReport(BaseModel):
    id: str
    kind: str
    status: str
    matrix: dict[str, str] = Field(default_factory=dict)
    failing_step: Optional[int] = None
    failure_kind: Optional[str] = None
    error: Optional[str] = None
    log: Optional[str] = None
    duration: float = 0.0
    steps: list[StepReport] = Field(default_factory=list)


class CoverageSection(BaseModel):
    job: str
    artifact: str
    generated: bool
    reporting: str
    reporting_error: Optional[str] = None


class DiagnosticEntry(BaseModel):
    kind: str
    severity: str
    job: Optional[str] = None
    message: str


class ManifestSection(BaseModel):
    path: str
    digest: str
    matches: dict[str, int] = Field(default_factory=dict)


class RunReport(BaseModel):
    pipeline: str
    status: str
    commit: Optional[str] = None
    failing_jobs: list[str] = Field(default_factory=list)
    manifest: Optional[ManifestSection] = None
    jobs: list[JobReport] = Field(default_factory=list)
    coverage: Optional[CoverageSection] = None
    diagnostics: list[DiagnosticEntry] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_run(cls, run: PipelineRun, commit: Optional[str] = None) -> "RunReport":
        jobs = [_job_report(spec, run.results.get(spec.id)) for spec in run.jobs]

        coverage = None
        if run.coverage is not None:
            coverage = CoverageSection(
                job=run.coverage.job.job_id,
                artifact=run.coverage.report.artifact,
                generated=run.coverage.report.generated,
                reporting=run.coverage.reporting.value,
                reporting_error=run.coverage.reporting_error,
            )

        manifest = None
        if run.manifest is not None:
            manifest = ManifestSection(
                path=run.manifest.path,
                digest=run.manifest.digest,
                matches=dict(run.manifest.matches),
            )

        return cls(
            pipeline=run.pipeline,
            status=run.overall.status.value,
            commit=commit,
            failing_jobs=list(run.overall.failing_jobs),
            manifest=manifest,
            jobs=jobs,
            coverage=coverage,
            diagnostics=[
                DiagnosticEntry(kind=d.kind.value, severity=d.severity.value, job=d.job, message=d.message)
                for d in run.diagnostics
            ],
        )


def _job_report(spec: JobSpec, result: Optional[JobResult]) -> JobReport:
    data: dict[str, Any] = {"id": spec.id, "kind": spec.kind.value, "matrix": dict(spec.matrix)}
    if result is None:
        return JobReport(status="missing", **data)
    return JobReport(
        status=result.status.value,
        failing_step=result.failing_step,
        failure_kind=result.failure_kind.value if result.failure_kind else None,
        error=result.error,
        log=result.output_ref,
        duration=round(result.duration, 3),
        steps=[
            StepReport(
                index=s.index,
                name=s.name,
                command=s.command,
                status=s.status.value,
                exit_code=s.exit_code,
                tolerated=s.tolerated,
                tests_executed=s.tests_executed,
            )
            for s in result.steps
        ],
        **data,
    )


def write_report(run: PipelineRun, path: str | Path, commit: Optional[str] = None) -> RunReport:
    report = RunReport.from_run(run, commit=commit)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(report.model_dump_json(indent=2) + "\n", encoding="utf-8")
    return report
