# pipeline.py
from __future__ import annotations

import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .aggregate import aggregate
from .coverage import CoverageReporter, collect_coverage
from .dag import Stage, StageContext, run_stages
from .errors import ConfigurationError, FailureKind, severity_of
from .executor import CancelToken, Executor, SubprocessExecutor
from .manifest import normalize_rules, patch_manifest
from .matrix import expand, validate_axes
from .minver import CargoResolver, Resolver, check_minimum_versions
from .model import (
    AxisSet,
    CoverageJob,
    CoverageOutcome,
    Diagnostic,
    JobKind,
    JobResult,
    JobSpec,
    JobStatus,
    JobTemplate,
    ManifestCommit,
    MinVersionJob,
    OverallResult,
    PatchRule,
    ReportingStatus,
)
from .reporters import HTTPCoverageReporter
from .runner import run_job
from .ui.console import Console, get_console


@dataclass(frozen=True)
class Pipeline:
    """Everything one verification run needs to know."""
    name: str
    template: JobTemplate
    axes: Tuple[AxisSet, ...] = ()
    manifest: str | None = None
    patches: Tuple[PatchRule, ...] = ()
    coverage: CoverageJob | None = None
    minver: MinVersionJob | None = None
    paths: Tuple[str, ...] = ()  # trigger patterns; empty means any change

    def plan(self, manifest: Optional[ManifestCommit] = None) -> List[JobSpec]:
        """Every top-level job of the run, in report order."""
        specs = expand(self.axes, self.template, manifest=manifest)

        if self.coverage is not None:
            specs.append(
                JobSpec(
                    id=self.coverage.name,
                    name=self.coverage.name,
                    steps=self.coverage.steps,
                    kind=JobKind.COVERAGE,
                    env=dict(self.coverage.env),
                    manifest=manifest,
                )
            )

        if self.minver is not None:
            env = dict(self.minver.env)
            if self.minver.toolchain:
                env.setdefault("RUSTUP_TOOLCHAIN", self.minver.toolchain)
            specs.append(
                JobSpec(
                    id=self.minver.name,
                    name=self.minver.name,
                    steps=self.minver.steps,
                    kind=JobKind.MINVER,
                    env=env,
                    manifest=manifest,
                )
            )

        ids = [s.id for s in specs]
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            raise ConfigurationError(f"duplicate job ids: {dupes}")
        return specs

    def validate(self) -> None:
        """Raise ConfigurationError for anything that would fail before a job starts."""
        if not self.template.steps:
            raise ConfigurationError(f"job template {self.template.name!r} has no steps")
        rules = normalize_rules(self.patches)
        if rules and not self.manifest:
            raise ConfigurationError("patch rules given but no manifest path configured")
        validate_axes(self.axes)
        if self.coverage is not None and not self.coverage.artifact:
            raise ConfigurationError(f"coverage job {self.coverage.name!r} declares no artifact")
        self.plan()


class DiagnosticLog:
    """The run's diagnostic log. Severity comes from the failure policy table."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or get_console()
        self._items: List[Diagnostic] = []
        self._lock = threading.Lock()

    def record(self, kind: FailureKind, message: str, *, job: str | None = None) -> Diagnostic:
        d = Diagnostic(kind=kind, severity=severity_of(kind), job=job, message=message)
        with self._lock:
            self._items.append(d)
        self.console.print_debug(f"diagnostic {d.severity.value}/{d.kind.value} {job or '-'}: {message}")
        return d

    @property
    def items(self) -> Tuple[Diagnostic, ...]:
        with self._lock:
            return tuple(self._items)


@dataclass(frozen=True)
class PipelineRun:
    pipeline: str
    overall: OverallResult
    jobs: Tuple[JobSpec, ...]
    results: Dict[str, JobResult]
    coverage: CoverageOutcome | None = None
    diagnostics: Tuple[Diagnostic, ...] = ()
    manifest: ManifestCommit | None = None
    levels: Tuple[Tuple[str, ...], ...] = field(default_factory=tuple)


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Orchestrator:
    """
    Runs one pipeline through the stage graph

        patch -> expand -> execute -> aggregate

    Each arrow is a barrier. Top-level jobs of the execute stage run in
    parallel and share nothing but the manifest commit they were built with.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        executor: Optional[Executor] = None,
        reporter: Optional[CoverageReporter] = None,
        resolver: Optional[Resolver] = None,
        repo_root: str | Path = ".",
        max_workers: int | None = None,
        log_dir: str | Path | None = None,
        console: Optional[Console] = None,
    ):
        self.pipeline = pipeline
        self.executor = executor or SubprocessExecutor()
        self.reporter = reporter
        self.resolver = resolver
        self.repo_root = Path(repo_root).resolve()
        self.max_workers = max_workers or default_workers()
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.console = console or get_console()
        self.diagnostics = DiagnosticLog(self.console)

        self._cancel = CancelToken()
        self._job_tokens: Dict[str, CancelToken] = {}
        self._tokens_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def _token(self, job_id: str) -> CancelToken:
        with self._tokens_lock:
            if job_id not in self._job_tokens:
                self._job_tokens[job_id] = self._cancel.child()
            return self._job_tokens[job_id]

    def cancel(self, job_id: str | None = None) -> None:
        """Cancel one top-level job, or the whole run when no id is given."""
        if job_id is None:
            self._cancel.cancel()
        else:
            self._token(job_id).cancel()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _patch(self, ctx: StageContext) -> None:
        p = self.pipeline
        if not p.manifest:
            ctx.publish("manifest", None)
            return
        commit = patch_manifest(self.repo_root / p.manifest, p.patches)
        for name, matches in commit.matches.items():
            self.console.print_patch(name, matches)
        ctx.publish("manifest", commit)

    def _expand(self, ctx: StageContext) -> None:
        specs = self.pipeline.plan(manifest=ctx.get("manifest"))
        for spec in specs:
            self._token(spec.id)
        ctx.publish("jobs", tuple(specs))

    def _run_top_level(self, spec: JobSpec) -> JobResult | CoverageOutcome:
        common = dict(
            repo_root=self.repo_root,
            cancel=self._token(spec.id),
            console=self.console,
            log_dir=self.log_dir,
        )
        if spec.kind is JobKind.COVERAGE:
            reporter = self.reporter or HTTPCoverageReporter()
            return collect_coverage(spec, self.pipeline.coverage.artifact, self.executor, reporter, **common)
        if spec.kind is JobKind.MINVER:
            resolver = self.resolver or CargoResolver(self.executor, toolchain=self.pipeline.minver.toolchain)
            return check_minimum_versions(spec, resolver, self.executor, **common)
        return run_job(spec, self.executor, **common)

    def _record(self, result: JobResult) -> None:
        if result.passed:
            return
        kind = result.failure_kind or FailureKind.STEP
        if result.error:
            message = result.error
        elif result.failing_step is not None:
            step = result.steps[result.failing_step]
            message = f"step {step.index} '{step.name}' failed (exit={step.exit_code})"
        else:
            message = f"job {result.status.value}"
        self.diagnostics.record(kind, message, job=result.job_id)

    def _execute(self, ctx: StageContext) -> None:
        specs: Tuple[JobSpec, ...] = ctx.get("jobs")
        results: Dict[str, JobResult] = {}
        coverage: CoverageOutcome | None = None

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {pool.submit(self._run_top_level, spec): spec for spec in specs}
            for future in as_completed(futures):
                spec = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    self.console.print_exception(e)
                    outcome = JobResult(
                        job_id=spec.id,
                        status=JobStatus.FAILED,
                        failure_kind=FailureKind.INTERNAL,
                        error=f"{type(e).__name__}: {e}",
                    )

                if isinstance(outcome, CoverageOutcome):
                    coverage = outcome
                    if outcome.reporting is ReportingStatus.FAILED:
                        self.diagnostics.record(
                            FailureKind.REPORTING,
                            outcome.reporting_error or "coverage upload failed",
                            job=spec.id,
                        )
                    outcome = outcome.job

                results[spec.id] = outcome
                self._record(outcome)

        ctx.publish("results", {spec.id: results[spec.id] for spec in specs})
        ctx.publish("coverage", coverage)

    def _aggregate(self, ctx: StageContext) -> None:
        specs: Tuple[JobSpec, ...] = ctx.get_or("jobs", ())
        results: Dict[str, JobResult] = ctx.get_or("results", {})
        overall = aggregate(results, expected=[s.id for s in specs], diagnostics=self.diagnostics.items)
        ctx.publish("overall", overall)

    def _barrier(self, idx: int, level: List[str], ctx: StageContext) -> None:
        self.console.print_debug(f"barrier {idx}: {', '.join(level)} done")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def stages(self) -> List[Stage]:
        return [
            Stage("patch", self._patch),
            Stage("expand", self._expand, needs=("patch",)),
            Stage("execute", self._execute, needs=("expand",)),
            Stage("aggregate", self._aggregate, needs=("execute",), abort_on_cancel=False),
        ]

    def run(self) -> PipelineRun:
        """
        Validate, then run every stage.

        Raises ConfigurationError before touching the manifest if the
        pipeline is malformed, and PipelineCancelled if the run is
        cancelled before its jobs start.
        """
        self.pipeline.validate()

        ctx = StageContext(self._cancel)
        levels = run_stages(self.stages(), ctx, on_barrier=self._barrier)

        return PipelineRun(
            pipeline=self.pipeline.name,
            overall=ctx.get("overall"),
            jobs=ctx.get("jobs"),
            results=ctx.get("results"),
            coverage=ctx.get("coverage"),
            diagnostics=self.diagnostics.items,
            manifest=ctx.get("manifest"),
            levels=tuple(tuple(level) for level in levels),
        )


def run_pipeline(pipeline: Pipeline, **kwargs) -> PipelineRun:
    return Orchestrator(pipeline, **kwargs).run()
