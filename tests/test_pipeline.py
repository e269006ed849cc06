"""End-to-end tests for the orchestrator with a scripted executor."""

import pytest

from cimatrix.dsl import axis, coverage, job, matrix, minimal_versions, patch, pipeline, sh
from cimatrix.errors import ConfigurationError, FailureKind, PipelineCancelled, Severity
from cimatrix.model import JobKind, JobStatus, OverallStatus, ReportingStatus
from cimatrix.pipeline import Orchestrator
from cimatrix.step_workflows.cargo import cargo_build, cargo_test

from conftest import FakeReporter, FakeResolver

WEBPKI = '{git = "https://github.com/thomwiggers/webpki.git", branch = "pq-take2"}'
TOOLCHAINS = ["stable", "beta", "nightly", "1.39.0"]


def write_artifact(cwd, env):
    (cwd / "final.info").write_text("SF:src/lib.rs\nend_of_record\n", encoding="utf-8")


def rustls_pipeline(**overrides):
    kwargs = dict(
        matrix=matrix(axis("rust", TOOLCHAINS, env="RUSTUP_TOOLCHAIN"), axis("os", ["ubuntu-18.04"])),
        manifest="src/Cargo.toml",
        patches=[patch("webpki", WEBPKI)],
        coverage=coverage(
            "Measure coverage",
            sh("Build lcov", "admin/build-lcov"),
            sh("Measure coverage", "admin/coverage"),
            artifact="final.info",
        ),
        minver=minimal_versions("Check minimum versions", cargo_test("test", features="all")),
    )
    kwargs.update(overrides)
    return pipeline(
        "rustls",
        job(
            "Build+test",
            cargo_build("cargo build (debug; default features)"),
            cargo_test("cargo test (debug; default features)", backtrace=True),
            cargo_test("cargo test (debug; all features)", features="all", backtrace=True),
            cargo_build("cargo build (debug; no default features)", features="none", cwd="rustls"),
            cargo_test("cargo test (debug; no default features; no run)", features="none", no_run=True, cwd="rustls"),
            cargo_test("cargo test (release; no run)", release=True, no_run=True),
        ),
        **kwargs,
    )


def orchestrate(p, executor, repo, console, *, reporter=None, resolver=None, **kwargs):
    return Orchestrator(
        p,
        executor=executor,
        reporter=reporter or FakeReporter(),
        resolver=resolver or FakeResolver(),
        repo_root=repo,
        max_workers=4,
        console=console,
        **kwargs,
    )


class TestPlan:
    """Top-level jobs of a run."""

    def test_plan_lists_every_top_level_job(self):
        specs = rustls_pipeline().plan()
        assert [s.id for s in specs] == [
            "Build+test (stable, ubuntu-18.04)",
            "Build+test (beta, ubuntu-18.04)",
            "Build+test (nightly, ubuntu-18.04)",
            "Build+test (1.39.0, ubuntu-18.04)",
            "Measure coverage",
            "Check minimum versions",
        ]
        assert [s.kind for s in specs][-2:] == [JobKind.COVERAGE, JobKind.MINVER]
        assert specs[-1].env["RUSTUP_TOOLCHAIN"] == "nightly"

    def test_patches_need_a_manifest(self):
        with pytest.raises(ConfigurationError, match="no manifest"):
            rustls_pipeline(manifest=None).validate()

    def test_duplicate_job_ids(self):
        p = pipeline("x", job("dup", sh("s", "true")), coverage=coverage("dup", sh("c", "true"), artifact="a.info"))
        with pytest.raises(ConfigurationError, match="duplicate job ids"):
            p.validate()


class TestScenarios:

    def test_one_toolchain_fails_default_build(self, executor, console, repo):
        """Four toolchains, one environment: only the beta job fails."""
        executor.script("cargo build", 101, env={"RUSTUP_TOOLCHAIN": "beta"})
        executor.script("admin/coverage", action=write_artifact)

        run = orchestrate(rustls_pipeline(), executor, repo, console).run()

        assert len([j for j in run.jobs if j.kind is JobKind.MATRIX]) == 4
        assert run.overall.status is OverallStatus.SOME_FAILED
        assert run.overall.failing_jobs == ("Build+test (beta, ubuntu-18.04)",)

        beta = run.results["Build+test (beta, ubuntu-18.04)"]
        assert beta.failing_step == 0
        assert all(c.command == "cargo build" for c in executor.calls_for("RUSTUP_TOOLCHAIN", "beta"))
        assert run.results["Build+test (stable, ubuntu-18.04)"].status is JobStatus.SUCCESS
        assert run.diagnostics[0].kind is FailureKind.STEP

    def test_reporting_failure_is_advisory(self, executor, console, repo):
        """Coverage produced, upload rejected: the run still passes."""
        executor.script("admin/coverage", action=write_artifact)

        run = orchestrate(rustls_pipeline(), executor, repo, console, reporter=FakeReporter(fail=True)).run()

        assert run.overall.status is OverallStatus.ALL_PASSED
        assert run.coverage.reporting is ReportingStatus.FAILED
        assert run.coverage.report.generated is True
        assert [(d.kind, d.severity, d.job) for d in run.diagnostics] == [
            (FailureKind.REPORTING, Severity.ADVISORY, "Measure coverage")
        ]

    def test_crashing_reporter_is_advisory(self, executor, console, repo):
        """A sink raising an arbitrary error is still only a reporting failure."""

        class CrashingReporter:
            def report(self, report):
                raise ConnectionError("sink down")

        executor.script("admin/coverage", action=write_artifact)

        run = orchestrate(rustls_pipeline(), executor, repo, console, reporter=CrashingReporter()).run()

        assert run.overall.status is OverallStatus.ALL_PASSED
        assert run.results["Measure coverage"].status is JobStatus.SUCCESS
        assert run.coverage.reporting is ReportingStatus.FAILED
        assert [(d.kind, d.severity) for d in run.diagnostics] == [(FailureKind.REPORTING, Severity.ADVISORY)]

    def test_minimum_version_failure(self, executor, console, repo):
        """Resolution fails: the minimum-version job fails regardless of the matrix."""
        executor.script("admin/coverage", action=write_artifact)

        run = orchestrate(rustls_pipeline(), executor, repo, console, resolver=FakeResolver(fail=True)).run()

        assert run.overall.status is OverallStatus.SOME_FAILED
        assert run.overall.failing_jobs == ("Check minimum versions",)
        assert run.results["Check minimum versions"].failure_kind is FailureKind.RESOLUTION
        assert all(run.results[j.id].passed for j in run.jobs if j.kind is JobKind.MATRIX)


class TestManifestCommit:

    def test_every_job_sees_the_patched_manifest(self, executor, console, repo):
        executor.script("admin/coverage", action=write_artifact)
        resolver = FakeResolver()

        run = orchestrate(rustls_pipeline(), executor, repo, console, resolver=resolver).run()

        on_disk = (repo / "src" / "Cargo.toml").read_text(encoding="utf-8")
        assert f"webpki = {WEBPKI}" in on_disk
        assert run.manifest.text == on_disk
        assert run.manifest.matches == {"webpki": 1}
        assert all(j.manifest is run.manifest for j in run.jobs)
        assert resolver.seen == [run.manifest]

    def test_stage_levels(self, executor, console, repo):
        executor.script("admin/coverage", action=write_artifact)
        run = orchestrate(rustls_pipeline(), executor, repo, console).run()
        assert run.levels == (("patch",), ("expand",), ("execute",), ("aggregate",))


class TestFailureHandling:

    def test_configuration_error_before_any_job(self, executor, console, repo):
        before = (repo / "src" / "Cargo.toml").read_text(encoding="utf-8")
        bad = rustls_pipeline(matrix=[axis("rust", [])])

        with pytest.raises(ConfigurationError):
            orchestrate(bad, executor, repo, console).run()

        assert executor.commands() == []
        assert (repo / "src" / "Cargo.toml").read_text(encoding="utf-8") == before

    def test_cancel_before_start(self, executor, console, repo):
        orch = orchestrate(rustls_pipeline(), executor, repo, console)
        orch.cancel()
        with pytest.raises(PipelineCancelled):
            orch.run()
        assert executor.commands() == []

    def test_cancel_one_job(self, executor, console, repo):
        executor.script("admin/coverage", action=write_artifact)
        orch = orchestrate(rustls_pipeline(), executor, repo, console)
        orch.cancel("Build+test (nightly, ubuntu-18.04)")

        run = orch.run()

        assert run.results["Build+test (nightly, ubuntu-18.04)"].status is JobStatus.CANCELLED
        assert run.overall.failing_jobs == ("Build+test (nightly, ubuntu-18.04)",)
        assert executor.calls_for("MATRIX_RUST", "nightly") == []

    def test_unexpected_exception_fails_only_that_job(self, repo, console, executor):
        class Exploding:
            def execute(self, command, *, cwd, env, cancel=None):
                if env.get("RUSTUP_TOOLCHAIN") == "stable":
                    raise RuntimeError("executor crashed")
                return executor.execute(command, cwd=cwd, env=env, cancel=cancel)

        p = rustls_pipeline(coverage=None)
        run = orchestrate(p, Exploding(), repo, console).run()

        stable = run.results["Build+test (stable, ubuntu-18.04)"]
        assert stable.failure_kind is FailureKind.INTERNAL
        assert "executor crashed" in stable.error
        assert run.overall.failing_jobs == ("Build+test (stable, ubuntu-18.04)",)

    def test_log_files_per_job(self, executor, console, repo, tmp_path):
        executor.script("admin/coverage", action=write_artifact)
        run = orchestrate(rustls_pipeline(), executor, repo, console, log_dir=tmp_path / "logs").run()
        logs = sorted(p.name for p in (tmp_path / "logs").iterdir())
        assert "build-test-stable-ubuntu-18.04.log" in logs
        assert "measure-coverage.log" in logs
        assert run.results["Measure coverage"].output_ref.endswith("measure-coverage.log")
