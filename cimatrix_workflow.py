# cimatrix_workflow.py
# Pipeline for the rustls fork: patch webpki to the post-quantum branch, build
# and test on every supported toolchain, measure coverage and check that the
# declared minimum dependency versions still build.
from __future__ import annotations

from cimatrix.dsl import axis, coverage, job, matrix, minimal_versions, patch, pipeline, sh
from cimatrix.step_workflows.cargo import cargo_build, cargo_test

WEBPKI = '{git = "https://github.com/thomwiggers/webpki.git", branch = "pq-take2"}'


def workflow():
    return pipeline(
        "rustls",
        job(
            "Build+test",
            cargo_build("cargo build (debug; default features)"),
            cargo_test("cargo test (debug; default features)", backtrace=True),
            cargo_test("cargo test (debug; all features)", features="all", backtrace=True),
            cargo_build("cargo build (debug; no default features)", features="none", cwd="rustls"),
            cargo_test(
                "cargo test (debug; no default features; no run)",
                features="none",
                no_run=True,
                cwd="rustls",
            ),
            cargo_test("cargo test (release; no run)", release=True, no_run=True),
        ),
        matrix=matrix(
            # 1.39.0 is the MSRV
            axis("rust", ["stable", "beta", "nightly", "1.39.0"], env="RUSTUP_TOOLCHAIN"),
            axis("os", ["ubuntu-18.04"]),
        ),
        manifest="src/Cargo.toml",
        patches=[patch("webpki", WEBPKI)],
        coverage=coverage(
            "Measure coverage",
            sh("Build lcov", "admin/build-lcov"),
            sh("Measure coverage", "admin/coverage"),
            artifact="final.info",
            env={"RUSTUP_TOOLCHAIN": "nightly"},
        ),
        minver=minimal_versions(
            "Check minimum versions",
            cargo_test("cargo test (debug; all features; -Z minimal-versions)", features="all"),
            toolchain="nightly",
        ),
        paths=["src/**", "rustls/**", "admin/**", "Cargo.toml", "*/Cargo.toml"],
    )
