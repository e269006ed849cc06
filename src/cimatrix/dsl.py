# src/cimatrix/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Sequence

from .model import AxisSet, CoverageJob, JobTemplate, MinVersionJob, PatchRule, Step, StepMode
from .pipeline import Pipeline


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    no_run: bool = False,
) -> Step:
    """Create a shell step. no_run=True builds test binaries without running them."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        continue_on_error=continue_on_error,
        mode=StepMode.COMPILE_ONLY if no_run else StepMode.EXECUTE,
    )


def _collect(name: str, steps: Sequence[Step], cwd: str | None) -> tuple[Step, ...]:
    if not steps:
        raise ValueError(f"{name!r} must have at least one step")
    if cwd is not None:
        steps = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps]
    return tuple(steps)


# ---------------------------------------------------------------------
# Job helpers
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobTemplate:
    """The template every matrix point runs. `${{ matrix.<axis> }}` is substituted per job."""
    all_steps = list(steps_list or []) + list(steps)
    return JobTemplate(
        name=name,
        steps=_collect(name, all_steps, cwd),
        env={k: str(v) for k, v in (env or {}).items()},
    )


def coverage(
    name: str,
    *steps: Step,
    artifact: str,
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,
) -> CoverageJob:
    """Instrumented run whose `artifact` (relative to the repo root) gets uploaded."""
    return CoverageJob(
        name=name,
        steps=_collect(name, list(steps), cwd),
        artifact=artifact,
        env={k: str(v) for k, v in (env or {}).items()},
    )


def minimal_versions(
    name: str,
    *steps: Step,
    toolchain: str | None = "nightly",
    env: Optional[Dict[str, str]] = None,
    cwd: str | None = None,
) -> MinVersionJob:
    """Resolve every dependency to its lowest allowed version, then run `steps`."""
    return MinVersionJob(
        name=name,
        steps=_collect(name, list(steps), cwd),
        env={k: str(v) for k, v in (env or {}).items()},
        toolchain=toolchain,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def axis(name: str, values: Iterable[object], *, env: str | None = None) -> AxisSet:
    """
    One matrix dimension.

    Example:
        axis("rust", ["stable", "beta"], env="RUSTUP_TOOLCHAIN")
    """
    return AxisSet(name=name, values=tuple(str(v) for v in values), env=env)


class Matrix:
    """
    Cross-product of axes.

    Example:
        matrix(
            axis("rust", ["stable", "nightly"]),
            axis("os", ["ubuntu-18.04"]),
        )
    """
    def __init__(self, *axes: AxisSet):
        self.axes = tuple(axes)

    def __len__(self) -> int:
        n = 1
        for a in self.axes:
            n *= len(a.values)
        return n

    def include(self, name: str, values: Iterable[object], *, env: str | None = None) -> "Matrix":
        return Matrix(*self.axes, axis(name, values, env=env))


def matrix(*axes: AxisSet) -> Matrix:
    return Matrix(*axes)


def patch(name: str, source: str) -> PatchRule:
    """Replace the manifest line declaring dependency `name` with `name = source`."""
    return PatchRule(name=name, source=source)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    template: JobTemplate,
    *,
    matrix: Matrix | Sequence[AxisSet] | None = None,
    manifest: str | None = None,
    patches: Sequence[PatchRule] = (),
    coverage: CoverageJob | None = None,
    minver: MinVersionJob | None = None,
    paths: Sequence[str] = (),
) -> Pipeline:
    """
    Users can write:
        from cimatrix import pipeline, job, sh, axis, matrix

        def workflow():
            return pipeline(
                "build",
                job("Build+test", sh("build", "cargo build")),
                matrix=matrix(axis("rust", ["stable", "beta"])),
            )

    Or define PIPELINE = pipeline(...) at module level.
    """
    if isinstance(matrix, Matrix):
        axes = matrix.axes
    else:
        axes = tuple(matrix or ())
    return Pipeline(
        name=name,
        template=template,
        axes=axes,
        manifest=manifest,
        patches=tuple(patches),
        coverage=coverage,
        minver=minver,
        paths=tuple(paths),
    )
