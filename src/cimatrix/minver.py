# minver.py
from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

from .errors import FailureKind, ResolutionFailure
from .executor import CancelToken, Executor
from .model import JobResult, JobSpec, JobStatus, ManifestCommit, Resolution, StepResult, StepStatus
from .runner import run_job
from .ui.console import Console, get_console


class Resolver(Protocol):
    def resolve(
        self,
        manifest: Optional[ManifestCommit],
        *,
        minimal: bool,
        cwd: Path,
        env: Mapping[str, str],
        cancel: CancelToken | None = None,
    ) -> Resolution:
        ...


def read_lockfile(path: str | Path) -> Dict[str, Tuple[str, ...]]:
    """Map package name -> resolved versions from a Cargo.lock."""
    p = Path(path)
    if not p.is_file():
        return {}
    with p.open("rb") as f:
        data = tomllib.load(f)

    versions: Dict[str, List[str]] = {}
    for pkg in data.get("package", []):
        name, version = pkg.get("name"), pkg.get("version")
        if name and version:
            versions.setdefault(name, []).append(version)
    return {k: tuple(sorted(set(v))) for k, v in sorted(versions.items())}


class CargoResolver:
    """
    Resolve with cargo's unstable minimal-versions mode:

        cargo +nightly -Z minimal-versions generate-lockfile

    The resulting Cargo.lock is what the following build/test steps use.
    """

    def __init__(self, executor: Executor, *, toolchain: str | None = "nightly", lockfile: str = "Cargo.lock"):
        self.executor = executor
        self.toolchain = toolchain
        self.lockfile = lockfile

    def command(self, minimal: bool) -> str:
        parts = ["cargo"]
        if self.toolchain:
            parts.append(f"+{self.toolchain}")
        if minimal:
            parts.extend(["-Z", "minimal-versions"])
        parts.append("generate-lockfile")
        return " ".join(parts)

    def resolve(
        self,
        manifest: Optional[ManifestCommit],
        *,
        minimal: bool,
        cwd: Path,
        env: Mapping[str, str],
        cancel: CancelToken | None = None,
    ) -> Resolution:
        cmd = self.command(minimal)
        proc = self.executor.execute(cmd, cwd=cwd, env=env, cancel=cancel)
        if proc.cancelled:
            raise ResolutionFailure("resolution cancelled", details={"cmd": cmd})
        if proc.exit_code != 0:
            raise ResolutionFailure(
                "dependency constraints cannot be satisfied at minimum versions",
                details={"cmd": cmd, "exit_code": proc.exit_code, "output": proc.output[-2000:]},
            )
        return Resolution(versions=read_lockfile(cwd / self.lockfile), minimal=minimal)


def check_minimum_versions(
    spec: JobSpec,
    resolver: Resolver,
    executor: Executor,
    *,
    repo_root: str | Path = ".",
    cancel: CancelToken | None = None,
    console: Console | None = None,
    log_dir: str | Path | None = None,
) -> JobResult:
    """Resolve to the lowest allowed versions, then build and test on top of that."""
    console = console or get_console()
    root = Path(repo_root).resolve()

    try:
        resolution = resolver.resolve(spec.manifest, minimal=True, cwd=root, env=dict(spec.env), cancel=cancel)
    except ResolutionFailure as e:
        cancelled = cancel is not None and cancel.cancelled
        console.print_job_start(spec.id)
        result = JobResult(
            job_id=spec.id,
            status=JobStatus.CANCELLED if cancelled else JobStatus.FAILED,
            steps=tuple(
                StepResult(index=i, name=s.name, command=s.command(), status=StepStatus.NOT_RUN, tests_executed=False)
                for i, s in enumerate(spec.steps)
            ),
            failure_kind=FailureKind.CANCELLED if cancelled else FailureKind.RESOLUTION,
            error=e.message,
        )
        console.print_job_finished(result)
        return result

    console.print_info(f"[{spec.id}] resolved {len(resolution.versions)} packages at minimum versions")
    return run_job(spec, executor, repo_root=root, cancel=cancel, console=console, log_dir=log_dir)
