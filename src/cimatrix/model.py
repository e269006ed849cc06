# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from .errors import FailureKind, Severity


def _freeze(obj, name: str) -> None:
    # frozen dataclasses: mapping fields become read-only copies
    object.__setattr__(obj, name, MappingProxyType(dict(getattr(obj, name))))


class StepMode(str, Enum):
    EXECUTE = "execute"
    COMPILE_ONLY = "compile-only"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NOT_RUN = "not-run"


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobKind(str, Enum):
    MATRIX = "matrix"
    COVERAGE = "coverage"
    MINVER = "minver"


class OverallStatus(str, Enum):
    ALL_PASSED = "all-passed"
    SOME_FAILED = "some-failed"


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    mode: StepMode = StepMode.EXECUTE
    no_run_flag: str = "--no-run"

    def __post_init__(self):
        _freeze(self, "env")

    def command(self) -> str:
        """The command line actually handed to the executor."""
        if self.mode is StepMode.COMPILE_ONLY and self.no_run_flag not in self.run.split():
            return f"{self.run} {self.no_run_flag}"
        return self.run

    @property
    def executes_tests(self) -> bool:
        return self.mode is StepMode.EXECUTE


@dataclass(frozen=True)
class AxisSet:
    """One matrix dimension, e.g. toolchain versions."""
    name: str
    values: Tuple[str, ...]
    env: str | None = None  # extra env var that receives the active value


@dataclass(frozen=True)
class PatchRule:
    name: str
    source: str


@dataclass(frozen=True)
class ManifestCommit:
    """
    The manifest as every job sees it. Produced once by the patcher,
    never written after the first job starts.
    """
    path: str
    text: str
    digest: str
    matches: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self):
        _freeze(self, "matches")


@dataclass(frozen=True)
class JobTemplate:
    """Steps shared by every point of the matrix."""
    name: str
    steps: Tuple[Step, ...]
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        _freeze(self, "env")


@dataclass(frozen=True)
class JobSpec:
    id: str
    name: str
    steps: Tuple[Step, ...]
    kind: JobKind = JobKind.MATRIX
    env: Mapping[str, str] = field(default_factory=dict)
    matrix: Tuple[Tuple[str, str], ...] = ()
    manifest: Optional[ManifestCommit] = None

    def __post_init__(self):
        _freeze(self, "env")

    @property
    def slug(self) -> str:
        out = []
        for ch in self.id.lower():
            out.append(ch if ch.isalnum() or ch in "._-" else "-")
        return "-".join(p for p in "".join(out).split("-") if p) or "job"


@dataclass(frozen=True)
class StepResult:
    index: int
    name: str
    command: str
    status: StepStatus
    exit_code: int | None = None
    output: str = ""
    tolerated: bool = False  # failed, but continue_on_error kept the job going
    tests_executed: bool = True


@dataclass(frozen=True)
class JobResult:
    job_id: str
    status: JobStatus
    failing_step: int | None = None
    steps: Tuple[StepResult, ...] = ()
    failure_kind: FailureKind | None = None
    error: str | None = None
    output_ref: str | None = None
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return self.status is JobStatus.SUCCESS

    @property
    def failing_step_name(self) -> str | None:
        if self.failing_step is None:
            return None
        for s in self.steps:
            if s.index == self.failing_step:
                return s.name
        return None

    @property
    def tolerated_failures(self) -> Tuple[StepResult, ...]:
        return tuple(s for s in self.steps if s.tolerated)


@dataclass(frozen=True)
class CoverageJob:
    name: str
    steps: Tuple[Step, ...]
    artifact: str
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        _freeze(self, "env")


@dataclass(frozen=True)
class MinVersionJob:
    name: str
    steps: Tuple[Step, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    toolchain: str | None = "nightly"

    def __post_init__(self):
        _freeze(self, "env")


@dataclass(frozen=True)
class CoverageReport:
    artifact: str
    generated: bool


class ReportingStatus(str, Enum):
    REPORTED = "reported"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class CoverageOutcome:
    job: JobResult
    report: CoverageReport
    reporting: ReportingStatus
    reporting_error: str | None = None


@dataclass(frozen=True)
class Resolution:
    versions: Mapping[str, Tuple[str, ...]]
    minimal: bool = True


@dataclass(frozen=True)
class Diagnostic:
    kind: FailureKind
    severity: Severity
    job: str | None
    message: str


@dataclass(frozen=True)
class OverallResult:
    status: OverallStatus
    failing_jobs: Tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        return self.status is OverallStatus.ALL_PASSED
