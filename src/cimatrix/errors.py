# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


class FailureKind(str, Enum):
    CONFIGURATION = "configuration"
    STEP = "step"
    REPORTING = "reporting"
    RESOLUTION = "resolution"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class Severity(str, Enum):
    FATAL = "fatal"
    ADVISORY = "advisory"


# Which failures may turn a run red.
FAILURE_POLICY: Dict[FailureKind, Severity] = {
    FailureKind.CONFIGURATION: Severity.FATAL,
    FailureKind.STEP: Severity.FATAL,
    FailureKind.REPORTING: Severity.ADVISORY,
    FailureKind.RESOLUTION: Severity.FATAL,
    FailureKind.CANCELLED: Severity.FATAL,
    FailureKind.INTERNAL: Severity.FATAL,
}


def severity_of(kind: FailureKind) -> Severity:
    return FAILURE_POLICY.get(kind, Severity.FATAL)


def is_fatal(kind: Optional[FailureKind]) -> bool:
    return kind is not None and severity_of(kind) is Severity.FATAL


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the JSON run report
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    @property
    def failure_kind(self) -> FailureKind:
        return FailureKind(self.kind)


class ConfigurationError(CIError):
    """Bad pipeline definition. Raised before any job starts."""

    def __init__(self, message: str, *, job: str = "", details: dict | None = None):
        super().__init__(
            kind=FailureKind.CONFIGURATION.value,
            job=job,
            step=None,
            message=message,
            details=details or {},
        )


class ReportingFailure(CIError):
    def __init__(self, message: str, *, job: str = "", details: dict | None = None):
        super().__init__(
            kind=FailureKind.REPORTING.value,
            job=job,
            step=None,
            message=message,
            details=details or {},
        )


class ResolutionFailure(CIError):
    def __init__(self, message: str, *, job: str = "", details: dict | None = None):
        super().__init__(
            kind=FailureKind.RESOLUTION.value,
            job=job,
            step=None,
            message=message,
            details=details or {},
        )


class PipelineCancelled(CIError):
    def __init__(self, message: str = "pipeline cancelled before jobs started", *, details: dict | None = None):
        super().__init__(
            kind=FailureKind.CANCELLED.value,
            job="",
            step=None,
            message=message,
            details=details or {},
        )


@dataclass
class StepFailure(Exception):
    job: str
    step: str
    index: int
    cmd: str
    exit_code: int | None
    output: str = ""

    def __str__(self) -> str:
        code = "none" if self.exit_code is None else self.exit_code
        return f"[{self.job}] step {self.index} '{self.step}' failed (exit={code}): {self.cmd}"
