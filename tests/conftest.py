"""Shared fixtures: a scripted executor, fake coverage sinks and a quiet console."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

import pytest

from cimatrix.errors import ReportingFailure, ResolutionFailure
from cimatrix.executor import CancelToken, ProcessResult
from cimatrix.model import CoverageReport, Resolution
from cimatrix.ui.console import Console, set_console


# -------------------------------------------------------------------------
# Fakes
# -------------------------------------------------------------------------

@dataclass
class Call:
    command: str
    cwd: Path
    env: Dict[str, str]


@dataclass
class Rule:
    pattern: str
    exit_code: int = 0
    output: str = ""
    cancelled: bool = False
    action: Optional[Callable[[Path, Mapping[str, str]], None]] = None
    env: Dict[str, str] = field(default_factory=dict)  # only match when these env values are set


class FakeExecutor:
    """
    Scripted executor. The first rule whose pattern is a substring of the
    command (and whose env filter matches) decides the outcome; anything
    unscripted succeeds.
    """

    def __init__(self):
        self.rules: List[Rule] = []
        self.calls: List[Call] = []
        self._lock = threading.Lock()

    def script(self, pattern: str, exit_code: int = 0, *, output: str = "", cancelled: bool = False,
               action=None, env: Optional[Dict[str, str]] = None) -> "FakeExecutor":
        self.rules.append(Rule(pattern, exit_code, output, cancelled, action, dict(env or {})))
        return self

    def execute(self, command, *, cwd, env, cancel: CancelToken | None = None) -> ProcessResult:
        with self._lock:
            self.calls.append(Call(command, Path(cwd), dict(env)))
        for rule in self.rules:
            if rule.pattern not in command:
                continue
            if any(env.get(k) != v for k, v in rule.env.items()):
                continue
            if rule.action is not None:
                rule.action(Path(cwd), env)
            if rule.cancelled:
                if cancel is not None:
                    cancel.cancel()
                return ProcessResult(exit_code=-15, output=rule.output, cancelled=True)
            return ProcessResult(exit_code=rule.exit_code, output=rule.output)
        return ProcessResult(exit_code=0, output=f"ok: {command}\n")

    def commands(self) -> List[str]:
        with self._lock:
            return [c.command for c in self.calls]

    def calls_for(self, env_key: str, env_value: str) -> List[Call]:
        with self._lock:
            return [c for c in self.calls if c.env.get(env_key) == env_value]


class FakeReporter:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.reports: List[CoverageReport] = []

    def report(self, report: CoverageReport) -> None:
        self.reports.append(report)
        if self.fail:
            raise ReportingFailure("upload rejected: 503 Service Unavailable")


class FakeResolver:
    def __init__(self, fail: bool = False, versions: Optional[dict] = None):
        self.fail = fail
        self.versions = versions or {"ring": ("0.16.0",)}
        self.seen = []

    def resolve(self, manifest, *, minimal, cwd, env, cancel=None) -> Resolution:
        self.seen.append(manifest)
        if self.fail:
            raise ResolutionFailure("dependency constraints cannot be satisfied at minimum versions")
        return Resolution(versions=self.versions, minimal=minimal)


class QuietConsole(Console):
    """Console that keeps its lines instead of printing them."""

    def __init__(self, debug: bool = False):
        super().__init__(debug=debug)
        self.lines: List[str] = []

    def _emit(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            self.lines.extend(lines)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


# -------------------------------------------------------------------------
# Fixtures
# -------------------------------------------------------------------------

@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def console() -> QuietConsole:
    c = QuietConsole()
    set_console(c)
    yield c
    set_console(Console())


@pytest.fixture
def repo(tmp_path) -> Path:
    """A tiny checkout: a manifest and the `rustls` subdirectory the steps use."""
    (tmp_path / "src").mkdir()
    (tmp_path / "rustls").mkdir()
    (tmp_path / "src" / "Cargo.toml").write_text(
        '[package]\n'
        'name = "rustls"\n'
        '\n'
        '[dependencies]\n'
        'ring = "0.16.11"\n'
        'webpki = "0.21.0"\n'
        'sct = "0.6.0"\n',
        encoding="utf-8",
    )
    return tmp_path
