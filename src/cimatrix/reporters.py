# reporters.py
from __future__ import annotations

import http.client
import shlex
import urllib.error
import urllib.request
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from . import settings
from .errors import ReportingFailure
from .executor import Executor, SubprocessExecutor
from .model import CoverageReport


class HTTPCoverageReporter:
    """Upload a coverage artifact to a Codecov-style HTTP endpoint."""

    def __init__(
        self,
        url: str = settings.COVERAGE_UPLOAD_URL,
        token: Optional[str] = settings.COVERAGE_TOKEN,
        *,
        commit: Optional[str] = None,
        branch: Optional[str] = None,
        timeout: float = settings.COVERAGE_UPLOAD_TIMEOUT,
    ):
        """
        Args:
            url: Upload endpoint
            token: Upload token; public repos on some services need none
            commit: Commit SHA the report belongs to
            branch: Branch name, sent when known
            timeout: Socket timeout in seconds
        """
        self.url = url
        self.token = token
        self.commit = commit
        self.branch = branch
        self.timeout = timeout

    def _query(self) -> str:
        params = {"package": "cimatrix"}
        if self.token:
            params["token"] = self.token
        if self.commit:
            params["commit"] = self.commit
        if self.branch:
            params["branch"] = self.branch
        return urlencode(params)

    def report(self, report: CoverageReport) -> None:
        path = Path(report.artifact)
        try:
            body = path.read_bytes()
        except OSError as e:
            raise ReportingFailure(f"cannot read coverage artifact: {e}", details={"artifact": str(path)})

        sep = "&" if "?" in self.url else "?"
        try:
            req = urllib.request.Request(
                f"{self.url}{sep}{self._query()}",
                data=body,
                headers={"Content-Type": "text/plain", "Accept": "text/plain"},
                method="POST",
            )
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8", "replace") if e.fp else ""
            raise ReportingFailure(
                f"upload rejected: {e.code} {e.reason}",
                details={"body": error_body[:500]} if error_body else {},
            )
        except urllib.error.URLError as e:
            raise ReportingFailure(f"network error: {e.reason}", details={"url": self.url})
        except OSError as e:
            raise ReportingFailure(f"upload failed: {e}", details={"url": self.url})
        except (ValueError, http.client.HTTPException) as e:
            raise ReportingFailure(f"upload failed: {type(e).__name__}: {e}", details={"url": self.url})


class CommandReporter:
    """
    Report by running an uploader command, e.g. `codecov -f {artifact}`.
    `{artifact}` is replaced with the shell-quoted artifact path.
    """

    def __init__(self, command: str, executor: Optional[Executor] = None, *, cwd: str | Path = "."):
        self.command = command
        self.executor = executor or SubprocessExecutor()
        self.cwd = Path(cwd)

    def report(self, report: CoverageReport) -> None:
        cmd = self.command.replace("{artifact}", shlex.quote(report.artifact))
        proc = self.executor.execute(cmd, cwd=self.cwd.resolve(), env={})
        if proc.exit_code != 0:
            raise ReportingFailure(
                f"uploader exited with {proc.exit_code}",
                details={"cmd": cmd, "output": proc.output[-500:]},
            )


class RecordingReporter:
    """Keeps reports in memory instead of uploading. Used for dry runs."""

    def __init__(self):
        self.reports: list[CoverageReport] = []

    def report(self, report: CoverageReport) -> None:
        self.reports.append(report)
