# executor.py
# The only place that actually starts processes. Everything above this
# talks to the Executor protocol so tests can script exit codes.
from __future__ import annotations

import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Protocol


class CancelToken:
    """
    Cooperative cancellation flag.

    Child tokens observe their parent, so cancelling the pipeline token
    cancels every job, while cancelling a job token leaves the others alone.
    """

    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int | None
    output: str
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.cancelled


class Executor(Protocol):
    def execute(
        self,
        command: str,
        *,
        cwd: Path,
        env: Mapping[str, str],
        cancel: CancelToken | None = None,
    ) -> ProcessResult:
        ...


class SubprocessExecutor:
    """
    Run commands through the shell, stderr folded into stdout.

    Each command gets its own process group so cancellation reaches
    whatever the shell spawned (cargo, rustc, test binaries).
    """

    def __init__(self, poll_interval: float = 0.2, terminate_grace: float = 5.0):
        self.poll_interval = poll_interval
        self.terminate_grace = terminate_grace

    def execute(
        self,
        command: str,
        *,
        cwd: Path,
        env: Mapping[str, str],
        cancel: CancelToken | None = None,
    ) -> ProcessResult:
        full_env = os.environ.copy()
        full_env.update(env)

        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=str(cwd),
            env=full_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            start_new_session=(os.name == "posix"),
        )

        chunks: List[str] = []
        while True:
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
                chunks.append(out or "")
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    chunks.append(self._terminate(proc))
                    return ProcessResult(exit_code=proc.returncode, output="".join(chunks), cancelled=True)

        return ProcessResult(exit_code=proc.returncode, output="".join(chunks))

    def _terminate(self, proc: subprocess.Popen) -> str:
        self._signal(proc, signal.SIGTERM)
        try:
            out, _ = proc.communicate(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            self._signal(proc, signal.SIGKILL if os.name == "posix" else signal.SIGTERM)
            out, _ = proc.communicate()
        return out or ""

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            else:
                proc.terminate()
        except ProcessLookupError:
            pass
