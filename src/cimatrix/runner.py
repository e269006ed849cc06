# runner.py
from __future__ import annotations

import time
from pathlib import Path
from typing import List, Optional

from .errors import FailureKind, StepFailure
from .executor import CancelToken, Executor, ProcessResult
from .model import JobResult, JobSpec, JobStatus, Step, StepResult, StepStatus
from .ui.console import Console, get_console

OUTPUT_TAIL = 4000

TOOL_HINTS = {
    "cargo": "Install the Rust toolchain (rustup) or fix PATH.",
    "rustup": "Install rustup from https://rustup.rs or fix PATH.",
    "codecov": "Install the codecov uploader or use --coverage-url.",
    "sh": "A POSIX shell is required to run steps.",
}


def hint_for(cmd: str) -> Optional[str]:
    words = cmd.split()
    return TOOL_HINTS.get(words[0]) if words else None


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _run_step(
    spec: JobSpec,
    index: int,
    step: Step,
    executor: Executor,
    repo_root: Path,
    cancel: CancelToken | None,
) -> ProcessResult:
    cmd = step.command()
    cwd = (repo_root / (step.cwd or ".")).resolve()
    if not cwd.is_dir():
        raise StepFailure(
            job=spec.id,
            step=step.name,
            index=index,
            cmd=cmd,
            exit_code=None,
            output=f"working directory not found: {cwd}",
        )

    env = dict(spec.env)
    env.update(step.env)

    proc = executor.execute(cmd, cwd=cwd, env=env, cancel=cancel)
    if proc.cancelled:
        return proc
    if proc.exit_code != 0:
        raise StepFailure(
            job=spec.id,
            step=step.name,
            index=index,
            cmd=cmd,
            exit_code=proc.exit_code,
            output=proc.output,
        )
    return proc


def _write_log(log_dir: Path, spec: JobSpec, transcript: List[str]) -> str:
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / f"{spec.slug}.log"
    path.write_text("".join(transcript), encoding="utf-8")
    return str(path)


def run_job(
    spec: JobSpec,
    executor: Executor,
    *,
    repo_root: str | Path = ".",
    cancel: CancelToken | None = None,
    console: Console | None = None,
    log_dir: str | Path | None = None,
) -> JobResult:
    """
    Run every step of `spec` in order and return its JobResult.

    A failing step stops the job unless it is marked continue_on_error,
    in which case the failure is recorded as tolerated and the job goes on.
    Tolerated failures never make the job fail.
    """
    console = console or get_console()
    root = Path(repo_root).resolve()
    started = time.monotonic()

    step_results: List[StepResult] = []
    transcript: List[str] = []
    status = JobStatus.SUCCESS
    failing_step: int | None = None
    failure_kind: FailureKind | None = None

    console.print_job_start(spec.id)

    for index, step in enumerate(spec.steps):
        if cancel is not None and cancel.cancelled:
            status, failure_kind = JobStatus.CANCELLED, FailureKind.CANCELLED
            break

        cmd = step.command()
        console.print_step(spec.id, step.name)
        transcript.append(f"=== [{index}] {step.name}\n$ {cmd}\n")

        try:
            proc = _run_step(spec, index, step, executor, root, cancel)
        except StepFailure as e:
            transcript.append(e.output)
            transcript.append(f"\n--- exit: {e.exit_code}\n")
            result = StepResult(
                index=index,
                name=step.name,
                command=cmd,
                status=StepStatus.FAILED,
                exit_code=e.exit_code,
                output=e.output[-OUTPUT_TAIL:],
                tolerated=step.continue_on_error,
                tests_executed=step.executes_tests,
            )
            step_results.append(result)

            if step.continue_on_error:
                console.print_warning(f"[{spec.id}] step '{step.name}' failed (exit={e.exit_code}), continuing")
                continue

            console.print_failure(step.name, str(e), exit_code=e.exit_code, hint=hint_for(cmd))
            console.print_output_tail(e.output)
            status, failing_step, failure_kind = JobStatus.FAILED, index, FailureKind.STEP
            break

        transcript.append(proc.output)
        transcript.append(f"\n--- exit: {proc.exit_code}\n")

        if proc.cancelled:
            step_results.append(
                StepResult(
                    index=index,
                    name=step.name,
                    command=cmd,
                    status=StepStatus.CANCELLED,
                    exit_code=proc.exit_code,
                    output=proc.output[-OUTPUT_TAIL:],
                    tests_executed=False,
                )
            )
            status, failure_kind = JobStatus.CANCELLED, FailureKind.CANCELLED
            break

        step_results.append(
            StepResult(
                index=index,
                name=step.name,
                command=cmd,
                status=StepStatus.SUCCESS,
                exit_code=proc.exit_code,
                output=proc.output[-OUTPUT_TAIL:],
                tests_executed=step.executes_tests,
            )
        )

    # whatever did not run is recorded as such
    for index in range(len(step_results), len(spec.steps)):
        step = spec.steps[index]
        step_results.append(
            StepResult(
                index=index,
                name=step.name,
                command=step.command(),
                status=StepStatus.NOT_RUN,
                tests_executed=False,
            )
        )

    output_ref = _write_log(Path(log_dir), spec, transcript) if log_dir is not None else None

    result = JobResult(
        job_id=spec.id,
        status=status,
        failing_step=failing_step,
        steps=tuple(step_results),
        failure_kind=failure_kind,
        output_ref=output_ref,
        duration=time.monotonic() - started,
    )
    console.print_job_finished(result)
    return result
