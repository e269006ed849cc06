# cli.py
from __future__ import annotations

import subprocess
import sys
import threading
from pathlib import Path

import click

from cimatrix import settings
from cimatrix.errors import CIError, ConfigurationError, PipelineCancelled
from cimatrix.executor import SubprocessExecutor
from cimatrix.git_facts.git import get_remote_url, head_sha
from cimatrix.manifest import patch_manifest
from cimatrix.pipeline import Orchestrator, PipelineRun
from cimatrix.report import write_report
from cimatrix.reporters import CommandReporter, HTTPCoverageReporter, RecordingReporter
from cimatrix.trigger import detect_changes, relevant_changes, should_trigger
from cimatrix.ui.console import Console, get_console, set_console
from cimatrix.workflow import discover_workflow, load_pipeline


def _repo_name(repo_root: Path) -> str:
    try:
        repo_url = get_remote_url("origin", cwd=repo_root)
        return repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        return repo_root.resolve().name


def _commit(repo_root: Path) -> str | None:
    try:
        return head_sha(cwd=repo_root)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def _fail(ctx, title: str, e: BaseException) -> None:
    console = get_console()
    if isinstance(e, CIError):
        details = [f"{k}: {v}" for k, v in e.details.items()]
        console.print_error(title, e.message, details=details or None)
    else:
        console.print_exception(e)
    if ctx.obj.get("debug", False):
        import traceback
        traceback.print_exc()
    sys.exit(1)


def _load(ctx, workflow: str | None, repo_root: Path):
    try:
        workflow_path = discover_workflow(workflow, root=repo_root)
        return workflow_path, load_pipeline(workflow_path)
    except ConfigurationError as e:
        _fail(ctx, "Failed to load workflow", e)


def _run_interruptible(orchestrator: Orchestrator) -> PipelineRun:
    """
    Run the pipeline off the main thread so Ctrl-C can cancel every job
    and still wait for their processes to be torn down.
    """
    outcome: dict = {}

    def _target():
        try:
            outcome["run"] = orchestrator.run()
        except BaseException as e:
            outcome["error"] = e

    t = threading.Thread(target=_target, name="cimatrix-run", daemon=True)
    t.start()
    try:
        while t.is_alive():
            t.join(0.2)
    except KeyboardInterrupt:
        orchestrator.cancel()
        t.join()
        raise

    if "error" in outcome:
        raise outcome["error"]
    return outcome["run"]


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """cimatrix: patch, expand and verify a build matrix for one commit."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {settings.DEFAULT_WORKFLOW} if present)")
@click.option("--workers", default=None, type=int, help="Number of top-level jobs run in parallel")
@click.option("--repo-root", default=".", show_default=True, type=click.Path(file_okay=False), help="Repository checkout to verify")
@click.option("--log-dir", default=settings.LOG_DIR, envvar="CIMATRIX_LOG_DIR", help="Write one log file per job here")
@click.option("--report-json", default=None, type=click.Path(dir_okay=False), help="Write a JSON run report to this path")
@click.option("--git-diff/--no-git-diff", default=False, help="Skip the run when no changed file matches the pipeline's paths")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")
@click.option("--coverage-url", default=settings.COVERAGE_UPLOAD_URL, envvar="CIMATRIX_COVERAGE_URL", show_default=True, help="Coverage upload endpoint")
@click.option("--coverage-token", default=settings.COVERAGE_TOKEN, envvar="CODECOV_TOKEN", help="Coverage upload token")
@click.option("--coverage-command", default=None, help="Shell command that uploads {artifact} instead of the HTTP upload")
@click.option("--no-upload", is_flag=True, default=False, help="Collect coverage but do not upload it")
@click.pass_context
def run(
    ctx,
    workflow,
    workers,
    repo_root,
    log_dir,
    report_json,
    git_diff,
    compare_ref,
    coverage_url,
    coverage_token,
    coverage_command,
    no_upload,
):
    """Run the whole pipeline for the current commit."""
    console = get_console()
    root = Path(repo_root)
    workflow_path, pipeline = _load(ctx, workflow, root)

    if git_diff:
        try:
            changes = detect_changes(compare_ref, cwd=root)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            _fail(ctx, "Could not compute git diff", e)
        if not should_trigger(changes.files, pipeline.paths):
            console.print_info("No relevant changes; nothing to verify.")
            sys.exit(0)
        console.print_debug(f"relevant changes: {relevant_changes(changes.files, pipeline.paths)}")

    commit = _commit(root)
    executor = SubprocessExecutor()
    if coverage_command:
        reporter = CommandReporter(coverage_command, executor, cwd=root)
    elif no_upload:
        reporter = RecordingReporter()
    else:
        reporter = HTTPCoverageReporter(coverage_url, coverage_token or None, commit=commit)

    orchestrator = Orchestrator(
        pipeline,
        executor=executor,
        reporter=reporter,
        repo_root=root,
        max_workers=workers,
        log_dir=log_dir,
        console=console,
    )

    try:
        pipeline.validate()
        console.print_run_started(
            repository=_repo_name(root),
            workflow=workflow_path.name,
            job_count=len(pipeline.plan()),
            commit=commit,
        )
        result = _run_interruptible(orchestrator)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except PipelineCancelled as e:
        console.print_info(f"\n{e.message}")
        sys.exit(130)
    except ConfigurationError as e:
        _fail(ctx, "Invalid pipeline", e)
    except Exception as e:
        _fail(ctx, "Run failed", e)

    console.print_diagnostics(result.diagnostics)
    console.print_results(result.results, result.overall)

    if report_json:
        write_report(result, report_json, commit=commit)
        console.print_info(f"Report written to {report_json}")

    if not result.overall.passed:
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {settings.DEFAULT_WORKFLOW} if present)")
@click.option("--repo-root", default=".", show_default=True, type=click.Path(file_okay=False))
@click.pass_context
def plan(ctx, workflow, repo_root):
    """Print the expanded jobs without running anything."""
    console = get_console()
    _, pipeline = _load(ctx, workflow, Path(repo_root))
    try:
        pipeline.validate()
        jobs = pipeline.plan()
    except ConfigurationError as e:
        _fail(ctx, "Invalid pipeline", e)

    console.print_header(f"PLAN: {pipeline.name}")
    console.print_plan(jobs)
    console.print_info(f"\n{len(jobs)} job(s)")


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {settings.DEFAULT_WORKFLOW} if present)")
@click.option("--repo-root", default=".", show_default=True, type=click.Path(file_okay=False))
@click.pass_context
def patch(ctx, workflow, repo_root):
    """Apply the pipeline's manifest patches and stop."""
    console = get_console()
    root = Path(repo_root)
    _, pipeline = _load(ctx, workflow, root)
    if not pipeline.manifest:
        _fail(ctx, "Nothing to patch", ConfigurationError("pipeline declares no manifest"))

    try:
        commit = patch_manifest(root / pipeline.manifest, pipeline.patches)
    except ConfigurationError as e:
        _fail(ctx, "Patch failed", e)

    for name, matches in commit.matches.items():
        console.print_patch(name, matches)
    console.print_info(f"{commit.path} sha256={commit.digest}")


if __name__ == "__main__":
    cli()
