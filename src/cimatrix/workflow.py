# workflow.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import List

from . import settings
from .errors import ConfigurationError
from .pipeline import Pipeline


def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file path.

    The file must define either:
      - workflow() -> Pipeline
      - PIPELINE = pipeline(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigurationError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ConfigurationError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"cimatrix_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(
            f"Could not load workflow {wf_path.name}: {type(e).__name__}: {e}",
            details={"path": str(wf_path)},
        ) from e

    found = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            found = globals_dict["workflow"]()
        except (ConfigurationError, ValueError) as e:
            raise ConfigurationError(str(e), details={"path": str(wf_path)}) from e
    elif "PIPELINE" in globals_dict:
        found = globals_dict["PIPELINE"]

    if not isinstance(found, Pipeline):
        raise ConfigurationError(
            "Workflow must return/define a Pipeline. "
            "Define workflow() -> Pipeline or PIPELINE = pipeline(...).",
            details={"path": str(wf_path), "got": type(found).__name__},
        )
    return found


def find_workflow_files(root: str | Path = ".") -> List[Path]:
    """cimatrix_workflow.py first, then any other *_workflow.py in `root`."""
    root = Path(root)
    workflow_files = []

    default_workflow = root / settings.DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in sorted(root.glob("*_workflow.py")):
        if path != default_workflow:
            workflow_files.append(path)

    return workflow_files


def discover_workflow(workflow_arg: str | None, root: str | Path = ".") -> Path:
    """
    Resolve the workflow file to load.

    An explicit argument wins (".py" may be omitted). Otherwise exactly one
    workflow file must exist in `root`; none or several is a
    ConfigurationError.
    """
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            raise ConfigurationError(f"Could not find workflow file: {workflow_arg}")
        return workflow_path

    workflow_files = find_workflow_files(root)
    if not workflow_files:
        raise ConfigurationError(
            "No workflow file found",
            details={"looked_for": [settings.DEFAULT_WORKFLOW, "*_workflow.py"]},
        )
    if len(workflow_files) > 1:
        raise ConfigurationError(
            "Multiple workflow files found; pass --workflow",
            details={"found": [str(f) for f in workflow_files]},
        )
    return workflow_files[0]
