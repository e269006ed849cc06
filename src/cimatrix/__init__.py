from .dsl import axis, coverage, job, matrix, minimal_versions, patch, pipeline, sh, Matrix
from .pipeline import Orchestrator, Pipeline, PipelineRun, run_pipeline
from .model import JobResult, JobSpec, OverallResult, Step, StepMode

__all__ = [
    "axis",
    "coverage",
    "job",
    "matrix",
    "minimal_versions",
    "patch",
    "pipeline",
    "sh",
    "Matrix",
    "Orchestrator",
    "Pipeline",
    "PipelineRun",
    "run_pipeline",
    "JobResult",
    "JobSpec",
    "OverallResult",
    "Step",
    "StepMode",
]
