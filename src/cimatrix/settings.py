from __future__ import annotations
import os

COVERAGE_UPLOAD_URL = os.environ.get("CIMATRIX_COVERAGE_URL", "https://codecov.io/upload/v2")
COVERAGE_TOKEN = os.environ.get("CODECOV_TOKEN") or None
COVERAGE_UPLOAD_TIMEOUT = float(os.environ.get("CIMATRIX_COVERAGE_TIMEOUT", "60"))
LOG_DIR = os.environ.get("CIMATRIX_LOG_DIR") or None
DEFAULT_WORKFLOW = "cimatrix_workflow.py"
