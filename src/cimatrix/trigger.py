# trigger.py
# A run happens once per relevant code change. "Relevant" means at least one
# changed file matches the pipeline's path patterns (or no patterns are set).
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .git_facts.git import changed_files, head_sha, is_dirty, merge_base, tracked_files, uncommitted_files


@dataclass(frozen=True)
class ChangeSet:
    commit: Optional[str]  # None when the tree is dirty
    files: List[str]


def detect_changes(compare_ref: str = "origin/main", cwd: str | Path = ".") -> ChangeSet:
    """
    What changed, from git's point of view.

    Dirty tree: the uncommitted files. Clean tree: the diff between HEAD and
    its merge-base with `compare_ref`, falling back to HEAD~1, and to every
    tracked file when HEAD is the first commit.
    """
    if is_dirty(cwd=cwd):
        return ChangeSet(commit=None, files=uncommitted_files(cwd=cwd))

    commit = head_sha(cwd=cwd)
    try:
        base = merge_base(compare_ref, cwd=cwd)
    except subprocess.CalledProcessError:
        # no remote configured, unrelated histories, ...
        base = "HEAD~1"

    try:
        files = changed_files(base, "HEAD", cwd=cwd)
    except subprocess.CalledProcessError:
        files = tracked_files(cwd=cwd)
    return ChangeSet(commit=commit, files=files)


def _matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch(path, p) for p in patterns)


def relevant_changes(files: Iterable[str], patterns: Sequence[str]) -> List[str]:
    if not patterns:
        return list(files)
    return [f for f in files if _matches_any(f, patterns)]


def should_trigger(files: Iterable[str], patterns: Sequence[str]) -> bool:
    """No patterns: any change triggers. Otherwise at least one file must match."""
    files = list(files)
    if not patterns:
        return bool(files)
    return bool(relevant_changes(files, patterns))
