# git.py
# Small, focused wrapper around the Git CLI.
# All Git interactions go through here so the rest of the code base
# never calls subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError when git exits non-zero and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path of the repository containing `cwd`."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD; this is the commit a run reports its verdict for."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """
    Check whether the working tree has uncommitted changes.

    This includes modified, staged and untracked files.
    """
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repository root.

    Typical usage:
        base = merge_base("origin/main")
        files = changed_files(base)
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    if not out:
        return []
    return out.splitlines()


def uncommitted_files(cwd: Optional[str | Path] = None) -> List[str]:
    """Staged, unstaged and untracked files."""
    files = set()
    for args in (
        ["diff", "--name-only"],
        ["diff", "--name-only", "--cached"],
        ["ls-files", "--others", "--exclude-standard"],
    ):
        out = _git(args, cwd=cwd)
        if out:
            files.update(out.splitlines())
    return sorted(files)


def tracked_files(cwd: Optional[str | Path] = None) -> List[str]:
    out = _git(["ls-files"], cwd=cwd)
    return out.splitlines() if out else []


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Commit where HEAD diverged from `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    return _git(["remote", "get-url", remote], cwd=cwd)
