from __future__ import annotations

from typing import Dict, Optional

from cimatrix.dsl import sh
from cimatrix.model import Step

FEATURES = ("default", "none", "all")


def _feature_flags(features: str) -> str:
    if features == "default":
        return ""
    if features == "none":
        return "--no-default-features"
    if features == "all":
        return "--all-features"
    raise ValueError(f"Unknown feature set: {features!r} (expected one of {FEATURES})")


def _cargo(sub: str, *, release: bool, features: str, extra: str = "") -> str:
    parts = ["cargo", sub]
    if release:
        parts.append("--release")
    flags = _feature_flags(features)
    if flags:
        parts.append(flags)
    if extra:
        parts.append(extra)
    return " ".join(parts)


def cargo_build(
    name: str = "Build",
    *,
    release: bool = False,
    features: str = "default",
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
) -> Step:
    return sh(
        name,
        _cargo("build", release=release, features=features),
        cwd=cwd,
        env=env,
        continue_on_error=continue_on_error,
    )


def cargo_test(
    name: str = "Run tests",
    *,
    release: bool = False,
    features: str = "default",
    no_run: bool = False,
    backtrace: bool = False,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    args: str = "",
) -> Step:
    """
    `cargo test` in one of its configurations.

    no_run=True compiles the test binaries without running them; the step
    then appends `--no-run` when executed.
    """
    step_env = dict(env or {})
    if backtrace:
        step_env.setdefault("RUST_BACKTRACE", "1")
    return sh(
        name,
        _cargo("test", release=release, features=features, extra=args.strip()),
        cwd=cwd,
        env=step_env,
        continue_on_error=continue_on_error,
        no_run=no_run,
    )
