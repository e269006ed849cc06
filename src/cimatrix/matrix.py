# matrix.py
from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Dict, List, Mapping, Optional, Sequence

from .errors import ConfigurationError
from .model import AxisSet, JobKind, JobSpec, JobTemplate, ManifestCommit, Step

# same reference syntax as the hosted CI configs: ${{ matrix.rust }}
MATRIX_REF = re.compile(r"\$\{\{\s*matrix\.([A-Za-z0-9_-]+)\s*\}\}")


def env_name(axis: str) -> str:
    return "MATRIX_" + re.sub(r"[^A-Za-z0-9]", "_", axis).upper()


def validate_axes(axes: Sequence[AxisSet]) -> None:
    seen = set()
    for a in axes:
        if not a.name:
            raise ConfigurationError("matrix axis without a name")
        if a.name in seen:
            raise ConfigurationError(f"duplicate matrix axis {a.name!r}")
        seen.add(a.name)
        if not a.values:
            raise ConfigurationError(
                f"matrix axis {a.name!r} has no values",
                details={"axis": a.name},
            )
        dupes = sorted({v for v in a.values if a.values.count(v) > 1})
        if dupes:
            raise ConfigurationError(
                f"matrix axis {a.name!r} repeats values {dupes}",
                details={"axis": a.name},
            )


def substitute(text: str, bindings: Mapping[str, str], *, where: str = "") -> str:
    def _sub(m: re.Match) -> str:
        key = m.group(1)
        if key not in bindings:
            raise ConfigurationError(
                f"unknown matrix axis {key!r} referenced{' in ' + where if where else ''}",
                details={"known": sorted(bindings)},
            )
        return bindings[key]

    return MATRIX_REF.sub(_sub, text)


def _bind_step(step: Step, bindings: Mapping[str, str]) -> Step:
    where = f"step {step.name!r}"
    return replace(
        step,
        name=substitute(step.name, bindings, where=where),
        run=substitute(step.run, bindings, where=where),
        cwd=substitute(step.cwd, bindings, where=where) if step.cwd else step.cwd,
        env={k: substitute(v, bindings, where=where) for k, v in step.env.items()},
    )


def job_id(name: str, values: Sequence[str]) -> str:
    return f"{name} ({', '.join(values)})" if values else name


def expand(
    axes: Sequence[AxisSet],
    template: JobTemplate,
    *,
    manifest: Optional[ManifestCommit] = None,
) -> List[JobSpec]:
    """
    Expand the matrix into one JobSpec per point of the cross-product.

    Order is itertools.product order over the axes as declared (first axis
    varies slowest), so job ids come out the same on every run.
    """
    validate_axes(axes)

    specs: List[JobSpec] = []
    for combo in itertools.product(*(a.values for a in axes)):
        bindings: Dict[str, str] = {a.name: v for a, v in zip(axes, combo)}

        env = {k: substitute(v, bindings, where=f"job {template.name!r}") for k, v in template.env.items()}
        for a, v in zip(axes, combo):
            env[env_name(a.name)] = v
            if a.env:
                env[a.env] = v

        specs.append(
            JobSpec(
                id=job_id(template.name, combo),
                name=template.name,
                steps=tuple(_bind_step(s, bindings) for s in template.steps),
                kind=JobKind.MATRIX,
                env=env,
                matrix=tuple(bindings.items()),
                manifest=manifest,
            )
        )
    return specs


def job_count(axes: Sequence[AxisSet]) -> int:
    n = 1
    for a in axes:
        n *= len(a.values)
    return n
