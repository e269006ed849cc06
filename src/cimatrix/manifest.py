# manifest.py
# Pre-build dependency substitution, the moral equivalent of
#   sed -i 's/^<name> = .*/<name> = <source>/' Cargo.toml
from __future__ import annotations

import hashlib
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from .errors import ConfigurationError
from .model import ManifestCommit, PatchRule


@dataclass(frozen=True)
class PatchOutcome:
    text: str
    matches: Dict[str, int]


def validate_rule(rule: PatchRule) -> None:
    name = rule.name
    if not name or not name.strip():
        raise ConfigurationError("patch rule has an empty dependency name", details={"rule": rule})
    if any(ch.isspace() for ch in name) or "=" in name:
        raise ConfigurationError(
            f"patch rule name {name!r} must not contain whitespace or '='",
            details={"rule": rule},
        )
    if "\n" in rule.source or "\r" in rule.source:
        raise ConfigurationError(
            f"replacement source for {name!r} must be a single line",
            details={"rule": rule},
        )


def normalize_rules(rules: Iterable[PatchRule]) -> List[PatchRule]:
    """
    Validate rules and collapse duplicates.

    A later rule for the same dependency silently replaces an earlier one
    (last writer wins); the surviving rule keeps the first one's position.
    """
    by_name: Dict[str, PatchRule] = {}
    for rule in rules:
        validate_rule(rule)
        by_name[rule.name] = rule
    return list(by_name.values())


def _split_cr(line: str) -> Tuple[str, str]:
    if line.endswith("\r"):
        return line[:-1], "\r"
    return line, ""


def patch_text(text: str, rules: Iterable[PatchRule]) -> PatchOutcome:
    rules = normalize_rules(rules)
    compiled = [(r, re.compile(rf"^{re.escape(r.name)} = .*")) for r in rules]
    matches = {r.name: 0 for r in rules}

    # split on "\n" only so every untouched byte survives the round trip
    out: List[str] = []
    for line in text.split("\n"):
        body, cr = _split_cr(line)
        for rule, pattern in compiled:
            if pattern.match(body):
                body = f"{rule.name} = {rule.source}"
                matches[rule.name] += 1
        out.append(body + cr)

    return PatchOutcome(text="\n".join(out), matches=matches)


def apply_patches(text: str, rules: Iterable[PatchRule]) -> str:
    """Return `text` with every matching declaration replaced. No match is a no-op."""
    return patch_text(text, rules).text


def digest_of(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _atomic_write(path: Path, text: str) -> None:
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        shutil.copymode(path, tmp)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


def patch_manifest(path: str | Path, rules: Iterable[PatchRule]) -> ManifestCommit:
    """
    Patch the manifest on disk and return the commit every job is handed.

    The file is only rewritten when its content actually changes, and the
    rewrite is atomic so no reader ever sees a half-patched manifest.
    """
    p = Path(path)
    if not p.is_file():
        raise ConfigurationError(f"manifest not found: {p}", details={"path": str(p)})

    with p.open("r", encoding="utf-8", newline="") as f:
        original = f.read()
    outcome = patch_text(original, rules)
    if outcome.text != original:
        _atomic_write(p, outcome.text)

    return ManifestCommit(
        path=str(p),
        text=outcome.text,
        digest=digest_of(outcome.text),
        matches=dict(outcome.matches),
    )
