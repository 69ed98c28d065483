# Upstream KB – Hybrid search knowledge base for upstream source trees
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""File discovery: glob includes minus gitwildmatch excludes, relative to the upstream root."""
from dataclasses import dataclass
from pathlib import Path

from pathspec import PathSpec
from pathspec.patterns.gitwildmatch import GitWildMatchPattern

from .config import SourceSpec


@dataclass(frozen=True)
class DiscoveredFile:
    abs_path: Path
    rel_path: str  # POSIX, relative to the upstream root


def compile_excludes(patterns: list[str]) -> PathSpec:
    """Exclude patterns with gitignore semantics, matched against POSIX relative paths."""
    return PathSpec.from_lines(GitWildMatchPattern, patterns)


def discover_files(root: Path, spec: SourceSpec) -> list[DiscoveredFile]:
    """All files under root matched by the source's globs and not excluded."""
    root = Path(root)
    if not root.is_dir():
        return []
    excludes = compile_excludes(spec.exclude)
    found: dict[str, Path] = {}
    for pattern in spec.globs:
        for p in root.glob(pattern):
            if not p.is_file():
                continue
            rel = p.relative_to(root).as_posix()
            if rel in found or excludes.match_file(rel):
                continue
            found[rel] = p
    return [DiscoveredFile(abs_path=found[rel], rel_path=rel) for rel in sorted(found)]
