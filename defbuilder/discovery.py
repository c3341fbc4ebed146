"""
discovery.py

Responsibility: Find definition files under a source root.

Rules:
- Walk the tree in sorted order so repeated runs log and plan identically.
- Skip the output directory subtree entirely.
- Match regular files only (symlinks are ignored, as `find -type f` does).
- Return POSIX-style paths relative to the root.

This module intentionally does NOT know about targets, tools or the CLI.
"""

from __future__ import annotations

import os
from pathlib import Path


class DiscoveryError(RuntimeError):
    pass


def discover_definitions(
    root_dir: str | Path,
    *,
    exclude_dir: str = "build",
    suffix: str = ".def",
) -> tuple[str, ...]:
    """
    Return the relative paths of every `*<suffix>` file under root_dir,
    excluding anything below `exclude_dir` (itself relative to root_dir).
    """
    root = Path(root_dir)
    if not root.is_dir():
        raise DiscoveryError(f"Source root is not a directory: {root}")

    excluded = exclude_dir.strip("/")
    found: list[str] = []
    for current, dirs, filenames in os.walk(root):
        rel_dir = Path(current).relative_to(root).as_posix()
        prefix = "" if rel_dir == "." else f"{rel_dir}/"

        # Prune in place so os.walk never descends into the output tree.
        dirs[:] = sorted(d for d in dirs if f"{prefix}{d}" != excluded)

        for name in filenames:
            if not name.endswith(suffix) or name == suffix:
                continue
            path = Path(current) / name
            if path.is_symlink() or not path.is_file():
                continue
            found.append(f"{prefix}{name}")

    found.sort()
    return tuple(found)
