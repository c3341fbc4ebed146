"""
planner.py

Responsibility: Turn discovered definition files into build targets.

- Classify each definition (root base image / top-level / nested).
- Derive the flat target path (`build/ubuntu20--code-server`).
- Keep an explicit target -> source table and refuse colliding names.
- Decide staleness from a `TimestampRegistry` snapshot.

Nothing here runs external tools or writes to disk.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from defbuilder.config import BuildConfig

logger = logging.getLogger(__name__)

SEPARATOR = "--"


class PlanError(RuntimeError):
    pass


class MissingSourceError(PlanError):
    def __init__(self, target: str, source: str) -> None:
        super().__init__(f"def file not found: {source} (needed by {target})")
        self.target = target
        self.source = source


class NameCollisionError(PlanError):
    def __init__(self, path: str, first: str, second: str) -> None:
        super().__init__(f"{first} and {second} both map to {path}")
        self.path = path
        self.sources = (first, second)


class AmbiguousNameError(PlanError):
    def __init__(self, path: str, source: str) -> None:
        super().__init__(
            f"{source} cannot be built as {path}: '{SEPARATOR}' in a definition path "
            f"does not map back to the same file"
        )
        self.path = path
        self.source = source


class TargetKind(str, enum.Enum):
    IMAGE = "image-artifact"
    ENVIRONMENT = "environment-marker"


@dataclass(frozen=True)
class DefinitionFile:
    """A definition file, addressed by its POSIX path relative to the source root."""

    rel_path: str
    is_root_base: bool = False

    @property
    def is_nested(self) -> bool:
        return "/" in self.rel_path


@dataclass(frozen=True)
class Target:
    path: str
    kind: TargetKind
    source: DefinitionFile
    # File whose mtime marks completion: the artifact for images, the marker otherwise.
    stamp_path: str

    @property
    def is_top_level(self) -> bool:
        return not self.source.is_nested


def flatten_name(rel_path: str, *, suffix: str = ".def") -> str:
    """`ubuntu20/code-server.def` -> `ubuntu20--code-server`."""
    stem = rel_path[: -len(suffix)] if rel_path.endswith(suffix) else rel_path
    return stem.replace("/", SEPARATOR)


def unflatten_name(target_path: str, *, build_dir: str = "build", suffix: str = ".def") -> str:
    """`build/ubuntu20--code-server` -> `ubuntu20/code-server.def`."""
    prefix = f"{build_dir}/"
    name = target_path[len(prefix) :] if target_path.startswith(prefix) else target_path
    return name.replace(SEPARATOR, "/") + suffix


def classify(rel_path: str, cfg: BuildConfig) -> DefinitionFile:
    return DefinitionFile(rel_path=rel_path, is_root_base=rel_path == f"{cfg.root_base}{cfg.suffix}")


def target_for(definition: DefinitionFile, cfg: BuildConfig) -> Target:
    if definition.is_root_base:
        path = f"{cfg.build_dir}/{cfg.root_base}{cfg.image_suffix}"
        return Target(path=path, kind=TargetKind.IMAGE, source=definition, stamp_path=path)

    path = f"{cfg.build_dir}/{flatten_name(definition.rel_path, suffix=cfg.suffix)}"
    return Target(
        path=path,
        kind=TargetKind.ENVIRONMENT,
        source=definition,
        stamp_path=f"{path}{cfg.marker_suffix}",
    )


@dataclass(frozen=True)
class Plan:
    """All targets for one invocation, root image first, then top-level, then nested."""

    targets: tuple[Target, ...]
    build_dir: str = "build"
    suffix: str = ".def"
    _by_path: dict[str, Target] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_path", {t.path: t for t in self.targets})

    @property
    def all_targets(self) -> tuple[Target, ...]:
        return self.targets

    @property
    def root_targets(self) -> tuple[Target, ...]:
        return tuple(t for t in self.targets if t.is_top_level)

    def source_for(self, target_path: str) -> str:
        return self._by_path[target_path].source.rel_path

    def lookup(self, target_path: str, root_dir: str | Path = ".") -> Target:
        """
        Resolve an explicitly requested target path.

        Unknown paths are mapped back to their definition file so a missing
        source is reported as such rather than as an unknown name.
        """
        path = target_path.rstrip("/")
        if path in self._by_path:
            return self._by_path[path]

        source = unflatten_name(path, build_dir=self.build_dir, suffix=self.suffix)
        if not (Path(root_dir) / source).is_file():
            raise MissingSourceError(path, source)
        raise PlanError(f"{path} is not a planned target (source {source} was not discovered)")


def plan_targets(rel_paths: Iterable[str], cfg: BuildConfig) -> Plan:
    """
    Build the plan.

    Raises NameCollisionError if two sources share an output path, and
    AmbiguousNameError if an environment name does not map back to its source.
    """
    definitions = [classify(p, cfg) for p in rel_paths]
    ordered = (
        [d for d in definitions if d.is_root_base]
        + [d for d in definitions if not d.is_root_base and not d.is_nested]
        + [d for d in definitions if d.is_nested]
    )

    targets = [target_for(d, cfg) for d in ordered]

    # Outputs and stamps share one namespace under the build directory.
    owners: dict[str, str] = {}
    for t in targets:
        for path in dict.fromkeys((t.path, t.stamp_path)):
            other = owners.get(path)
            if other is not None and other != t.source.rel_path:
                raise NameCollisionError(path, other, t.source.rel_path)
            owners[path] = t.source.rel_path

    # Environment names must map back to their definition (`build/a--b` -> `a/b.def`).
    for t in targets:
        if t.kind is TargetKind.ENVIRONMENT:
            if unflatten_name(t.path, build_dir=cfg.build_dir, suffix=cfg.suffix) != t.source.rel_path:
                raise AmbiguousNameError(t.path, t.source.rel_path)

    logger.debug("Planned %d targets from %d definitions", len(targets), len(definitions))
    return Plan(targets=tuple(targets), build_dir=cfg.build_dir, suffix=cfg.suffix)


class TimestampRegistry:
    """
    Modification times of source and output files, keyed by root-relative path.

    Values are cached until `refresh` so planning and execution see one
    consistent snapshot; executors refresh the paths they write.
    """

    def __init__(self, root_dir: str | Path) -> None:
        self._root = Path(root_dir)
        self._cache: dict[str, int | None] = {}
        self._lock = threading.Lock()

    def _stat(self, rel_path: str) -> int | None:
        try:
            return os.stat(self._root / rel_path).st_mtime_ns
        except FileNotFoundError:
            return None

    def mtime(self, rel_path: str) -> int | None:
        with self._lock:
            if rel_path not in self._cache:
                self._cache[rel_path] = self._stat(rel_path)
            return self._cache[rel_path]

    def refresh(self, rel_path: str) -> int | None:
        with self._lock:
            self._cache[rel_path] = self._stat(rel_path)
            return self._cache[rel_path]

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


def is_stale(target: Target, registry: TimestampRegistry) -> bool:
    """
    A target is stale when its stamp is missing or older than its definition.

    Raises MissingSourceError if the definition file itself is gone.
    """
    source_mtime = registry.mtime(target.source.rel_path)
    if source_mtime is None:
        raise MissingSourceError(target.path, target.source.rel_path)

    stamp_mtime = registry.mtime(target.stamp_path)
    if stamp_mtime is None:
        logger.debug("%s is stale: %s does not exist", target.path, target.stamp_path)
        return True
    if stamp_mtime < source_mtime:
        logger.debug("%s is stale: older than %s", target.path, target.source.rel_path)
        return True
    return False
