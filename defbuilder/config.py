"""
config.py

Responsibility: Load build configuration into a deterministic, typed model.

Sources, lowest precedence first:
- Built-in defaults (apptainer / condatainer, `build/` output directory)
- Optional YAML config file (`defbuilder.yaml` in the source root, or `--config`)
- Environment variables (APPTAINER, COND_FLAGS, ... as accepted by the old Makefile)

CLI flags are applied last by `cli.py` via `BuildConfig.with_overrides`.
"""

from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_NAME = "defbuilder.yaml"


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class ToolConfig:
    """How to invoke one external tool: executable, subcommand words, extra flags."""

    command: str
    subcommand: tuple[str, ...] = ()
    flags: tuple[str, ...] = ()

    @property
    def display_name(self) -> str:
        return Path(self.command).name or self.command


@dataclass(frozen=True)
class BuildConfig:
    """Resolved configuration for one invocation."""

    build_dir: str = "build"
    root_base: str = "base_image"
    suffix: str = ".def"
    image_suffix: str = ".sif"
    marker_suffix: str = ".marker"
    jobs: int = 1
    image: ToolConfig = field(default_factory=lambda: ToolConfig("apptainer", ("build",)))
    environment: ToolConfig = field(default_factory=lambda: ToolConfig("condatainer", ("create", "-p")))

    def with_overrides(self, **changes: Any) -> BuildConfig:
        """Return a copy with the non-None values in `changes` applied and validated."""
        clean = {k: v for k, v in changes.items() if v is not None}
        if "build_dir" in clean:
            raw = str(clean["build_dir"]).strip()
            if Path(raw).is_absolute():
                raise ConfigError(f"build_dir must be relative to the source root, got {raw!r}")
            clean["build_dir"] = raw.strip("/")
        cfg = replace(self, **clean)
        _validate(cfg)
        return cfg


_TOOL_KEYS = {"command", "subcommand", "flags"}
_TOP_KEYS = {"build_dir", "root_base", "suffix", "image_suffix", "marker_suffix", "jobs", "image", "environment"}

# (tool section, attribute) -> environment variable names, first match wins
_ENV_TOOL_VARS: dict[tuple[str, str], tuple[str, ...]] = {
    ("image", "command"): ("APPTAINER",),
    ("image", "subcommand"): ("APPT_BUILD",),
    ("image", "flags"): ("APPT_FLAGS",),
    ("environment", "command"): ("CONDATAINER", "CONDATINER"),
    ("environment", "subcommand"): ("COND_CREATE",),
    ("environment", "flags"): ("COND_FLAGS",),
}


def _split_words(value: Any, *, where: str) -> tuple[str, ...]:
    """Accept either a shell-style string or a list of strings."""
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            return tuple(shlex.split(value))
        except ValueError as e:
            raise ConfigError(f"Cannot parse {where}: {e}") from e
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    raise ConfigError(f"{where} must be a string or a list of strings.")


def _tool_from_mapping(base: ToolConfig, raw: Any, *, section: str) -> ToolConfig:
    if raw is None:
        return base
    if not isinstance(raw, Mapping):
        raise ConfigError(f"`{section}` must be an object/mapping when provided.")
    unknown = set(raw) - _TOOL_KEYS
    if unknown:
        raise ConfigError(f"Unknown keys in `{section}`: {', '.join(sorted(map(str, unknown)))}")

    command = base.command
    if "command" in raw:
        command = str(raw["command"] or "").strip()
    subcommand = _split_words(raw["subcommand"], where=f"{section}.subcommand") if "subcommand" in raw else base.subcommand
    flags = _split_words(raw["flags"], where=f"{section}.flags") if "flags" in raw else base.flags
    return ToolConfig(command=command, subcommand=subcommand, flags=flags)


def _validate(cfg: BuildConfig) -> None:
    parts = cfg.build_dir.split("/")
    if not cfg.build_dir or any(p in ("", ".", "..") for p in parts):
        raise ConfigError(f"build_dir must be a relative directory name, got {cfg.build_dir!r}")
    if not cfg.root_base or "/" in cfg.root_base:
        raise ConfigError(f"root_base must be a plain file stem, got {cfg.root_base!r}")
    for name in ("suffix", "image_suffix", "marker_suffix"):
        value = getattr(cfg, name)
        if not value.startswith(".") or len(value) < 2:
            raise ConfigError(f"{name} must look like '.ext', got {value!r}")
    if cfg.jobs < 1:
        raise ConfigError(f"jobs must be >= 1, got {cfg.jobs}")
    for section in ("image", "environment"):
        if not getattr(cfg, section).command:
            raise ConfigError(f"{section}.command must not be empty")


def _load_yaml_mapping(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file must contain a YAML mapping: {path}")
    return dict(data)


def apply_mapping(base: BuildConfig, data: Mapping[str, Any]) -> BuildConfig:
    """
    Overlay a config mapping (as found in YAML) onto `base`.

    Expected keys:
    - build_dir, root_base, suffix, image_suffix, marker_suffix: str
    - jobs: int
    - image / environment: {command: str, subcommand: str|list, flags: str|list}
    """
    unknown = set(data) - _TOP_KEYS
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(map(str, unknown)))}")

    changes: dict[str, Any] = {}
    for key in ("build_dir", "root_base", "suffix", "image_suffix", "marker_suffix"):
        if key in data and data[key] is not None:
            changes[key] = str(data[key]).strip()
    if "jobs" in data and data["jobs"] is not None:
        try:
            changes["jobs"] = int(data["jobs"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"jobs must be an integer, got {data['jobs']!r}") from e

    changes["image"] = _tool_from_mapping(base.image, data.get("image"), section="image")
    changes["environment"] = _tool_from_mapping(base.environment, data.get("environment"), section="environment")
    return base.with_overrides(**changes)


def apply_environment(base: BuildConfig, environ: Mapping[str, str]) -> BuildConfig:
    """Overlay Makefile-style variables (APPTAINER, COND_FLAGS, ...) onto `base`."""
    sections: dict[str, dict[str, Any]] = {"image": {}, "environment": {}}
    for (section, attr), names in _ENV_TOOL_VARS.items():
        for name in names:
            if name in environ:
                sections[section][attr] = environ[name]
                break

    changes: dict[str, Any] = {
        section: _tool_from_mapping(getattr(base, section), raw or None, section=section)
        for section, raw in sections.items()
    }
    if environ.get("DEFBUILDER_BUILD_DIR"):
        changes["build_dir"] = environ["DEFBUILDER_BUILD_DIR"].strip()
    return base.with_overrides(**changes)


def load_config(
    root_dir: str | Path,
    *,
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> BuildConfig:
    """
    Resolve the configuration for a source tree.

    An explicit `config_path` must exist; otherwise `defbuilder.yaml` in
    `root_dir` is used when present.
    """
    cfg = BuildConfig()

    if config_path is not None:
        path = Path(config_path)
        if not path.is_file():
            raise ConfigError(f"Config file does not exist: {path}")
    else:
        path = Path(root_dir) / DEFAULT_CONFIG_NAME
    if path.is_file():
        cfg = apply_mapping(cfg, _load_yaml_mapping(path))

    return apply_environment(cfg, os.environ if environ is None else environ)
