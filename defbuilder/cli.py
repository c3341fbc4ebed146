"""
cli.py

Responsibility: CLI entrypoint for defbuilder.

High-level flow for build goals (`all`, `root`, explicit target paths):
1) Resolve configuration -> `BuildConfig`
2) Discover definition files -> relative paths
3) Plan targets (naming, collision checks) -> `Plan`
4) Execute stale targets through the external tools -> `BuildReport`

This module should orchestrate behavior but keep concerns isolated:
- Configuration: `config.py`
- Discovery: `discovery.py`
- Planning / staleness: `planner.py`
- External tools: `commands.py`
- Execution: `executor.py`
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from defbuilder.commands import CommandRunner, SubprocessRunner
from defbuilder.config import BuildConfig, ConfigError, load_config
from defbuilder.discovery import DiscoveryError, discover_definitions
from defbuilder.executor import BuildReport, Executor, clean_build_dir
from defbuilder.planner import Plan, PlanError, Target, TimestampRegistry, plan_targets

logger = logging.getLogger(__name__)

EXIT_ERROR = 1
EXIT_TARGET_FAILED = 2
EXIT_INTERRUPTED = 130

GOALS = ("all", "root", "list", "clean", "help")

_EPILOG = """\
goals:
  all (default)  build the base image and every environment
  root           build the base image and top-level environments only
  list           print the targets `all` and `root` would produce
  clean          remove the build directory
  help           show this message
  <path>         build one target, e.g. build/ubuntu20--code-server

environment variables you can override:
  APPTAINER, APPT_BUILD, APPT_FLAGS, CONDATAINER, COND_CREATE, COND_FLAGS, DEFBUILDER_BUILD_DIR
"""


class CLIError(RuntimeError):
    pass


def _configure_logging(verbosity: int) -> None:
    level = logging.INFO
    if verbosity > 0:
        level = logging.DEBUG
    elif verbosity < 0:
        level = logging.WARNING

    logging.basicConfig(format="%(message)s", stream=sys.stderr)
    logging.getLogger("defbuilder").setLevel(level)


def _resolve_config(args: argparse.Namespace, root: Path) -> BuildConfig:
    cfg = load_config(root, config_path=args.config)
    return cfg.with_overrides(build_dir=args.build_dir, jobs=args.jobs)


def _plan(root: Path, cfg: BuildConfig) -> Plan:
    sources = discover_definitions(root, exclude_dir=cfg.build_dir, suffix=cfg.suffix)
    logger.debug("Discovered %d definition files", len(sources))
    return plan_targets(sources, cfg)


def list_cmd(plan: Plan) -> int:
    print("Will produce (all):")
    for t in plan.all_targets:
        print(t.path)
    print()
    print("Will produce (root):")
    for t in plan.root_targets:
        print(t.path)
    return 0


def clean_cmd(root: Path, cfg: BuildConfig) -> int:
    clean_build_dir(root, cfg.build_dir)
    print(f"cleaned {cfg.build_dir}/")
    return 0


def _report(goal: str, report: BuildReport, *, dry_run: bool) -> int:
    for failure in report.failed:
        print(f"defbuilder: *** [{failure.target.path}] {failure.error}", file=sys.stderr)
    if report.interrupted:
        print("defbuilder: *** Interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    if not report.ok:
        if report.skipped:
            names = " ".join(t.path for t in report.skipped)
            print(f"defbuilder: not attempted after failure: {names}", file=sys.stderr)
        return EXIT_TARGET_FAILED
    if not dry_run:
        print(f"Built {goal} targets: {' '.join(r.target.path for r in report.results)}")
    return 0


def build_cmd(
    goal: str,
    targets: list[Target],
    *,
    args: argparse.Namespace,
    root: Path,
    cfg: BuildConfig,
    runner: CommandRunner,
) -> int:
    executor = Executor(
        cfg,
        root_dir=root,
        runner=runner,
        registry=TimestampRegistry(root),
        jobs=cfg.jobs,
        keep_going=bool(args.keep_going),
        always_make=bool(args.always_make),
        dry_run=bool(args.dry_run),
    )
    return _report(goal, executor.build(targets), dry_run=bool(args.dry_run))


def run(args: argparse.Namespace, *, runner: CommandRunner | None = None) -> int:
    root = Path(args.root_dir).resolve()
    cfg = _resolve_config(args, root)
    runner = runner or SubprocessRunner(root)

    goals = list(args.goals) or ["all"]
    rc = 0
    for goal in goals:
        if goal == "clean":
            rc = clean_cmd(root, cfg)
        elif goal == "list":
            rc = list_cmd(_plan(root, cfg))
        elif goal == "all":
            plan = _plan(root, cfg)
            rc = build_cmd("all", list(plan.all_targets), args=args, root=root, cfg=cfg, runner=runner)
        elif goal == "root":
            plan = _plan(root, cfg)
            rc = build_cmd("root", list(plan.root_targets), args=args, root=root, cfg=cfg, runner=runner)
        else:
            if not goal.startswith(f"{cfg.build_dir}/"):
                raise CLIError(f"unknown goal {goal!r} (expected one of {', '.join(GOALS)} or a path under {cfg.build_dir}/)")
            plan = _plan(root, cfg)
            target = plan.lookup(goal, root)
            rc = build_cmd(target.path, [target], args=args, root=root, cfg=cfg, runner=runner)
        if rc != 0:
            return rc
    return rc


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="defbuilder",
        description="Build apptainer images and condatainer environments from *.def files",
        epilog=_EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("goals", nargs="*", metavar="GOAL", help="all | root | list | clean | help | <target path>")
    p.add_argument("-C", "--root-dir", default=".", help="Source tree to scan (default: current directory)")
    p.add_argument("--build-dir", default=None, help="Output directory relative to the root (default: build)")
    p.add_argument("--config", default=None, help="YAML config file (default: <root>/defbuilder.yaml if present)")
    p.add_argument("-j", "--jobs", type=int, default=None, help="Number of targets to build in parallel")
    p.add_argument("-k", "--keep-going", action="store_true", help="Keep building independent targets after a failure")
    p.add_argument("-n", "--dry-run", action="store_true", help="Print the commands that would run, run nothing")
    p.add_argument("-B", "--always-make", action="store_true", help="Rebuild targets even if up to date")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (repeatable)")
    p.add_argument("-q", "--quiet", action="count", default=0, help="Less logging")
    return p


def main(argv: list[str] | None = None, *, runner: CommandRunner | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose - args.quiet)

    if "help" in args.goals:
        parser.print_help()
        return 0
    if args.jobs is not None and args.jobs < 1:
        parser.error("--jobs must be >= 1")

    try:
        return run(args, runner=runner)
    except (CLIError, ConfigError, DiscoveryError, PlanError) as e:
        logger.error("defbuilder: %s", e)
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
