"""
executor.py

Responsibility: Bring planned targets up to date.

Per target: unbuilt -> building -> built | failed. Up-to-date targets are
skipped without invoking anything. Targets are independent of each other, so
up to `jobs` of them run at once; a failure stops new work unless
`keep_going` is set, and never affects targets already running.

Partial outputs of failed or interrupted commands are left in place: the
completion stamp is only written after success, so the next run retries.
"""

from __future__ import annotations

import enum
import logging
import shutil
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from defbuilder.commands import CommandRunner, ExternalCommandError, command_for
from defbuilder.config import BuildConfig
from defbuilder.planner import PlanError, Target, TargetKind, TimestampRegistry, is_stale

logger = logging.getLogger(__name__)


class TargetState(str, enum.Enum):
    UNBUILT = "unbuilt"
    BUILDING = "building"
    BUILT = "built"
    FAILED = "failed"
    UP_TO_DATE = "up-to-date"
    # Not started because an earlier target failed (without --keep-going).
    SKIPPED = "skipped"
    # Stale, but only printed (--dry-run).
    WOULD_BUILD = "would-build"


@dataclass
class TargetResult:
    target: Target
    state: TargetState = TargetState.UNBUILT
    error: Exception | None = None


@dataclass
class BuildReport:
    results: list[TargetResult] = field(default_factory=list)
    interrupted: bool = False

    def _with(self, state: TargetState) -> list[Target]:
        return [r.target for r in self.results if r.state is state]

    @property
    def built(self) -> list[Target]:
        return self._with(TargetState.BUILT)

    @property
    def up_to_date(self) -> list[Target]:
        return self._with(TargetState.UP_TO_DATE)

    @property
    def failed(self) -> list[TargetResult]:
        return [r for r in self.results if r.state is TargetState.FAILED]

    @property
    def skipped(self) -> list[Target]:
        return self._with(TargetState.SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.interrupted and not self.failed and not self.skipped


class Executor:
    def __init__(
        self,
        cfg: BuildConfig,
        *,
        root_dir: str | Path,
        runner: CommandRunner,
        registry: TimestampRegistry | None = None,
        jobs: int = 1,
        keep_going: bool = False,
        always_make: bool = False,
        dry_run: bool = False,
        echo: Callable[[str], None] = print,
    ) -> None:
        self._cfg = cfg
        self._root = Path(root_dir)
        self._runner = runner
        self._registry = registry or TimestampRegistry(root_dir)
        self._jobs = max(1, jobs)
        self._keep_going = keep_going
        self._always_make = always_make
        self._dry_run = dry_run
        self._echo = echo

    def _needs_build(self, target: Target) -> bool:
        stale = is_stale(target, self._registry)
        return stale or self._always_make

    def _build_one(self, target: Target) -> TargetResult:
        result = TargetResult(target)
        try:
            if not self._needs_build(target):
                logger.debug("%s is up to date", target.path)
                result.state = TargetState.UP_TO_DATE
                return result

            command = command_for(
                target.kind,
                self._cfg,
                output=target.path,
                definition=target.source.rel_path,
            )
            if self._dry_run:
                self._echo(str(command))
                if target.kind is TargetKind.ENVIRONMENT:
                    self._echo(f"touch {target.stamp_path}")
                result.state = TargetState.WOULD_BUILD
                return result

            result.state = TargetState.BUILDING
            verb = "Building" if target.kind is TargetKind.IMAGE else "Creating"
            logger.info("[%s] %s %s from %s", command.tool, verb, target.path, target.source.rel_path)

            (self._root / target.path).parent.mkdir(parents=True, exist_ok=True)
            self._runner.run(command, target=target.path)

            if target.kind is TargetKind.ENVIRONMENT:
                (self._root / target.stamp_path).write_bytes(b"")
            elif not (self._root / target.path).exists():
                logger.warning("%s exited 0 but did not create %s", command.tool, target.path)

            self._registry.refresh(target.stamp_path)
            result.state = TargetState.BUILT
        except (PlanError, ExternalCommandError, OSError) as e:
            logger.error("%s failed: %s", target.path, e)
            result.state = TargetState.FAILED
            result.error = e
        return result

    def build(self, targets: Iterable[Target]) -> BuildReport:
        ordered = list(targets)
        results: dict[str, TargetResult] = {}
        queue = iter(ordered)
        in_flight: dict[Future[TargetResult], Target] = {}
        stop = False
        report = BuildReport()

        with ThreadPoolExecutor(max_workers=self._jobs, thread_name_prefix="defbuilder") as pool:
            try:
                while True:
                    while not stop and len(in_flight) < self._jobs:
                        target = next(queue, None)
                        if target is None:
                            break
                        in_flight[pool.submit(self._build_one, target)] = target
                    if not in_flight:
                        break

                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    for fut in done:
                        target = in_flight.pop(fut)
                        result = fut.result()
                        results[target.path] = result
                        if result.state is TargetState.FAILED and not self._keep_going:
                            stop = True
            except KeyboardInterrupt:
                logger.warning("Interrupted; stopping %d running command(s)", len(in_flight))
                report.interrupted = True
                self._runner.terminate_all()
                for fut in in_flight:
                    fut.cancel()

        for fut, target in in_flight.items():
            if fut.done() and not fut.cancelled() and fut.exception() is None:
                results[target.path] = fut.result()

        for target in ordered:
            report.results.append(results.get(target.path) or TargetResult(target, TargetState.SKIPPED))
        return report


def clean_build_dir(root_dir: str | Path, build_dir: str) -> bool:
    """Remove the output directory tree. Returns False if it was already absent."""
    path = Path(root_dir) / build_dir
    if not path.exists():
        return False
    shutil.rmtree(path)
    return True
