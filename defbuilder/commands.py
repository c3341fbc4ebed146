"""
commands.py

Responsibility: Describe and run the external build tools.

This module must be the only place that:
- Assembles argv lists for the image builder and the environment creator
- Spawns subprocesses
- Interprets exit statuses

Everything else works with `ExternalCommand` values and a `CommandRunner`,
so tests can substitute a fake runner and never touch real binaries.
"""

from __future__ import annotations

import logging
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from defbuilder.config import BuildConfig, ToolConfig
from defbuilder.planner import TargetKind

logger = logging.getLogger(__name__)


class ExternalCommandError(RuntimeError):
    def __init__(self, target: str, returncode: int, argv: tuple[str, ...]) -> None:
        super().__init__(f"{target}: command exited with status {returncode}: {' '.join(argv)}")
        self.target = target
        self.returncode = returncode
        self.argv = argv


@dataclass(frozen=True)
class ExternalCommand:
    """One tool invocation and the output path it is expected to produce."""

    tool: str
    argv: tuple[str, ...]
    output: str

    def __str__(self) -> str:
        return " ".join(self.argv)


def image_build_command(tool: ToolConfig, *, output: str, definition: str) -> ExternalCommand:
    """`<cmd> <subcommand> <output.sif> <flags> <definition>`"""
    argv = (tool.command, *tool.subcommand, output, *tool.flags, definition)
    return ExternalCommand(tool=tool.display_name, argv=argv, output=output)


def environment_create_command(tool: ToolConfig, *, output: str, definition: str) -> ExternalCommand:
    """`<cmd> <subcommand> <output> -f <definition> <flags>`"""
    argv = (tool.command, *tool.subcommand, output, "-f", definition, *tool.flags)
    return ExternalCommand(tool=tool.display_name, argv=argv, output=output)


def command_for(kind: TargetKind, cfg: BuildConfig, *, output: str, definition: str) -> ExternalCommand:
    if kind is TargetKind.IMAGE:
        return image_build_command(cfg.image, output=output, definition=definition)
    return environment_create_command(cfg.environment, output=output, definition=definition)


class CommandRunner(Protocol):
    def run(self, command: ExternalCommand, *, target: str) -> None:
        """Run `command`; raise ExternalCommandError on a nonzero exit."""
        ...

    def terminate_all(self) -> None:
        """Stop every in-flight command (used on interrupt)."""
        ...


class SubprocessRunner:
    """
    Run commands as child processes of this one.

    Output is not captured: tool progress goes straight to the terminal, as it
    would under `make`. No timeout is applied.
    """

    def __init__(self, cwd: str | Path) -> None:
        self._cwd = str(cwd)
        self._live: set[subprocess.Popen[bytes]] = set()
        self._lock = threading.Lock()
        # Set by terminate_all; no new process starts afterwards.
        self._stopping = False

    def run(self, command: ExternalCommand, *, target: str) -> None:
        logger.debug("exec: %s", command)
        with self._lock:
            if self._stopping:
                logger.warning("%s: not started, build is stopping", target)
                raise ExternalCommandError(target, -signal.SIGTERM, command.argv)
            try:
                proc = subprocess.Popen(list(command.argv), cwd=self._cwd)
            except FileNotFoundError as e:
                logger.error("%s: executable not found: %s", target, command.argv[0])
                raise ExternalCommandError(target, 127, command.argv) from e
            self._live.add(proc)

        try:
            returncode = proc.wait()
        finally:
            with self._lock:
                self._live.discard(proc)

        if returncode != 0:
            raise ExternalCommandError(target, returncode, command.argv)

    def terminate_all(self) -> None:
        with self._lock:
            self._stopping = True
            live = list(self._live)
        for proc in live:
            if proc.poll() is None:
                logger.warning("Terminating %s (pid %d)", proc.args[0], proc.pid)
                proc.terminate()
        for proc in live:
            try:
                proc.wait(timeout=10)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()

