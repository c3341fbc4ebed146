from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from defbuilder.commands import ExternalCommand, ExternalCommandError

SCENARIO = ("base_image.def", "code-server.def", "ubuntu20/code-server.def")


class FakeRunner:
    """Records invocations and creates the outputs the real tools would."""

    def __init__(
        self,
        root: Path,
        *,
        fail: dict[str, int] | None = None,
        interrupt: set[str] | None = None,
    ) -> None:
        self.root = root
        self.fail = dict(fail or {})
        # Targets whose tool is "killed by Ctrl-C" after leaving partial output.
        self.interrupt = set(interrupt or ())
        self.calls: list[ExternalCommand] = []
        self.terminated = False

    def run(self, command: ExternalCommand, *, target: str) -> None:
        self.calls.append(command)
        if target in self.fail:
            raise ExternalCommandError(target, self.fail[target], command.argv)
        out = self.root / command.output
        if target in self.interrupt:
            out.mkdir(parents=True, exist_ok=True)
            raise KeyboardInterrupt
        if command.output.endswith(".sif"):
            out.write_bytes(b"SIF")
        else:
            out.mkdir(parents=True, exist_ok=True)

    def terminate_all(self) -> None:
        self.terminated = True

    @property
    def outputs(self) -> list[str]:
        return [c.output for c in self.calls]


def write_defs(root: Path, rel_paths, *, age: float = 100.0) -> None:
    """Create definition files with an mtime comfortably in the past."""
    past = time.time() - age
    for rel in rel_paths:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"Bootstrap: docker\nFrom: {rel}\n", encoding="utf-8")
        os.utime(path, (past, past))


def touch_future(path: Path, *, ahead: float = 100.0) -> None:
    future = time.time() + ahead
    os.utime(path, (future, future))


@pytest.fixture
def scenario_root(tmp_path: Path) -> Path:
    write_defs(tmp_path, SCENARIO)
    return tmp_path


@pytest.fixture
def fake_runner(scenario_root: Path) -> FakeRunner:
    return FakeRunner(scenario_root)
