from __future__ import annotations

import os
from pathlib import Path

import pytest

from conftest import write_defs
from defbuilder.discovery import DiscoveryError, discover_definitions


def test_finds_definitions_recursively_in_sorted_order(tmp_path: Path) -> None:
    write_defs(tmp_path, ["z.def", "base_image.def", "ubuntu20/code-server.def", "a/b/c.def"])
    (tmp_path / "README.md").write_text("not a definition", encoding="utf-8")

    assert discover_definitions(tmp_path) == (
        "a/b/c.def",
        "base_image.def",
        "ubuntu20/code-server.def",
        "z.def",
    )


def test_skips_build_directory(tmp_path: Path) -> None:
    write_defs(tmp_path, ["code-server.def", "build/stale.def", "build/nested/x.def", "sub/build/kept.def"])

    assert discover_definitions(tmp_path) == ("code-server.def", "sub/build/kept.def")


def test_skips_custom_nested_build_directory(tmp_path: Path) -> None:
    write_defs(tmp_path, ["a.def", "out/sif/b.def", "out/c.def"])

    assert discover_definitions(tmp_path, exclude_dir="out/sif") == ("a.def", "out/c.def")


def test_ignores_symlinks_and_bare_suffix(tmp_path: Path) -> None:
    write_defs(tmp_path, ["real.def"])
    (tmp_path / ".def").write_text("", encoding="utf-8")
    os.symlink(tmp_path / "real.def", tmp_path / "alias.def")

    assert discover_definitions(tmp_path) == ("real.def",)


def test_empty_tree(tmp_path: Path) -> None:
    assert discover_definitions(tmp_path) == ()


def test_missing_root(tmp_path: Path) -> None:
    with pytest.raises(DiscoveryError):
        discover_definitions(tmp_path / "nope")
