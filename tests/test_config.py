from __future__ import annotations

from pathlib import Path

import pytest

from defbuilder.config import BuildConfig, ConfigError, ToolConfig, load_config


def test_defaults_match_makefile_variables(tmp_path: Path) -> None:
    cfg = load_config(tmp_path, environ={})

    assert cfg.build_dir == "build"
    assert cfg.image == ToolConfig("apptainer", ("build",), ())
    assert cfg.environment == ToolConfig("condatainer", ("create", "-p"), ())
    assert cfg.marker_suffix == ".marker"
    assert cfg.jobs == 1


def test_environment_overrides(tmp_path: Path) -> None:
    cfg = load_config(
        tmp_path,
        environ={
            "APPTAINER": "/opt/bin/apptainer",
            "APPT_FLAGS": "--fakeroot --force",
            "CONDATINER": "mytainer",
            "COND_CREATE": "create --prefix",
            "COND_FLAGS": "--channel 'conda forge'",
            "DEFBUILDER_BUILD_DIR": "out/",
        },
    )

    assert cfg.image.command == "/opt/bin/apptainer"
    assert cfg.image.display_name == "apptainer"
    assert cfg.image.subcommand == ("build",)
    assert cfg.image.flags == ("--fakeroot", "--force")
    assert cfg.environment.command == "mytainer"
    assert cfg.environment.subcommand == ("create", "--prefix")
    assert cfg.environment.flags == ("--channel", "conda forge")
    assert cfg.build_dir == "out"


def test_condatainer_spelling_wins_over_legacy(tmp_path: Path) -> None:
    cfg = load_config(tmp_path, environ={"CONDATAINER": "new", "CONDATINER": "old"})
    assert cfg.environment.command == "new"


def test_yaml_file_in_root_is_loaded(tmp_path: Path) -> None:
    (tmp_path / "defbuilder.yaml").write_text(
        "\n".join(
            [
                "build_dir: artifacts",
                "jobs: 4",
                "image:",
                "  flags: [--fakeroot]",
                "environment:",
                "  command: condatainer2",
                "  subcommand: create -p",
                "",
            ]
        ),
        encoding="utf-8",
    )

    cfg = load_config(tmp_path, environ={})
    assert cfg.build_dir == "artifacts"
    assert cfg.jobs == 4
    assert cfg.image.flags == ("--fakeroot",)
    assert cfg.image.command == "apptainer"
    assert cfg.environment.command == "condatainer2"


def test_environment_beats_yaml(tmp_path: Path) -> None:
    (tmp_path / "defbuilder.yaml").write_text("image:\n  command: from-yaml\n", encoding="utf-8")
    cfg = load_config(tmp_path, environ={"APPTAINER": "from-env"})
    assert cfg.image.command == "from-env"


def test_explicit_config_must_exist(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path, config_path=tmp_path / "missing.yaml", environ={})


@pytest.mark.parametrize(
    "text",
    [
        "- just\n- a list\n",
        "unknown_key: 1\n",
        "image:\n  colour: red\n",
        "image: apptainer\n",
        "jobs: many\n",
        "jobs: 0\n",
        "build_dir: /abs/path\n",
        "build_dir: ../outside\n",
        "suffix: def\n",
        "image: [\n",
    ],
)
def test_invalid_yaml_config(tmp_path: Path, text: str) -> None:
    path = tmp_path / "custom.yaml"
    path.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(tmp_path, config_path=path, environ={})


def test_with_overrides_ignores_none() -> None:
    cfg = BuildConfig().with_overrides(build_dir=None, jobs=3)
    assert cfg.build_dir == "build"
    assert cfg.jobs == 3


def test_empty_command_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path, environ={"APPTAINER": ""})


def test_generic_build_dir_variable_is_ignored(tmp_path: Path) -> None:
    cfg = load_config(tmp_path, environ={"BUILD_DIR": "/tmp/conda-bld"})
    assert cfg.build_dir == "build"
