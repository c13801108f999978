"""Tests for configuration loading and priority logic."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from watchrun.config import LOG_LEVELS, SILENT, Config, _get_config_file_paths, load_config
from watchrun.globs import DEFAULT_IGNORE, Globs, split_globs
from watchrun.pipeline import Stage, StageError


def write_ini(directory: Path, body: str) -> Path:
    path = directory / "config.ini"
    path.write_text("[watchrun]\n" + body, encoding="utf-8")
    return path


def test_config_defaults(clean_env: Path) -> None:
    """Test default configuration values."""
    config = load_config({})

    assert config == Config()
    assert config.monitor == ["."]
    assert config.ignore == DEFAULT_IGNORE
    assert config.ignore is not DEFAULT_IGNORE
    assert config.care == []
    assert config.interval == 0.3
    assert config.recurse is True
    assert config.log_level == "INFO"
    assert config.log_file is None
    assert config.directory is None
    assert config.stages == []


def test_config_file_values(clean_env: Path) -> None:
    write_ini(
        clean_env,
        "monitor = src;docs\n"
        "ignore = *.tmp:build\n"
        "care = *.go\n"
        "interval = 1.5\n"
        "recurse = no\n"
        "log-level = warning\n",
    )
    config = load_config({})

    assert config.monitor == ["src", "docs"]
    assert config.ignore == DEFAULT_IGNORE + ["*.tmp", "build"]
    assert config.care == ["*.go"]
    assert config.interval == 1.5
    assert config.recurse is False
    assert config.log_level == "WARNING"


def test_user_config_file(clean_env: Path) -> None:
    user_dir = clean_env / "empty_config" / "watchrun"
    user_dir.mkdir()
    write_ini(user_dir, "interval = 2\n")

    assert load_config({}).interval == 2.0


def test_local_config_file_wins_over_user_config(clean_env: Path) -> None:
    user_dir = clean_env / "empty_config" / "watchrun"
    user_dir.mkdir()
    write_ini(user_dir, "interval = 2\n")
    write_ini(clean_env, "interval = 3\n")

    assert load_config({}).interval == 3.0


def test_config_paths_use_xdg(clean_env: Path) -> None:
    paths = _get_config_file_paths()
    assert paths[0] == "config.ini"
    assert paths[1] == os.path.join(str(clean_env / "empty_config"), "watchrun", "config.ini")


def test_config_file_without_section_is_ignored(clean_env: Path) -> None:
    (clean_env / "config.ini").write_text("[other]\ninterval = 9\n", encoding="utf-8")
    assert load_config({}).interval == 0.3


def test_malformed_config_file_is_logged(clean_env: Path, caplog: pytest.LogCaptureFixture) -> None:
    (clean_env / "config.ini").write_text("interval = 9\n", encoding="utf-8")
    with caplog.at_level(logging.ERROR, logger="watchrun.config"):
        config = load_config({})
    assert config.interval == 0.3
    assert "Failed to parse config file" in caplog.text


def test_unknown_config_key_warns(clean_env: Path, caplog: pytest.LogCaptureFixture) -> None:
    write_ini(clean_env, "colour = blue\n")
    with caplog.at_level(logging.WARNING, logger="watchrun.config"):
        load_config({})
    assert "Unknown config key ignored: colour" in caplog.text


def test_pyproject_tool_table(clean_env: Path) -> None:
    (clean_env / "pyproject.toml").write_text(
        "[project]\nname = 'demo'\n\n"
        "[tool.watchrun]\n"
        "monitor = ['src', 'tests']\n"
        "ignore = ['*.tmp']\n"
        "interval = 0.5\n"
        "recurse = false\n"
        "no-default-ignore = true\n",
        encoding="utf-8",
    )
    config = load_config({})

    assert config.monitor == ["src", "tests"]
    assert config.ignore == ["*.tmp"]
    assert config.interval == 0.5
    assert config.recurse is False


def test_config_ini_takes_precedence_over_pyproject(clean_env: Path) -> None:
    (clean_env / "pyproject.toml").write_text("[tool.watchrun]\ninterval = 0.5\n", encoding="utf-8")
    write_ini(clean_env, "interval = 0.7\n")
    assert load_config({}).interval == 0.7


def test_invalid_pyproject_is_logged(clean_env: Path, caplog: pytest.LogCaptureFixture) -> None:
    (clean_env / "pyproject.toml").write_text("[tool.watchrun\n", encoding="utf-8")
    with caplog.at_level(logging.ERROR, logger="watchrun.config"):
        assert load_config({}).interval == 0.3
    assert "Failed to parse" in caplog.text


def test_priority_cli_over_env_over_file(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Test priority: CLI > Env > Config File > Defaults."""
    write_ini(clean_env, "interval = 1.0\nmonitor = from_file\ncare = *.md\n")
    monkeypatch.setenv("WATCHRUN_INTERVAL", "2.0")
    monkeypatch.setenv("WATCHRUN_MONITOR", "from_env")

    config = load_config({"interval": 3.0})
    assert config.interval == 3.0
    assert config.monitor == ["from_env"]
    assert config.care == ["*.md"]

    config = load_config({"interval": None, "monitor": None})
    assert config.interval == 2.0


def test_empty_env_var_is_ignored(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WATCHRUN_INTERVAL", "")
    assert load_config({}).interval == 0.3


def test_cli_ignore_and_care_lists(clean_env: Path) -> None:
    config = load_config({"ignore": ["*.tmp;dist", "node_modules"], "care": ["*.go:*.mod"]})

    assert config.ignore == DEFAULT_IGNORE + ["*.tmp", "dist", "node_modules"]
    assert config.care == ["*.go", "*.mod"]


@pytest.mark.parametrize("value", [True, "true", "1", "yes"])
def test_no_default_ignore(clean_env: Path, value: object) -> None:
    config = load_config({"no_default_ignore": value, "ignore": ["*.tmp"]})
    assert config.ignore == ["*.tmp"]


def test_monitor_is_split_on_semicolons_only(clean_env: Path) -> None:
    config = load_config({"monitor": "src;C:/work/docs;;"})
    assert config.monitor == ["src", "C:/work/docs"]


def test_empty_monitor_falls_back_to_current_directory(clean_env: Path) -> None:
    assert load_config({"monitor": ";"}).monitor == ["."]


@pytest.mark.parametrize("interval", ["0", "-1", "abc"])
def test_invalid_interval(clean_env: Path, interval: str) -> None:
    with pytest.raises(ValueError, match="interval"):
        load_config({"interval": interval})


def test_invalid_boolean(clean_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WATCHRUN_RECURSE", "maybe")
    with pytest.raises(ValueError, match="Invalid boolean for recurse"):
        load_config({})


def test_invalid_log_level(clean_env: Path) -> None:
    with pytest.raises(ValueError, match="Invalid log level"):
        load_config({"log_level": "LOUD"})


def test_log_levels_include_silent(clean_env: Path) -> None:
    assert load_config({"log_level": "silent"}).log_level == "SILENT"
    assert LOG_LEVELS["SILENT"] == SILENT
    assert SILENT > logging.CRITICAL


def test_verbose_forces_debug(clean_env: Path) -> None:
    assert load_config({"verbose": True, "log_level": "ERROR"}).log_level == "DEBUG"


def test_directory_is_resolved(clean_env: Path) -> None:
    (clean_env / "work").mkdir()
    config = load_config({"directory": "work"})
    assert config.directory == str((clean_env / "work").resolve())


def test_invalid_directory(clean_env: Path) -> None:
    with pytest.raises(ValueError, match="not found"):
        load_config({"directory": "missing"})

    (clean_env / "file.txt").write_text("x", encoding="utf-8")
    with pytest.raises(ValueError, match="not a directory"):
        load_config({"directory": "file.txt"})


def test_log_file_is_made_absolute(clean_env: Path) -> None:
    config = load_config({"log_file": "logs/watchrun.log"})
    assert config.log_file == str(Path.cwd() / "logs" / "watchrun.log")


def test_log_file_must_not_be_a_directory(clean_env: Path) -> None:
    (clean_env / "logs").mkdir()
    with pytest.raises(ValueError, match="not a regular file"):
        load_config({"log_file": "logs"})


def test_command_is_parsed_into_stages(clean_env: Path) -> None:
    config = load_config({"command": ["go", "build", ";;", "./app"]})
    assert config.stages == [Stage("go", ("build",)), Stage("./app")]


def test_malformed_command_raises_stage_error(clean_env: Path) -> None:
    with pytest.raises(StageError):
        load_config({"command": ["go", "build", ";;"]})


def test_config_file_read_error_is_logged(clean_env: Path, caplog: pytest.LogCaptureFixture) -> None:
    write_ini(clean_env, "interval = 1\n")
    with patch("watchrun.config.ConfigParser.read", side_effect=OSError("locked")):
        with caplog.at_level(logging.ERROR, logger="watchrun.config"):
            assert load_config({}).interval == 0.3
    assert "locked" in caplog.text


# --- Globs -----------------------------------------------------------------


def test_split_globs() -> None:
    assert split_globs(" *.tmp ; build:dist;;") == ["*.tmp", "build", "dist"]
    assert split_globs("") == []


def test_globs_extend_and_switch_off_default() -> None:
    globs = Globs(default=["*.o"])
    globs.add("*.tmp;*.bak")
    globs.extend(["dist"])
    assert globs.all() == ["*.o", "*.tmp", "*.bak", "dist"]
    assert str(globs) == "*.o;*.tmp;*.bak;dist"

    globs.no_default = True
    assert globs.all() == ["*.tmp", "*.bak", "dist"]
