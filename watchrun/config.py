"""Configuration management for watchrun.

This module handles loading configuration from defaults, config files, environment variables,
and CLI arguments, and aggregates it into a :class:`Config` dataclass that is passed
explicitly to the watcher and pipelines. No module-level mutable settings exist.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File (``config.ini`` section ``[watchrun]``, or ``[tool.watchrun]`` in ``pyproject.toml``)
    4. Defaults

Supported Environment Variables:
    * ``WATCHRUN_MONITOR``: ``;`` separated paths/globs to monitor.
    * ``WATCHRUN_IGNORE``: Additional ignore globs (``;`` or ``:`` separated).
    * ``WATCHRUN_CARE``: Care globs (``;`` or ``:`` separated).
    * ``WATCHRUN_NO_DEFAULT_IGNORE``: Drop the built-in ignore list.
    * ``WATCHRUN_INTERVAL``: Poll interval in seconds.
    * ``WATCHRUN_RECURSE``: Recurse into monitored directories.
    * ``WATCHRUN_LOG_LEVEL``: Logging level.
    * ``WATCHRUN_LOG_FILE``: Path to the log file.
    * ``WATCHRUN_DIRECTORY``: Working directory for stage processes.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import tomli

from watchrun.globs import DEFAULT_IGNORE, Globs, split_globs
from watchrun.pipeline import Stage, parse_stages

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "LOG_LEVELS", "load_config"]

SECTION = "watchrun"
SILENT = logging.CRITICAL + 10
LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "SILENT": SILENT,
}
_TRUE = ("true", "1", "yes", "on")
_FALSE = ("false", "0", "no", "off")


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        monitor (List[str]): Paths, directories or globs to monitor. Defaults to ``["."]``.
        ignore (List[str]): Globs matched against base names; matches are skipped.
        care (List[str]): If non-empty, only files matching one of these globs are watched.
        interval (float): Poll interval and settle delay in seconds. Defaults to 0.3.
        recurse (bool): Recurse into monitored directories. Defaults to True.
        log_level (str): Logging level name. Defaults to "INFO".
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        directory (Optional[str]): Working directory for stages. Defaults to the current one.
        stages (List[Stage]): Commands to run on every change.
    """

    monitor: List[str] = field(default_factory=lambda: ["."])
    ignore: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORE))
    care: List[str] = field(default_factory=list)
    interval: float = 0.3
    recurse: bool = True
    log_level: str = "INFO"
    log_file: Optional[str] = None
    directory: Optional[str] = None
    stages: List[Stage] = field(default_factory=list)


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config.ini paths in order of priority.

    Checks the following locations:
    1. Local `config.ini` (current working directory).
    2. `$XDG_CONFIG_HOME/watchrun/config.ini` (Linux/macOS).
    3. `%APPDATA%\\watchrun\\config.ini` (Windows).
    4. `~/.config/watchrun/config.ini` (Fallback).
    """
    paths = ["config.ini"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(os.path.join(os.path.expanduser(xdg_config_home), SECTION, "config.ini"))
    elif os.name == "nt" and os.environ.get("APPDATA"):
        paths.append(os.path.join(os.path.expanduser(os.environ["APPDATA"]), SECTION, "config.ini"))
    else:
        paths.append(os.path.join(os.path.expanduser("~"), ".config", SECTION, "config.ini"))
    return paths


def _read_config_file() -> Dict[str, Any]:
    """Read settings from the first config.ini found, else from pyproject.toml."""
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            parser = ConfigParser(interpolation=None)
            try:
                parser.read(path, encoding="utf-8-sig")
            except (ConfigParserError, UnicodeDecodeError, OSError) as e:
                logger.error(f"Failed to parse config file {path}: {e}")
                return {}
            if SECTION not in parser:
                return {}
            return {
                key.replace("-", "_"): value
                for key, value in parser[SECTION].items()
                if value is not None and value != ""
            }

    pyproject = Path("pyproject.toml")
    if pyproject.is_file():
        try:
            with pyproject.open("rb") as f:
                table = tomli.load(f).get("tool", {}).get(SECTION, {})
        except (tomli.TOMLDecodeError, OSError) as e:
            logger.error(f"Failed to parse {pyproject}: {e}")
            return {}
        if table:
            logger.debug(f"Loading config from {pyproject} [tool.{SECTION}]")
        return {key.replace("-", "_"): value for key, value in table.items()}
    return {}


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"Invalid boolean for {name}: {value}")


def _as_list(value: Any, separators: str = ";:") -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        if separators == ";":
            return [item.strip() for item in value.split(";") if item.strip()]
        return split_globs(value)
    items: List[str] = []
    for item in value:
        items.extend(_as_list(str(item), separators))
    return items


def _validate_directory(path_str: str) -> str:
    path = Path(os.path.expanduser(path_str))
    try:
        resolved = path.resolve(strict=True)
    except (FileNotFoundError, RuntimeError, OSError) as e:
        raise ValueError(f"Invalid directory (not found): {path}") from e
    if not resolved.is_dir():
        raise ValueError(f"Invalid directory (not a directory): {resolved}")
    return str(resolved)


def _validate_log_file(path_str: str) -> str:
    path = Path(os.path.expanduser(path_str)).absolute()
    if path.exists() and not path.is_file():
        raise ValueError(f"Invalid path: Log file is not a regular file: {path}")
    return str(path)


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Args:
        args (Dict[str, Any]): Parsed CLI arguments, typically ``vars(parser.parse_args())``.
            Keys match Config attributes; ``command`` holds the positional stage tokens,
            ``verbose`` forces DEBUG and ``no_default_ignore`` drops the built-in ignore list.
            Values of None are ignored so lower-priority sources take effect.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ValueError: If a value is invalid (non-positive interval, unknown log level,
            missing directory, malformed boolean) or the stage list is malformed.

    Examples:
        >>> config = load_config({"monitor": "src;docs", "command": ["make", ";;", "./app"]})
        >>> config.monitor
        ['src', 'docs']
        >>> [str(stage) for stage in config.stages]
        ['make', './app']
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "monitor": ["."],
        "ignore": [],
        "care": [],
        "no_default_ignore": False,
        "interval": 0.3,
        "recurse": True,
        "log_level": "INFO",
        "log_file": None,
        "directory": None,
    }

    # 2. Config File
    for key, value in _read_config_file().items():
        if key in config_values:
            config_values[key] = value
        else:
            logger.warning(f"Unknown config key ignored: {key}")

    # 3. Environment Variables
    env_map = {
        "WATCHRUN_MONITOR": "monitor",
        "WATCHRUN_IGNORE": "ignore",
        "WATCHRUN_CARE": "care",
        "WATCHRUN_NO_DEFAULT_IGNORE": "no_default_ignore",
        "WATCHRUN_INTERVAL": "interval",
        "WATCHRUN_RECURSE": "recurse",
        "WATCHRUN_LOG_LEVEL": "log_level",
        "WATCHRUN_LOG_FILE": "log_file",
        "WATCHRUN_DIRECTORY": "directory",
    }
    for env_var, config_key in env_map.items():
        val = os.getenv(env_var)
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None and key in config_values:
            config_values[key] = value

    try:
        interval = float(config_values["interval"])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid float for interval: {config_values['interval']}") from e
    if interval <= 0:
        raise ValueError(f"interval must be positive, got {interval}")
    config_values["interval"] = interval

    config_values["recurse"] = _as_bool("recurse", config_values["recurse"])

    ignore = Globs(
        default=list(DEFAULT_IGNORE),
        no_default=_as_bool("no_default_ignore", config_values["no_default_ignore"]),
    )
    ignore.extend(_as_list(config_values["ignore"]))
    config_values["ignore"] = ignore.all()
    config_values["care"] = _as_list(config_values["care"])
    config_values["monitor"] = _as_list(config_values["monitor"], separators=";") or ["."]

    if args.get("verbose"):
        config_values["log_level"] = "DEBUG"
    level = str(config_values["log_level"]).upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"Invalid log level: {config_values['log_level']}")
    config_values["log_level"] = level

    if config_values["log_file"]:
        config_values["log_file"] = _validate_log_file(str(config_values["log_file"]))
    if config_values["directory"]:
        config_values["directory"] = _validate_directory(str(config_values["directory"]))

    config_values["stages"] = parse_stages(list(args.get("command") or []))

    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}
    return Config(**filtered_values)
