"""Configuration loading utilities for the watch pipeline."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

import yaml # type: ignore

from .events import Op
from .exceptions import WatchrunError
from .filters import PatternSyntax


logger = logging.getLogger(__name__)

DEFAULT_INCLUDE_PATTERN = ".*"
DEFAULT_EXCLUDE_PATTERN = r"^\."
DEFAULT_GLOB_INCLUDE_PATTERN = "*"
DEFAULT_GLOB_EXCLUDE_PATTERN = ".*"
DEFAULT_INTERVAL = 0.1
DEFAULT_QUEUE_SIZE = 1024

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d*)?|\.\d+)\s*(ns|us|µs|ms|s|m|h)\s*$")


class ConfigError(WatchrunError):
    """Raised when the configuration file is missing or invalid."""


@dataclass
class WatchConfig:
    """Options describing what to watch and which events qualify."""

    root_path: Path
    recursive: bool = False
    events: Op = Op.ALL
    include_pattern: str = DEFAULT_INCLUDE_PATTERN
    exclude_pattern: Optional[str] = DEFAULT_EXCLUDE_PATTERN
    pattern_syntax: PatternSyntax = PatternSyntax.REGEX
    interval: float = DEFAULT_INTERVAL
    queue_size: int = DEFAULT_QUEUE_SIZE


@dataclass
class CommandConfig:
    """The command batch run for every accepted event."""

    run: List[str] = field(default_factory=list)
    continue_on_error: bool = False
    timeout: Optional[float] = None


@dataclass
class AppConfig:
    """Top-level configuration structure."""

    watch: WatchConfig
    commands: CommandConfig = field(default_factory=CommandConfig)


def default_include(syntax: PatternSyntax) -> str:
    if syntax is PatternSyntax.GLOB:
        return DEFAULT_GLOB_INCLUDE_PATTERN
    return DEFAULT_INCLUDE_PATTERN


def default_exclude(syntax: PatternSyntax) -> str:
    """The hidden-file exclude pattern written in the given syntax."""

    if syntax is PatternSyntax.GLOB:
        return DEFAULT_GLOB_EXCLUDE_PATTERN
    return DEFAULT_EXCLUDE_PATTERN


def load_config(path: Path) -> AppConfig:
    """Load and validate the YAML configuration file."""

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:  # pragma: no cover - logging helper
        raise ConfigError(f"Failed to parse YAML configuration: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    watch_cfg = _parse_watch_config(data.get("watch"), config_path=path)
    commands_cfg = _parse_commands_config(data.get("commands"))

    app_config = AppConfig(watch=watch_cfg, commands=commands_cfg)
    validate_config(app_config)
    return app_config


def validate_config(config: AppConfig) -> None:
    """Check cross-field rules shared by file and command-line configuration."""

    if not config.commands.run:
        raise ConfigError("commands.run must list at least one command")
    if not config.watch.events:
        raise ConfigError("watch.events must name at least one event")
    for field_name in ("include_pattern", "exclude_pattern"):
        value = getattr(config.watch, field_name)
        if value and config.watch.pattern_syntax is PatternSyntax.REGEX:
            try:
                re.compile(value)
            except re.error as exc:
                raise ConfigError(f"watch.{field_name} is not a valid regular expression: {exc}") from exc
    logger.info(
        "Loaded %s command(s) for %s (recursive=%s, interval=%ss)",
        len(config.commands.run),
        config.watch.root_path,
        config.watch.recursive,
        config.watch.interval,
    )


def parse_duration(value: Any, *, field_name: str) -> float:
    """Convert a number of seconds or a string such as ``100ms`` into seconds."""

    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be a duration")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        match = _DURATION_RE.match(value)
        if match is None:
            try:
                seconds = float(value)
            except ValueError as exc:
                raise ConfigError(
                    f"{field_name} must be a number of seconds or a duration like 250ms, 2s, 1m"
                ) from exc
        else:
            seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    else:
        raise ConfigError(f"{field_name} must be a duration")

    if seconds < 0:
        raise ConfigError(f"{field_name} must not be negative")
    return seconds


def parse_events(value: Any, *, field_name: str) -> Op:
    """Turn ``"create,write"`` or ``["create", "write"]`` into an event mask."""

    if isinstance(value, str):
        names = value.split(",")
    else:
        names = _ensure_str_list(value, field_name)
    try:
        return Op.from_names(names)
    except ValueError as exc:
        allowed = ", ".join(["all"] + [op.name.lower() for op in Op if op is not Op.ALL])
        raise ConfigError(f"{field_name}: {exc} (allowed: {allowed})") from exc


def _parse_watch_config(raw: Any, *, config_path: Path) -> WatchConfig:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("'watch' section must be a mapping")

    root_path_raw = raw.get("root_path", ".")
    if not isinstance(root_path_raw, str):
        raise ConfigError("watch.root_path must be a string")

    root_path = Path(root_path_raw).expanduser()
    if not root_path.is_absolute():
        root_path = (config_path.parent / root_path).resolve()

    recursive_flag = raw.get("recursive", False)
    if not isinstance(recursive_flag, bool):
        raise ConfigError("watch.recursive must be a boolean")

    events = parse_events(raw.get("events", ["all"]), field_name="watch.events")

    syntax_raw = raw.get("pattern_syntax", PatternSyntax.REGEX.value)
    try:
        syntax = PatternSyntax(syntax_raw)
    except ValueError as exc:
        allowed = ", ".join(option.value for option in PatternSyntax)
        raise ConfigError(f"watch.pattern_syntax must be one of: {allowed}") from exc

    include_pattern = raw.get("include_pattern", default_include(syntax))
    exclude_pattern = raw.get("exclude_pattern", default_exclude(syntax))
    for field_name, value in (("include_pattern", include_pattern), ("exclude_pattern", exclude_pattern)):
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"watch.{field_name} must be a string")

    interval = parse_duration(raw.get("interval", DEFAULT_INTERVAL), field_name="watch.interval")

    queue_size = raw.get("queue_size", DEFAULT_QUEUE_SIZE)
    if isinstance(queue_size, bool) or not isinstance(queue_size, int) or queue_size <= 0:
        raise ConfigError("watch.queue_size must be a positive integer")

    return WatchConfig(
        root_path=root_path,
        recursive=recursive_flag,
        events=events,
        include_pattern=include_pattern or "",
        exclude_pattern=exclude_pattern or None,
        pattern_syntax=syntax,
        interval=interval,
        queue_size=queue_size,
    )


def _parse_commands_config(raw: Any) -> CommandConfig:
    if raw is None:
        return CommandConfig()
    # A bare list is shorthand for commands.run.
    if isinstance(raw, (list, str)):
        return CommandConfig(run=_ensure_str_list(raw, "commands"))
    if not isinstance(raw, dict):
        raise ConfigError("'commands' section must be a mapping or a list")

    run = _ensure_str_list(raw.get("run", []), "commands.run")

    continue_on_error = raw.get("continue_on_error", False)
    if not isinstance(continue_on_error, bool):
        raise ConfigError("commands.continue_on_error must be a boolean")

    timeout_raw = raw.get("timeout")
    timeout: Optional[float] = None
    if timeout_raw is not None:
        timeout = parse_duration(timeout_raw, field_name="commands.timeout")
        if timeout == 0:
            timeout = None

    return CommandConfig(run=run, continue_on_error=continue_on_error, timeout=timeout)


def _ensure_str_list(value: Any, field_name: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigError(f"{field_name} must be a list of strings")
    items: List[str] = []
    for elem in value:
        if not isinstance(elem, str):
            raise ConfigError(f"{field_name} must contain only strings")
        items.append(elem)
    return items
