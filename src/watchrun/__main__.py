"""Command-line entry point for the watch pipeline."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from .config import (
    AppConfig,
    CommandConfig,
    ConfigError,
    WatchConfig,
    default_exclude,
    default_include,
    load_config,
    parse_duration,
    parse_events,
    validate_config,
)
from .exceptions import InitError
from .filters import PatternSyntax
from .pipeline import Pipeline

logger = logging.getLogger("watchrun")

EPILOG = """\
variables:
  %f  path of the changed file
  %t  event type, e.g. CREATE or WRITE

examples:
  watchrun -e write,create -c "go vet" -c "go test" --include '\\.go$'
  watchrun -r -c "process.sh %f %t" src
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="watchrun",
        description="Run commands when files in a directory tree change",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("path", nargs="?", default=".", help="Directory to watch (default: %(default)s)")
    parser.add_argument(
        "--config",
        default="watchrun.yaml",
        help="Path to the YAML configuration file, used when no -c is given (default: %(default)s)",
    )
    parser.add_argument(
        "-c",
        dest="commands",
        action="append",
        default=[],
        metavar="COMMAND",
        help="Add a command to run on each accepted event (repeatable)",
    )
    parser.add_argument("-r", dest="recursive", action="store_true", help="Watch directories recursively")
    parser.add_argument(
        "-e",
        dest="events",
        default="all",
        help="Comma separated events to listen for: create, write, remove, rename, chmod, all",
    )
    parser.add_argument(
        "--include",
        help="Only process events whose file name matches this pattern (default: .* or * with --glob)",
    )
    parser.add_argument(
        "--exclude",
        help="Do not process events whose file name matches this pattern (default: ^\\. or .* with --glob)",
    )
    parser.add_argument("--glob", action="store_true", help="Treat --include/--exclude as glob patterns")
    parser.add_argument(
        "-i",
        dest="interval",
        default="100ms",
        help="Minimum time between command batches, 0 disables the limit (default: %(default)s)",
    )
    parser.add_argument(
        "--continue-on-error",
        action="store_true",
        help="Keep running the remaining commands after one fails",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> AppConfig:
    """Build configuration from flags when commands are given on the command line."""

    syntax = PatternSyntax.GLOB if args.glob else PatternSyntax.REGEX
    include = default_include(syntax) if args.include is None else args.include
    exclude = default_exclude(syntax) if args.exclude is None else args.exclude
    watch = WatchConfig(
        root_path=Path(args.path).expanduser().resolve(),
        recursive=args.recursive,
        events=parse_events(args.events, field_name="-e"),
        include_pattern=include,
        exclude_pattern=exclude or None,
        pattern_syntax=syntax,
        interval=parse_duration(args.interval, field_name="-i"),
    )
    commands = CommandConfig(run=list(args.commands), continue_on_error=args.continue_on_error)
    app_config = AppConfig(watch=watch, commands=commands)
    validate_config(app_config)
    return app_config


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    try:
        if args.commands:
            app_config = config_from_args(args)
        else:
            app_config = load_config(Path(args.config))
    except ConfigError as exc:
        logging.error("%s", exc)
        raise SystemExit(2) from exc

    pipeline = Pipeline(app_config)
    try:
        pipeline.start()
    except InitError as exc:
        logging.error("%s", exc)
        raise SystemExit(1) from exc

    try:
        pipeline.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        pipeline.stop()

    if pipeline.error is not None:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
