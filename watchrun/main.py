"""Main entry point for watchrun.

This module handles the command-line interface (CLI), configuration loading,
logging setup, and the process lifecycle. It wires a Watcher to an
Orchestrator that restarts the configured pipeline on every change batch.

Key Responsibilities:
    - CLI Argument Parsing: options first, then the stages separated by ``;;`` or ``==``.
    - Signal Handling: SIGINT/SIGTERM stop the watcher and kill the active pipeline.
    - Logging: Console logging plus an optional rotating log file (10MB).
    - Shutdown Invariants: No stage process outlives the tool under normal
      termination; cleanup runs from the finally block and from atexit.

Example:
    $ watchrun --monitor "src;templates" --ignore "*.tmp" go build ./cmd/app ;; ./app
"""

from __future__ import annotations

import argparse
import atexit
import functools
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from types import FrameType
from typing import List, Optional

from watchrun import __version__
from watchrun.config import LOG_LEVELS, Config, load_config
from watchrun.orchestrator import Orchestrator, stages_summary
from watchrun.pipeline import Pipeline
from watchrun.snapshot import SnapshotBuilder
from watchrun.watcher import Watcher

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.

    Logging Practices:
        - ``INFO``: Stage brackets (run/done/kill) and lifecycle events.
        - ``WARNING``: Stages exiting non-zero, slow shutdown.
        - ``ERROR``: Stages failing to start, unexpected errors in background threads.
        - ``DEBUG``: Resolved options, individual changes, skipped scan entries.
        - ``SILENT``: Nothing at all.

    Args:
        log_level (str): The logging level name (see :data:`watchrun.config.LOG_LEVELS`).
        log_file (Optional[str]): Optional path to a log file, rotated at 10MB with 5 backups.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = LOG_LEVELS.get(log_level.upper())
    if numeric_level is None:
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            # Logging is not configured yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="watchrun",
        description="Run a pipeline of commands and restart it whenever monitored files change.",
        epilog="Separate stages with ';;' or '=='. Options must come before the first command.",
    )
    parser.add_argument(
        "--monitor", type=str, default=None, help="Files/folders/globs to monitor, separated by ';' (default: .)."
    )
    parser.add_argument(
        "--ignore", action="append", default=None, help="Ignore files/folders matching these globs (repeatable)."
    )
    parser.add_argument(
        "--care", action="append", default=None, help="Only check changes to files matching these globs (repeatable)."
    )
    parser.add_argument(
        "--no-default-ignore",
        action="store_const",
        const=True,
        default=None,
        help="Do not apply the built-in ignore list (hidden, temporary, object and log files).",
    )
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds to wait between polls (default: 0.3)."
    )
    parser.add_argument(
        "--recurse", dest="recurse", action="store_const", const=True, default=None,
        help="Recurse into monitored folders (default).",
    )
    parser.add_argument(
        "--no-recurse", dest="recurse", action="store_const", const=False,
        help="Only watch the immediate entries of monitored folders.",
    )
    parser.add_argument(
        "--dir", dest="directory", type=str, default=None, help="Working directory for the commands."
    )
    parser.add_argument(
        "--log", dest="log_level", type=str, default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR, SILENT). Default: INFO",
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--verbose", action="store_true", help="Verbose output (same as --log DEBUG)."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Stages to run.")
    return parser


def log_options(config: Config) -> None:
    logger.debug("Options:")
    logger.debug(f"    interval   : {config.interval}s")
    logger.debug(f"    recursive  : {config.recurse}")
    logger.debug(f"    monitoring : {config.monitor}")
    logger.debug(f"    ignoring   : {config.ignore}")
    logger.debug(f"    caring     : {config.care}")
    logger.debug(f"    directory  : {config.directory or os.getcwd()}")
    logger.debug(f"Stages: {stages_summary(config.stages)}")


def main(argv: Optional[List[str]] = None) -> None:
    """Execute the main application logic.

    Parse command-line arguments, load configuration, set up logging, then
    watch and restart the pipeline until SIGINT or SIGTERM.

    Raises:
        SystemExit: With status 2 on configuration errors, 1 on fatal errors.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO, handlers=[bootstrap_handler], force=True
    )

    try:
        config = load_config(vars(args))
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        parser.exit(2, f"Configuration Error: {e}\n")

    if not config.stages:
        parser.print_help()
        return

    logger.info(f"Starting watchrun v{__version__} (PID: {os.getpid()})...")
    log_options(config)

    watcher = Watcher(
        SnapshotBuilder(config.monitor, config.ignore, config.care, config.recurse),
        interval=config.interval,
    )
    pipeline_log = logging.getLogger("watchrun.pipeline")
    orchestrator = Orchestrator(
        watcher,
        config.stages,
        pipeline_factory=functools.partial(Pipeline, log=pipeline_log, directory=config.directory),
    )
    orchestrator_thread = threading.Thread(target=orchestrator.run, name="Orchestrator", daemon=True)
    stop_event = threading.Event()
    cleaned_up = False

    def cleanup() -> None:
        """Stop the watcher, kill the last pipeline and wait for it to exit."""
        nonlocal cleaned_up
        if cleaned_up:
            return
        cleaned_up = True
        try:
            orchestrator.shutdown()
            watcher.join(timeout=config.interval * 2 + 1.0)
            if orchestrator_thread.is_alive():
                orchestrator_thread.join(timeout=orchestrator.join_timeout)
            orchestrator.wait_for_pipeline()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")
        logger.debug(f"Final statistics: {orchestrator.get_statistics()}")
        logger.info("watchrun stopped.")

    atexit.register(cleanup)

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        """Handle SIGINT/SIGTERM by waking the main thread for shutdown."""
        logger.info(f"Received signal {signal.Signals(sig).name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        watcher.start()
        orchestrator_thread.start()
        stop_event.wait()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        cleanup()
        atexit.unregister(cleanup)


if __name__ == "__main__":
    main()
