"""Command line entry point of the analyzer and storage services."""

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Tuple

from aiohttp import web

from .config import AnalyzerConfig, StorageConfig
from .exceptions import StorageError
from .logging_utils import parse_level, setup_logging
from .storage.history import HistoryStore
from .web.analyzer import create_app as create_analyzer_app
from .web.storage import create_app as create_storage_app

logger = logging.getLogger(__name__)


def parse_addr(addr: str, default_host: str) -> Tuple[str, int]:
    """Split "host:port" or ":port" into its parts.

    Raises:
        ValueError: If the port is not a number
    """
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"Invalid address {addr!r}, expected [host]:port")
    try:
        return host or default_host, int(port)
    except ValueError as e:
        raise ValueError(f"Invalid port in address {addr!r}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="container-layer-sizes",
        description="Analyze the size of container image layers",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    analyzer = subparsers.add_parser("analyzer", help="Run the analyzer service")
    analyzer.add_argument("--addr", help="Address to listen on, e.g. :5050")
    analyzer.add_argument(
        "--workers", type=int, help="Number of tasks processed concurrently"
    )
    analyzer.add_argument(
        "--timeout", type=float, help="Seconds a task may take before it is abandoned"
    )
    analyzer.add_argument(
        "--storage-dir", type=Path, help="OCI layout directory images are pulled into"
    )
    analyzer.add_argument(
        "--scratch-dir", type=Path, help="Directory the task scratch directories live in"
    )
    analyzer.add_argument("--verbosity", help="Log level, e.g. debug or info")

    storage = subparsers.add_parser("storage", help="Run the storage service")
    storage.add_argument("--addr", help="Address to listen on, e.g. :4040")
    storage.add_argument("--sqlite-dbpath", type=Path, help="Path of the SQLite database")
    storage.add_argument("--verbosity", help="Log level, e.g. warning or debug")
    return parser


def analyzer_config(args: argparse.Namespace) -> AnalyzerConfig:
    config = AnalyzerConfig.from_env()
    overrides = {}
    if args.addr:
        overrides["host"], overrides["port"] = parse_addr(args.addr, config.host)
    if args.workers is not None:
        overrides["workers"] = args.workers
    if args.timeout is not None:
        overrides["task_timeout"] = args.timeout
    if args.storage_dir is not None:
        overrides["storage_dir"] = args.storage_dir
    if args.scratch_dir is not None:
        overrides["scratch_dir"] = args.scratch_dir
    if args.verbosity:
        overrides["log_level"] = args.verbosity
    return replace(config, **overrides)


def storage_config(args: argparse.Namespace) -> StorageConfig:
    config = StorageConfig.from_env()
    overrides = {}
    if args.addr:
        overrides["host"], overrides["port"] = parse_addr(args.addr, config.host)
    if args.sqlite_dbpath is not None:
        overrides["db_path"] = args.sqlite_dbpath
    if args.verbosity:
        overrides["log_level"] = args.verbosity
    return replace(config, **overrides)


def run_analyzer(config: AnalyzerConfig) -> None:
    setup_logging(config.log_level)
    logger.info(f"Starting analyzer on {config.host}:{config.port}")
    app = create_analyzer_app(config)
    web.run_app(app, host=config.host, port=config.port, print=None)


def run_storage(config: StorageConfig) -> None:
    setup_logging(config.log_level)
    logger.info(f"Starting storage on {config.host}:{config.port} with {config.db_path}")
    store = HistoryStore(config.db_path)
    app = create_storage_app(store)
    web.run_app(app, host=config.host, port=config.port, print=None)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "analyzer":
            config = analyzer_config(args)
        else:
            config = storage_config(args)
        parse_level(config.log_level)
    except ValueError as e:
        parser.error(str(e))

    try:
        if isinstance(config, AnalyzerConfig):
            run_analyzer(config)
        else:
            run_storage(config)
    except StorageError as e:
        logging.error(f"Failed to start the storage service: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
