"""threadloom: main application entry point."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_DIR = Path.home() / ".threadloom" / "logs"


def _configure_logging(level_name: str) -> Path:
    """Rotating file log plus stderr, both at level_name."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / "threadloom.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=5_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _handle_listing_args(args) -> None:
    """--list-distros / --import-list print JSON and exit."""
    if args.list_distros:
        from threadloom.engine.runners.wsl import list_distros

        print(json.dumps({"distros": asyncio.run(list_distros())}))
        sys.exit(0)

    if args.import_list:
        if args.import_limit <= 0:
            print("Error: --import-limit must be greater than 0.")
            sys.exit(2)
        from threadloom.engine.models import to_payload
        from threadloom.shared.services.transcript_import.service import (
            TranscriptImportService,
        )

        service = TranscriptImportService()
        sessions = service.list_sessions(limit=args.import_limit)
        print(json.dumps({"sessions": to_payload(sessions)}, indent=2))
        sys.exit(0)


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="threadloom",
        description="threadloom: supervised assistant CLI threads over HTTP + SSE",
    )
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Interface to bind (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (engine settings, providers, seed projects)",
    )
    parser.add_argument(
        "--log-level", metavar="LEVEL",
        help="Logging level (default: LOOM_LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--no-cleanup", action="store_true",
        help="Skip reaping orphaned assistant CLI processes at startup",
    )
    parser.add_argument(
        "--list-distros", action="store_true",
        help="List installed WSL distributions as JSON and exit",
    )
    parser.add_argument(
        "--import-list", action="store_true",
        help="List importable Claude transcripts as JSON and exit",
    )
    parser.add_argument(
        "--import-limit", metavar="N", type=int, default=50,
        help="Limit number of sessions shown by --import-list (default: 50)",
    )
    args = parser.parse_args()

    _handle_listing_args(args)

    from threadloom.engine.config import EngineConfig
    from threadloom.engine.engine import ThreadEngine
    from threadloom.engine.errors import ConfigError
    from threadloom.engine.yaml_config import find_config_file, load_yaml_config
    from threadloom.server.server import LoomServer
    from threadloom.shared.services.process_cleanup import (
        cleanup_stale_runtime_processes,
    )

    log_level = args.log_level or os.getenv("LOOM_LOG_LEVEL", "INFO")
    log_file = _configure_logging(log_level)
    logger = logging.getLogger(__name__)

    config_path = Path(args.config) if args.config else find_config_file()
    logger.info(
        "Starting threadloom cwd=%s host=%s port=%s config=%s log=%s",
        Path.cwd(), args.host, args.port, config_path or "<none>", log_file,
    )

    if not args.no_cleanup:
        reaped = cleanup_stale_runtime_processes()
        if reaped:
            logger.warning("Reaped %d stale runtime process(es) at startup", reaped)

    if config_path is not None:
        try:
            file_config = load_yaml_config(config_path)
        except (ConfigError, FileNotFoundError) as exc:
            logger.error("Cannot load config %s: %s", config_path, exc)
            print(f"Error: {exc}", file=sys.stderr)
            sys.exit(2)
        if args.log_level is None and file_config.engine.log_level:
            logging.getLogger().setLevel(
                getattr(logging, file_config.engine.log_level.upper(), logging.INFO)
            )
        engine = ThreadEngine.from_file_config(file_config)
    else:
        engine = ThreadEngine(EngineConfig.from_env())

    server = LoomServer(engine=engine, host=args.host, port=args.port)
    asyncio.run(server.start())
    sys.exit(0)


if __name__ == "__main__":
    main()
