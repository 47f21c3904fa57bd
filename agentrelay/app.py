"""Command-line entry point: ``agentrelay serve|sessions|cleanup``."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.table import Table

from agentrelay.engine.config import RelayConfig

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def configure_logging(config: RelayConfig, log_dir: Path | None = None) -> Path:
    """Rotating file log plus stderr; returns the log file path."""
    log_dir = log_dir or Path.home() / ".agentrelay" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentrelay.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)

    # Raw provider stdout goes to its own file only.
    stream_logger = logging.getLogger("agentrelay.stream")
    stream_logger.propagate = False
    stream_logger.handlers.clear()
    if config.stream_log_path:
        stream_path = Path(config.stream_log_path).expanduser()
        stream_path.parent.mkdir(parents=True, exist_ok=True)
        raw_handler = RotatingFileHandler(
            stream_path, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        raw_handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
        stream_logger.addHandler(raw_handler)
        stream_logger.setLevel(logging.DEBUG)
    return log_file


def load_config(args) -> RelayConfig:
    if args.config:
        from agentrelay.engine.yaml_config import load_yaml_config
        config = load_yaml_config(args.config).relay
    else:
        config = RelayConfig.from_env()
    if getattr(args, "host", None):
        config.server_host = args.host
    if getattr(args, "port", None) is not None:
        config.server_port = args.port
    if getattr(args, "base_folder", None):
        config.base_folder = args.base_folder
    if getattr(args, "db", None):
        config.db_path = args.db
    return config


def _serve(config: RelayConfig) -> int:
    from agentrelay.adapters.console_surface import ConsoleSurface
    from agentrelay.engine.mcp_server.server import RelayServer
    from agentrelay.engine.service import RelayService

    log_file = configure_logging(config)
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting agentrelay server cwd=%s host=%s port=%s base=%s log=%s",
        Path.cwd(), config.server_host, config.server_port,
        config.base_folder, log_file,
    )
    service = RelayService(config, ConsoleSurface())
    service.providers.validate()
    service.start()
    server = RelayServer(service, host=config.server_host, port=config.server_port)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


def _sessions(config: RelayConfig) -> int:
    from agentrelay.shared.services.session_store import SessionStore

    store = SessionStore(config.db_path)
    table = Table(title=f"Stored sessions ({store.db_path})")
    table.add_column("Channel")
    table.add_column("Name")
    table.add_column("Session")
    table.add_column("Last used")
    for session in store.list_sessions():
        table.add_row(
            session.channel_id, session.channel_name,
            session.session_id, session.last_used,
        )
    Console().print(table)
    return 0


def _cleanup(config: RelayConfig, days: int | None) -> int:
    from agentrelay.shared.services.session_store import SessionStore

    store = SessionStore(config.db_path)
    removed = store.cleanup_old_sessions(days or config.session_retention_days)
    Console().print(f"Removed {removed} session(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="Drive agent CLIs from chat channels with human approvals",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (defaults to RELAY_* environment variables)",
    )
    parser.add_argument("--db", metavar="PATH", help="Session database path")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the relay server")
    serve.add_argument("--host", help="Bind address")
    serve.add_argument("--port", type=int, help="Port (0 picks a free one)")
    serve.add_argument("--base-folder", help="Parent folder of channel working dirs")

    sub.add_parser("sessions", help="List stored channel sessions")

    cleanup = sub.add_parser("cleanup", help="Delete old stored sessions")
    cleanup.add_argument(
        "--days", type=int,
        help="Retention in days (default: session_retention_days)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args)
    if args.command == "serve":
        return _serve(config)
    if args.command == "sessions":
        return _sessions(config)
    return _cleanup(config, args.days)


if __name__ == "__main__":
    sys.exit(main())
