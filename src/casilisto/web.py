"""Sync server entry point for CasiListo.

Runs the HTTP sync server (Flask) with the stale device sweeper. Use
`python -m casilisto.main serve` or the `casilisto` console script.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional

from flask import Flask

from .core.config import Config
from .core.sync import EXTENSION_KEY, create_sync_server

logger = logging.getLogger(__name__)


def create_app(config_dir: Optional[Path] = None, start_sweeper: bool = False) -> Flask:
    """Create the sync server application.

    Args:
        config_dir: Custom configuration directory or None for default
        start_sweeper: Start the stale device sweeper thread

    Returns:
        Configured Flask application
    """
    config = Config(config_dir=config_dir)
    return create_sync_server(config=config, start_sweeper=start_sweeper)


def add_serve_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add serve subparser and its arguments.

    Args:
        subparsers: Parent subparsers object to add serve parser to
    """
    serve_parser = subparsers.add_parser(
        "serve",
        help="Start the sync server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server_host from config, 0.0.0.0)"
    )

    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: $PORT or server_port from config, 3000)"
    )

    serve_parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run the sync server with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (host, port, debug)

    Returns:
        Exit code (0 for success)
    """
    logger.info("Starting CasiListo sync server")
    if config_dir:
        logger.info(f"Using custom config directory: {config_dir}")

    app = create_app(config_dir=config_dir, start_sweeper=True)
    config = app.extensions[EXTENSION_KEY]["config"]
    host = args.host or config.get_server_host()
    port = args.port or config.get_server_port()
    logger.info(f"Database location: {config.get_database_file()}")
    logger.info(f"Listening on http://{host}:{port}")

    try:
        app.run(
            host=host,
            port=port,
            debug=args.debug,
            threaded=True,
            use_reloader=False,
        )
    finally:
        extension = app.extensions[EXTENSION_KEY]
        extension["sweeper"].stop()
        extension["db"].close()

    return 0
