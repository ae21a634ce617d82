#!/usr/bin/env python3
"""CasiListo sync application entry point.

Usage:
    python -m casilisto.main serve [--port 3000]   # Start the sync server
    python -m casilisto.main cli status            # Use the sync client CLI
    python -m casilisto.main cli link ABC234
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import NoReturn

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the unified argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        description="CasiListo - shopping list sync server and client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m casilisto.main serve --port 3000     Start the sync server
  python -m casilisto.main cli create-account    Create an account for this list
  python -m casilisto.main cli link ABC234       Link this device to an account
  python -m casilisto.main cli --format json devices
""",
    )

    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: ~/.config/casilisto/)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="interface", help="Interface to use")

    from casilisto.web import add_serve_subparser
    add_serve_subparser(subparsers)

    from casilisto.cli import add_cli_subparser
    add_cli_subparser(subparsers)

    return parser


def main() -> NoReturn:
    """Main entry point for CasiListo.

    Parses arguments and dispatches to the appropriate interface.
    """
    parser = create_parser()
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.interface == "serve":
        from casilisto.web import run as run_server
        exit_code = run_server(args.config_dir, args)
    elif args.interface == "cli":
        from casilisto.cli import run as run_cli
        exit_code = run_cli(args.config_dir, args)
    else:
        parser.print_help()
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
