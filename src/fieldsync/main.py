#!/usr/bin/env python3
"""fieldsync application entry point.

Usage:
    fieldsync serve [--port 8384]            Start the sync server
    fieldsync enqueue attendance '{...}' --priority high
    fieldsync queue list                     Show the local queue
    fieldsync sync now                       Run one sync cycle
    fieldsync -d /tmp/fs config set owner_id worker-1
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, NoReturn, Optional

from .cli import add_cli_subparsers, run

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="fieldsync",
        description="fieldsync - offline-first event sync for field-service operations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fieldsync serve --port 8384                 Start the sync server
  fieldsync config set owner_id worker-1      Set the owner this client syncs for
  fieldsync enqueue signoff '{"job": 7}' --priority high
  fieldsync sync now                          Send queued events and fetch new ones
  fieldsync --format json queue progress
""",
    )

    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: ~/.config/fieldsync/)"
    )

    parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")
    add_cli_subparsers(subparsers)

    return parser


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """Main entry point for fieldsync.

    Parses arguments and dispatches to the command.
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    if args.config_dir:
        logger.info(f"Using custom config directory: {args.config_dir}")

    if not args.command:
        parser.print_help()
        sys.exit(1)

    sys.exit(run(args.config_dir, args))


if __name__ == "__main__":
    main()
