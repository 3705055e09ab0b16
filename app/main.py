#!/usr/bin/env python3
"""
chcli-transport - Entry Point

Runs one statement through the clickhouse command-line client (local or
containerized) and streams the result to stdout.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add app directory to path for imports when running directly
APP_DIR = Path(__file__).parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from chcli_transport import __version__
from chcli_transport.config import CliTransportConfig, load_config
from chcli_transport.executor import (
    ExecutionCancelledError,
    ExecutionRequest,
    ExecutorError,
    create_runner,
)
from chcli_transport.utils.logging import get_logger, setup_logging

logger = get_logger("chcli_transport.main")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run a ClickHouse query through the clickhouse command-line client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Local client or container, whichever is available
  python main.py --query "SELECT version()"

  # Reuse a persistent container
  CHCLI_TRANSPORT__CONTAINER_ID=ch-cli python main.py --query "SELECT 1"

  # Insert a file
  python main.py --query "INSERT INTO t FORMAT CSV" --input data.csv
        """,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"chcli-transport {__version__}",
    )
    parser.add_argument(
        "--config-dir",
        type=str,
        help="Configuration directory path (default: ~/.chcli/)",
    )
    parser.add_argument("--query", "-q", required=True, help="Statement to execute")
    parser.add_argument("--query-id", type=str, help="Query identifier")
    parser.add_argument("--format", type=str, help="Output format (default: TabSeparated)")
    parser.add_argument("--host", type=str, help="Server host (overrides config)")
    parser.add_argument("--port", type=int, help="Server port (overrides config)")
    parser.add_argument("--database", "-d", type=str, help="Default database")
    parser.add_argument("--user", "-u", type=str, help="User name")
    parser.add_argument("--password", type=str, help="Password")
    parser.add_argument("--secure", "-s", action="store_true", help="Use TLS")
    parser.add_argument("--input", type=str, help="File to send as query input")
    parser.add_argument("--output", type=str, help="File to write the result to")
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        help="Logging level (overrides config)",
    )
    return parser.parse_args(argv)


def apply_overrides(config: CliTransportConfig, args: argparse.Namespace) -> None:
    """Apply command line overrides to the loaded configuration."""
    node = config.node
    if args.host:
        node.host = args.host
    if args.port:
        node.port = args.port
    if args.database is not None:
        node.database = args.database
    if args.user is not None:
        node.user = args.user
    if args.password is not None:
        node.password = args.password
    if args.secure:
        node.secure = True
    if args.log_level:
        config.logging.level = args.log_level


async def run(config: CliTransportConfig, args: argparse.Namespace) -> int:
    """Execute the query and stream its output."""
    runner = create_runner(config)
    request = ExecutionRequest(
        statement=args.query,
        query_id=args.query_id,
        input=args.input,
        output=args.output or sys.stdout.buffer,
    )
    if args.format:
        request.format = args.format

    async with runner.open_session(request) as session:
        await session.get_result_stream()
        error = await session.get_error()

    if error is not None:
        print(f"Error (exit code {error.exit_code}): {error}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = load_config(args.config_dir)
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    apply_overrides(config, args)
    setup_logging(config.logging.level, config.logging.file)

    try:
        return asyncio.run(run(config, args))
    except (KeyboardInterrupt, ExecutionCancelledError):
        print("\nCancelled", file=sys.stderr)
        return 130
    except ExecutorError as e:
        logger.error(f"{e.kind.value}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
