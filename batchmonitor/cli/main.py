"""Main CLI entry point for the batch monitor."""

import argparse
import sys
from typing import Optional

from .commands import run_script, list_executions, show_execution, show_logs


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--config',
        type=str,
        help='Path to YAML configuration file'
    )
    parser.add_argument(
        '--state-dir',
        type=str,
        help='Override the execution record directory'
    )
    parser.add_argument(
        '--log-level',
        choices=['debug', 'info', 'warn', 'error'],
        default='info',
        help='Set log level'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the batch monitor CLI."""
    parser = argparse.ArgumentParser(
        prog='batchmonitor',
        description='Run batch scripts and watch their output and progress'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Run command
    run_parser = subparsers.add_parser('run', help='Run a script and wait for it to finish')
    run_parser.add_argument(
        'script',
        type=str,
        nargs='?',
        help='Script name relative to the scripts directory, or an absolute path'
    )
    run_parser.add_argument(
        '--params',
        type=str,
        default=None,
        help='Whitespace-separated script parameters'
    )
    run_parser.add_argument(
        '--timeout',
        type=float,
        help='Override the execution timeout in seconds'
    )
    run_parser.add_argument(
        '--scripts-dir',
        type=str,
        help='Override the scripts base directory'
    )
    run_parser.add_argument(
        '--logs-dir',
        type=str,
        help='Override the output-capture directory'
    )
    run_parser.add_argument(
        '--watch',
        action='store_true',
        help='Print console output and progress while the script runs'
    )
    run_parser.add_argument(
        '--quiet',
        action='store_true',
        help='Suppress non-error output'
    )
    run_parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output'
    )
    _add_common_arguments(run_parser)

    # List command
    list_parser = subparsers.add_parser('list', help='List executions, newest first')
    _add_common_arguments(list_parser)

    # Show command
    show_parser = subparsers.add_parser('show', help='Show one execution record as JSON')
    show_parser.add_argument(
        'execution_id',
        type=str,
        help='Execution ID'
    )
    _add_common_arguments(show_parser)

    # Logs command
    logs_parser = subparsers.add_parser('logs', help='Show captured output of an execution')
    logs_parser.add_argument(
        'execution_id',
        type=str,
        help='Execution ID'
    )
    logs_parser.add_argument(
        '--all',
        action='store_true',
        help='Include system messages'
    )
    logs_parser.add_argument(
        '--kind',
        choices=['stdout', 'stderr', 'system'],
        help='Only show entries of this kind'
    )
    _add_common_arguments(logs_parser)

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == 'run':
        return run_script(parsed_args)
    elif parsed_args.command == 'list':
        return list_executions(parsed_args)
    elif parsed_args.command == 'show':
        return show_execution(parsed_args)
    elif parsed_args.command == 'logs':
        return show_logs(parsed_args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
