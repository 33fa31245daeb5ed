"""Main CLI entry point for toolflow."""

import argparse
import sys
from typing import Optional

from .commands import list_providers, resume_workflow, run_workflow


def _add_logging_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging and state backups'
    )
    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Suppress non-error output'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output'
    )
    parser.add_argument(
        '--log-level',
        choices=['debug', 'info', 'warn', 'error'],
        default='info',
        help='Set log level'
    )


def _add_execution_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--providers',
        type=str,
        required=True,
        metavar='FILE',
        help='Path to provider catalogue YAML file'
    )
    parser.add_argument(
        '--user',
        type=str,
        required=True,
        metavar='ID',
        help='User whose credentials are injected into providers'
    )
    parser.add_argument(
        '--credentials',
        type=str,
        metavar='FILE',
        help='Path to credentials YAML file'
    )
    parser.add_argument(
        '--skip-auth-check',
        action='store_true',
        help='Do not require verified credentials before running'
    )
    parser.add_argument(
        '--max-attempts',
        type=int,
        help='Attempts per provider call on transport failure'
    )
    parser.add_argument(
        '--backoff-unit',
        type=float,
        metavar='SECONDS',
        help='Backoff unit; attempt k waits 2^k units'
    )
    parser.add_argument(
        '--call-timeout',
        type=float,
        metavar='SECONDS',
        help='Timeout for a single provider call'
    )
    parser.add_argument(
        '--events',
        type=str,
        metavar='FILE',
        help='Append progress events to FILE as JSON lines'
    )
    parser.add_argument(
        '--backup-state',
        action='store_true',
        help='Backup state before each step'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Print the full execution result as JSON'
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the toolflow CLI."""
    parser = argparse.ArgumentParser(
        prog='toolflow',
        description='Workflow execution engine for tool providers'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Run command
    run_parser = subparsers.add_parser('run', help='Run a workflow')
    run_parser.add_argument(
        'workflow',
        type=str,
        help='Path to workflow YAML file'
    )
    _add_execution_arguments(run_parser)
    run_parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Validate without execution'
    )
    _add_logging_arguments(run_parser)

    # Resume command
    resume_parser = subparsers.add_parser('resume', help='Resume a workflow run')
    resume_parser.add_argument(
        'run_id',
        type=str,
        help='Run ID to resume'
    )
    _add_execution_arguments(resume_parser)
    resume_parser.add_argument(
        '--repair',
        action='store_true',
        help='Attempt state recovery from backup'
    )
    resume_parser.add_argument(
        '--force-restart',
        action='store_true',
        help='Ignore existing state and start new run'
    )
    _add_logging_arguments(resume_parser)

    # Providers command
    providers_parser = subparsers.add_parser('providers', help='List configured providers')
    providers_parser.add_argument(
        '--providers',
        type=str,
        required=True,
        metavar='FILE',
        help='Path to provider catalogue YAML file'
    )
    providers_parser.add_argument(
        '--category',
        type=str,
        help='Only list providers in this category'
    )
    _add_logging_arguments(providers_parser)

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == 'run':
        return run_workflow(parsed_args)
    elif parsed_args.command == 'resume':
        return resume_workflow(parsed_args)
    elif parsed_args.command == 'providers':
        return list_providers(parsed_args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
