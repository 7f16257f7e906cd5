# backgrounder/core/cli.py
"""
CLI for inspecting and compacting a backgrounder write-ahead log.

    backgrounder inspect log/jobs.wal
    backgrounder checkpoint log/jobs.wal --serializer yaml
"""

import argparse
import os
import sys
from collections import Counter
from typing import Optional, Sequence

from backgrounder.core.codec.serde import get_serializer
from backgrounder.core.errors import BackgrounderError, ConfigurationError, ErrorCode
from backgrounder.core.logging import get_logger, setup_logging
from backgrounder.core.wal.storage import DEFAULT_LOG_PATH, FileStorage, fold_latest


def _open_storage(args: argparse.Namespace) -> FileStorage:
    wal_path: str = args.wal
    if not os.path.exists(wal_path):
        raise ConfigurationError(
            message=f'write-ahead log not found: {wal_path}',
            code=ErrorCode.CLI_INVALID_ARGS,
            help_text=f'pass the path of an existing log (default: {DEFAULT_LOG_PATH})',
        )
    return FileStorage(wal_path, serializer=get_serializer(args.serializer))


def inspect_command(args: argparse.Namespace) -> None:
    """Print the latest event of every job in the log."""
    logger = get_logger('cli')
    setup_logging(args.loglevel)

    try:
        storage = _open_storage(args)
        latest = fold_latest(storage.replay())
    except BackgrounderError as e:
        logger.error(str(e))
        sys.exit(1)
    except OSError as e:
        logger.error(f'Failed to read {args.wal}: {e}')
        sys.exit(1)

    states: Counter[str] = Counter()
    print(f'{"JOB ID":<36}  {"JOB":<24}  {"EVENT":<9}  {"STATE":<8}  RETRIES')
    for entry in latest.values():
        state = entry.state.value if entry.state is not None else '-'
        states[state] += 1
        data = entry.data if isinstance(entry.data, dict) else {}
        args_field = data.get('args')
        job_name = args_field.get('job_name', '') if isinstance(args_field, dict) else ''
        retries = f'{data.get("retries", 0)}/{data.get("max_retries", "?")}'
        print(
            f'{entry.job_id:<36}  {str(job_name):<24}  '
            f'{entry.event.value:<9}  {state:<8}  {retries}'
        )

    summary = ', '.join(f'{name}={count}' for name, count in sorted(states.items()))
    print(f'\n{len(latest)} job(s): {summary or "none"}')


def checkpoint_command(args: argparse.Namespace) -> None:
    """Compact the log in place."""
    logger = get_logger('cli')
    setup_logging(args.loglevel)

    try:
        storage = _open_storage(args)
        kept = storage.checkpoint()
    except BackgrounderError as e:
        logger.error(str(e))
        sys.exit(1)
    except OSError as e:
        logger.error(f'Checkpoint of {args.wal} failed: {e}')
        sys.exit(1)

    print(f'{kept} in-flight job(s) kept in {args.wal}')


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        'wal',
        nargs='?',
        default=DEFAULT_LOG_PATH,
        help=f'Path of the write-ahead log (default: {DEFAULT_LOG_PATH})',
    )
    parser.add_argument(
        '--serializer',
        choices=['json', 'yaml'],
        default='json',
        help='Record format of the log (default: json)',
    )
    parser.add_argument(
        '--loglevel',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default='INFO',
        type=str.upper,
        help='Logging level (default: INFO)',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='backgrounder',
        description='Backgrounder write-ahead log maintenance',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show the latest state of every job
  backgrounder inspect log/jobs.wal

  # Drop finished jobs from the log
  backgrounder checkpoint log/jobs.wal
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    inspect_parser = subparsers.add_parser(
        'inspect', help='Show the latest event of every job in the log'
    )
    _add_common_arguments(inspect_parser)

    checkpoint_parser = subparsers.add_parser(
        'checkpoint', help='Compact the log to in-flight jobs only'
    )
    _add_common_arguments(checkpoint_parser)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main CLI entry point."""
    try:
        parser = build_parser()
        args = parser.parse_args(argv)

        match args.command:
            case 'inspect':
                inspect_command(args)
            case 'checkpoint':
                checkpoint_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
