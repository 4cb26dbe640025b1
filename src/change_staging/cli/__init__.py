"""
Command-line interface for change tracking staging.

Available commands:
- run: Stage changes once
- schedule: Stage changes periodically
- status: Show watermarks
- reseed: Re-seed one table's watermark
"""

import os
import sys

from utils.logging import configure_from_env, setup_logging, shutdown_logging
from utils.tracing import initialize_tracing, shutdown_tracing

from .commands import EXIT_FATAL, cmd_reseed, cmd_run, cmd_schedule, cmd_status
from .parser import create_parser

COMMANDS = {
    'run': cmd_run,
    'schedule': cmd_schedule,
    'status': cmd_status,
    'reseed': cmd_reseed,
}


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the ct-stage CLI"""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command not in COMMANDS:
        parser.print_help()
        sys.exit(EXIT_FATAL)

    if args.log_level or args.log_json or args.log_file:
        setup_logging(
            level=args.log_level or os.getenv("LOG_LEVEL", "INFO"),
            log_file=args.log_file,
            json_format=args.log_json,
        )
    else:
        configure_from_env()
    initialize_tracing(service_name="ct-staging")

    try:
        exit_code = COMMANDS[args.command](args)
    finally:
        shutdown_tracing()
        shutdown_logging()

    sys.exit(exit_code)


__all__ = [
    'main',
    'create_parser',
    'cmd_run',
    'cmd_schedule',
    'cmd_status',
    'cmd_reseed',
]


if __name__ == '__main__':
    main()
