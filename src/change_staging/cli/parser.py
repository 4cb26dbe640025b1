"""
Command-line argument parser for ct-stage.
"""

import argparse


def _add_database_arguments(parser: argparse.ArgumentParser) -> None:
    # Override the SQLSERVER_* environment variables
    parser.add_argument('--host', help='SQL Server host')
    parser.add_argument('--port', type=int, help='SQL Server port')
    parser.add_argument('--database', help='SQL Server database name')
    parser.add_argument('--user', help='SQL Server username')
    parser.add_argument('--password', help='SQL Server password')
    parser.add_argument('--watermark-table', help='schema.table holding watermarks')
    parser.add_argument('--staging-table', help='schema.table receiving staged keys')


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--workers',
        type=int,
        help='Concurrent table tasks (default: CT_MAX_WORKERS or 4)'
    )
    parser.add_argument(
        '--timeout',
        type=float,
        help='Timeout per table in seconds (default: CT_TABLE_TIMEOUT or 3600)'
    )
    parser.add_argument(
        '--max-retries',
        type=int,
        help='Retries after a transient read or write failure (default: CT_MAX_RETRIES or 3)'
    )
    parser.add_argument(
        '--tables',
        help='Comma-separated schema.table names to process (default: all tracked tables)'
    )


def create_parser() -> argparse.ArgumentParser:
    """
    Create and configure the argument parser for the CLI.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog='ct-stage',
        description='Stage keys of rows changed since the last run from SQL Server change tracking',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Stage every tracked table once
  ct-stage run

  # Two tables only, 8 workers, JSON report
  ct-stage run --tables dbo.Orders,dbo.Customers --workers 8 --output run.json

  # See what would be staged without writing anything
  ct-stage run --dry-run

  # Stage every 15 minutes
  ct-stage schedule --interval 900

  # Nightly at 02:00
  ct-stage schedule --cron "0 2 * * *"

  # Show watermarks
  ct-stage status

  # Accept a new key shape or an expired watermark
  ct-stage reseed --table dbo.Legacy
        """
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (default: LOG_LEVEL or INFO)'
    )
    parser.add_argument(
        '--log-json',
        action='store_true',
        help='Emit JSON log lines (default: LOG_JSON)'
    )
    parser.add_argument(
        '--log-file',
        help='Also log to this rotating file (default: LOG_FILE)'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # ========== Run command ==========
    run_parser = subparsers.add_parser('run', help='Run one staging pass')
    _add_run_arguments(run_parser)
    run_parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Read changes but keep watermarks and staged keys in memory'
    )
    run_parser.add_argument(
        '--output',
        help='Write the run report as JSON to this file'
    )
    _add_database_arguments(run_parser)

    # ========== Schedule command ==========
    schedule_parser = subparsers.add_parser('schedule', help='Run staging periodically')
    _add_run_arguments(schedule_parser)
    schedule_parser.add_argument(
        '--cron',
        help='Cron expression (e.g., "*/15 * * * *" for every 15 minutes)'
    )
    schedule_parser.add_argument(
        '--interval',
        type=int,
        default=900,
        help='Interval in seconds (default: 900)'
    )
    schedule_parser.add_argument(
        '--metrics-port',
        type=int,
        help='Expose Prometheus metrics on this port'
    )
    _add_database_arguments(schedule_parser)

    # ========== Status command ==========
    status_parser = subparsers.add_parser('status', help='Show recorded watermarks')
    _add_database_arguments(status_parser)

    # ========== Reseed command ==========
    reseed_parser = subparsers.add_parser(
        'reseed', help='Move a table past an expired watermark or accept a new key shape'
    )
    reseed_parser.add_argument(
        '--table',
        required=True,
        help='schema.table to re-seed'
    )
    _add_database_arguments(reseed_parser)

    return parser
