"""
CLI command implementations.

Each command returns the process exit code:
0 on success, 1 when some tables failed, 2 when nothing could be done.
"""

import argparse
import logging
from pathlib import Path

from prometheus_client import start_http_server

from change_staging.app import build_components
from change_staging.config import StagingSettings
from change_staging.errors import ChangeStagingError
from change_staging.models import RunState
from change_staging.report import (
    export_run_json,
    format_run_console,
    format_watermarks_console,
)
from change_staging.scheduler import StagingScheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2


def parse_tables(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [t.strip() for t in value.split(',') if t.strip()]


def load_settings(args: argparse.Namespace) -> StagingSettings:
    """Environment settings with command-line overrides applied."""
    return StagingSettings.from_env().with_overrides(
        host=getattr(args, 'host', None),
        port=getattr(args, 'port', None),
        database=getattr(args, 'database', None),
        user=getattr(args, 'user', None),
        password=getattr(args, 'password', None),
        watermark_table=getattr(args, 'watermark_table', None),
        staging_table=getattr(args, 'staging_table', None),
        max_workers=getattr(args, 'workers', None),
        table_timeout=getattr(args, 'timeout', None),
        max_retries=getattr(args, 'max_retries', None),
    )


def cmd_run(args: argparse.Namespace) -> int:
    """
    Run one staging pass

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code
    """
    try:
        settings = load_settings(args)
        components = build_components(settings, dry_run=args.dry_run)
    except Exception as e:
        logger.error(f"Failed to initialize staging: {e}")
        return EXIT_FATAL

    try:
        result = components.orchestrator.run_once(include_tables=parse_tables(args.tables))
    except ChangeStagingError as e:
        logger.error(f"Staging run aborted: {type(e).__name__}: {e}")
        return EXIT_FATAL
    except Exception as e:
        logger.error(f"Staging run failed: {e}", exc_info=True)
        return EXIT_FATAL
    finally:
        components.close()

    print(format_run_console(result))

    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        export_run_json(result, str(output_path))
        logger.info(f"Report saved to {output_path}")

    if result.state is RunState.PARTIALLY_FAILED:
        logger.warning(f"{result.failed_count} table(s) failed; their watermarks were not advanced")
        return EXIT_PARTIAL
    return EXIT_OK


def cmd_schedule(args: argparse.Namespace) -> int:
    """
    Run staging on a cron expression or fixed interval until interrupted

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code
    """
    try:
        settings = load_settings(args)
        components = build_components(settings)
    except Exception as e:
        logger.error(f"Failed to initialize staging: {e}")
        return EXIT_FATAL

    tables = parse_tables(args.tables)
    orchestrator = components.orchestrator

    def run():
        return orchestrator.run_once(include_tables=tables)

    scheduler = StagingScheduler()
    try:
        if args.cron:
            scheduler.add_cron_job(run, args.cron)
        else:
            scheduler.add_interval_job(run, args.interval)
    except ValueError as e:
        logger.error(str(e))
        components.close()
        return EXIT_FATAL

    if args.metrics_port:
        start_http_server(args.metrics_port)
        logger.info(f"Metrics server started on port {args.metrics_port}")

    logger.info("Starting scheduler (press Ctrl+C to stop)")
    try:
        scheduler.start()
    finally:
        orchestrator.cancel()
        components.close()
    return EXIT_OK


def cmd_status(args: argparse.Namespace) -> int:
    """Print every recorded watermark."""
    try:
        components = build_components(load_settings(args))
    except Exception as e:
        logger.error(f"Failed to initialize staging: {e}")
        return EXIT_FATAL

    try:
        watermarks = components.watermarks.list_all()
    except Exception as e:
        logger.error(f"Failed to read watermarks: {e}")
        return EXIT_FATAL
    finally:
        components.close()

    print(format_watermarks_console(watermarks))
    return EXIT_OK


def cmd_reseed(args: argparse.Namespace) -> int:
    """
    Re-seed one table's watermark at the engine's minimum valid version

    Args:
        args: Parsed command-line arguments

    Returns:
        Exit code
    """
    try:
        components = build_components(load_settings(args))
    except Exception as e:
        logger.error(f"Failed to initialize staging: {e}")
        return EXIT_FATAL

    try:
        watermark = components.orchestrator.reseed(args.table)
    except Exception as e:
        logger.error(f"Failed to re-seed {args.table}: {e}")
        return EXIT_FATAL
    finally:
        components.close()

    print(f"{watermark.table_name} watermark is now {watermark.version}")
    return EXIT_OK
