"""
Wiring of the staging components from settings.
"""

import logging
import math
from dataclasses import dataclass

from utils.db_pool import SQLServerConnectionPool

from .catalog import CatalogReader
from .config import StagingSettings
from .enumerator import ChangeEnumerator
from .orchestrator import RunOrchestrator
from .provider import SQLServerChangeTrackingProvider
from .sink import InMemoryStagingSink, SQLServerStagingSink, StagingSink
from .watermark import InMemoryWatermarkStore, SQLServerWatermarkStore, WatermarkStore

logger = logging.getLogger(__name__)


@dataclass
class StagingComponents:
    pool: SQLServerConnectionPool
    provider: SQLServerChangeTrackingProvider
    catalog: CatalogReader
    watermarks: WatermarkStore
    sink: StagingSink
    orchestrator: RunOrchestrator

    def close(self) -> None:
        self.pool.close()


def build_components(settings: StagingSettings, dry_run: bool = False) -> StagingComponents:
    """
    Connect to SQL Server and assemble an orchestrator.

    With ``dry_run`` the watermark store is an in-memory copy of the real
    one and staged rows stay in memory, so the run reads the database but
    writes nothing.
    """
    pool = SQLServerConnectionPool(
        **settings.pool_config(),
        # workers + the orchestrator's own catalog/watermark calls
        max_size=settings.max_workers + 2,
        # A statement may not outlive the table task that issued it
        query_timeout=math.ceil(settings.table_timeout),
        pool_name="ct-staging",
    )

    provider = SQLServerChangeTrackingProvider(pool)
    catalog = CatalogReader(provider)
    watermarks: WatermarkStore = SQLServerWatermarkStore(
        pool, table=settings.watermark_table, actor=settings.actor
    )
    sink: StagingSink

    if dry_run:
        try:
            existing = watermarks.list_all()
        except Exception:
            pool.close()
            raise
        watermarks = InMemoryWatermarkStore(actor=settings.actor, initial=existing)
        sink = InMemoryStagingSink()
        logger.info("Dry run: watermarks and staged rows are kept in memory")
    else:
        sink = SQLServerStagingSink(pool, table=settings.staging_table)

    orchestrator = RunOrchestrator(
        catalog=catalog,
        watermarks=watermarks,
        enumerator=ChangeEnumerator(provider),
        sink=sink,
        max_workers=settings.max_workers,
        timeout_per_table=settings.table_timeout,
        timeout_grace=settings.timeout_grace,
        max_retries=settings.max_retries,
        retry_base_delay=settings.retry_base_delay,
    )

    return StagingComponents(
        pool=pool,
        provider=provider,
        catalog=catalog,
        watermarks=watermarks,
        sink=sink,
        orchestrator=orchestrator,
    )
