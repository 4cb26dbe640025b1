"""
Change tracking staging for downstream ETL

Stages the net set of changed primary keys from every change-tracked table
into one centralized staging table, bounded by a per-table watermark and a
single run-wide cutover version.

Components:
- catalog: discovers tracked tables and their ordered key columns
- watermark: durable last-processed version per table
- enumerator: changed-key fingerprints between two versions
- sink: the shared staging table
- orchestrator: one end-to-end run over all tables

Usage:
    from change_staging.orchestrator import RunOrchestrator

    result = RunOrchestrator(catalog, watermarks, enumerator, sink).run_once()
"""

__version__ = "1.0.0"
__all__ = ["catalog", "watermark", "enumerator", "sink", "orchestrator"]
