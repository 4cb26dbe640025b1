"""
Shared infrastructure for the change tracking staging job

Provides:
- logging: console/JSON logging setup
- tracing: OpenTelemetry spans around catalog, enumeration and sink calls
- retry: exponential backoff and transient database error detection
- sql_safety: identifier validation and quoting
- db_pool: pooled pyodbc connections to SQL Server
"""

__version__ = "1.0.0"
__all__ = ["logging", "tracing", "retry", "sql_safety", "db_pool"]
