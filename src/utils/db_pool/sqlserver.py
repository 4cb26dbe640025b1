"""SQL Server connection pool."""

from typing import Any

import pyodbc
from opentelemetry import trace

from utils.tracing import trace_operation

from .base import BaseConnectionPool


class SQLServerConnectionPool(BaseConnectionPool):
    """
    Pool of pyodbc connections in autocommit mode.

    Callers that need a transaction switch ``autocommit`` off on the borrowed
    connection and must restore it before returning it.
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        database: str | None = None,
        user: str | None = None,
        password: str | None = None,
        driver: str = "ODBC Driver 18 for SQL Server",
        connection_string: str | None = None,
        login_timeout: int = 10,
        query_timeout: int = 0,
        **kwargs: Any,
    ):
        """
        Args:
            host, port, database, user, password: Connection parameters,
                required unless ``connection_string`` is given
            driver: ODBC driver name
            connection_string: Complete ODBC connection string
            login_timeout: Seconds to wait for a login
            query_timeout: Seconds before the driver cancels a running statement
                with SQLSTATE HYT00; 0 waits indefinitely
            **kwargs: Passed to BaseConnectionPool
        """
        if connection_string:
            self.connection_string = connection_string
        else:
            if not all([host, port, database, user, password]):
                raise ValueError(
                    "Either connection_string or all of "
                    "(host, port, database, user, password) must be provided"
                )
            self.connection_string = (
                f"DRIVER={{{driver}}};"
                f"SERVER={host},{port};"
                f"DATABASE={database};"
                f"UID={user};"
                f"PWD={password};"
                f"TrustServerCertificate=yes;"
                f"Encrypt=yes;"
            )
        self.login_timeout = login_timeout
        self.query_timeout = query_timeout

        super().__init__(**kwargs)

    def _create_connection(self) -> pyodbc.Connection:
        with trace_operation(
            "sqlserver_connect", kind=trace.SpanKind.CLIENT, pool_name=self.pool_name
        ):
            conn = pyodbc.connect(self.connection_string, timeout=self.login_timeout)
            conn.autocommit = True
            if self.query_timeout:
                conn.timeout = self.query_timeout
            return conn

    def _is_connection_healthy(self, conn: pyodbc.Connection) -> bool:
        try:
            cursor = conn.cursor()
            try:
                cursor.execute("SELECT 1")
                cursor.fetchone()
            finally:
                cursor.close()
            return True
        except pyodbc.Error:
            return False

    def _close_connection(self, conn: pyodbc.Connection) -> None:
        try:
            conn.close()
        except pyodbc.Error:
            pass
