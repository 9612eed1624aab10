"""
Database access shared by the API, the order store, and the audit script.
All SQL goes through text() with bound parameters; only validated identifiers are interpolated.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

_SQL_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def safe_identifier(identifier: str) -> str:
    """Return ``identifier`` unchanged if it is a plain SQL name, else raise ValueError."""

    if not _SQL_IDENTIFIER.match(identifier):
        raise ValueError(f"Unsafe SQL identifier: {identifier!r}")
    return identifier


def _mappings(connection: Connection, query: str, params: Mapping[str, Any] | None) -> list[dict[str, Any]]:
    result = connection.execute(text(query), dict(params or {}))
    if not result.returns_rows:
        return []
    return [dict(row) for row in result.mappings().all()]


class DatabaseClient:
    """Thin SQLAlchemy wrapper for order reads, conditional metadata writes, and request logs."""

    def __init__(self, *, database_url: str) -> None:
        self._engine: Engine = create_engine(database_url, pool_pre_ping=True, future=True)
        self._request_log_table_available: bool | None = None

    def can_connect(self) -> bool:
        try:
            with self._engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        return True

    def table_exists(self, table_name: str) -> bool:
        rows = self.fetch_all(
            "SELECT to_regclass(:table_name) IS NOT NULL AS exists_flag",
            {"table_name": safe_identifier(table_name)},
        )
        return bool(rows and rows[0]["exists_flag"])

    def fetch_all(self, query: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        with self._engine.connect() as connection:
            return _mappings(connection, query, params)

    def fetch_one(self, query: str, params: Mapping[str, Any] | None = None) -> dict[str, Any] | None:
        rows = self.fetch_all(query, params)
        return rows[0] if rows else None

    def execute_returning(self, query: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        """Run a write in its own transaction and return any RETURNING rows.

        The order store relies on an empty result meaning the WHERE clause matched nothing.
        """

        with self._engine.begin() as connection:
            return _mappings(connection, query, params)

    def log_request(
        self,
        *,
        table_name: str,
        request_id: str,
        path: str,
        method: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        table = safe_identifier(table_name)
        # Only a positive lookup is cached so a table created after startup is picked up.
        if self._request_log_table_available is not True:
            self._request_log_table_available = self.table_exists(table)
        if not self._request_log_table_available:
            return

        self.execute_returning(
            f"""
            INSERT INTO {table} (request_id, path, method, status_code, duration_ms, created_at)
            VALUES (:request_id, :path, :method, :status_code, :duration_ms, NOW())
            """,
            {
                "request_id": request_id,
                "path": path,
                "method": method,
                "status_code": status_code,
                "duration_ms": duration_ms,
            },
        )
