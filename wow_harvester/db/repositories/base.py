"""
Base repository with shared SQLite execution helpers.

Repositories receive an open ``sqlite3.Connection`` (usually from
``get_connection()``) and speak Pydantic models, not raw dicts.  All SQL is
explicit and every write is an upsert on the table's natural key.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Optional

logger = logging.getLogger(__name__)

Params = tuple[Any, ...] | dict[str, Any]

class BaseRepository:
    """Shared SQL execution helpers.

    Attributes:
        conn: The active ``sqlite3.Connection``.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def execute(self, sql: str, params: Params = ()) -> sqlite3.Cursor:
        logger.debug("SQL: %s | params: %s", sql.strip(), params)
        return self.conn.execute(sql, params)

    def executemany(self, sql: str, params_list: list[Params]) -> sqlite3.Cursor:
        logger.debug("SQL (many): %s | count: %d", sql.strip(), len(params_list))
        return self.conn.executemany(sql, params_list)

    def fetchone(self, sql: str, params: Params = ()) -> Optional[sqlite3.Row]:
        return self.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Params = ()) -> list[sqlite3.Row]:
        return self.execute(sql, params).fetchall()

    def count_rows(self, table: str, where: str = "", params: Params = ()) -> int:
        """``SELECT COUNT(*)`` over ``table`` with an optional WHERE clause."""
        clause = f" WHERE {where}" if where else ""
        row = self.fetchone(f"SELECT COUNT(*) AS n FROM {table}{clause};", params)
        assert row is not None
        return int(row["n"])

    def select_where(
        self,
        table: str,
        filters: dict[str, Any],
        columns: frozenset[str],
        order_by: str,
        limit: Optional[int] = None,
    ) -> list[sqlite3.Row]:
        """``SELECT *`` with equality filters on whitelisted ``columns``.

        Raises:
            ValueError: If a filter names a column outside ``columns``.
        """
        unknown = sorted(set(filters) - columns)
        if unknown:
            raise ValueError(f"Cannot filter {table} by {unknown}; allowed: {sorted(columns)}.")
        clauses = [f"{col} IS ?" if val is None else f"{col} = ?" for col, val in filters.items()]
        sql = f"SELECT * FROM {table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {order_by}"
        params: list[Any] = list(filters.values())
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return self.fetchall(sql + ";", tuple(params))

    def last_insert_rowid(self) -> int:
        row = self.fetchone("SELECT last_insert_rowid() AS rowid;")
        assert row is not None
        return int(row["rowid"])
