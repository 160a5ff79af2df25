"""SQLite store for lodestar.

Generic key/row CRUD over named tables. Every call runs the blocking
sqlite3 work in a thread (asyncio.to_thread) and holds a connection
lock for the duration of one statement group, so ``set`` and
``incr``/``decr`` are atomic per row: balances are changed with
``UPDATE ... SET col = col + ?`` and never read-modify-written in
Python.
"""

import asyncio
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import structlog

from .exceptions import DatabaseError

logger = structlog.get_logger("lodestar.store")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_TYPES = {"text": "TEXT", "integer": "INTEGER", "real": "REAL", "boolean": "INTEGER"}

ColumnSpec = Union[str, Mapping[str, Any]]


def _ident(name: str, table: Optional[str] = None) -> str:
    """Validate a table or column identifier before it is interpolated."""
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise DatabaseError(
            f"Invalid identifier: {name!r}", operation="validate", table=table
        )
    return name


def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    return value


def _where_clause(where: Optional[Mapping[str, Any]], table: str) -> Tuple[str, list]:
    if not where:
        return "", []
    parts = []
    params = []
    for column, value in where.items():
        if value is None:
            parts.append(f"{_ident(column, table)} IS NULL")
        else:
            parts.append(f"{_ident(column, table)} = ?")
            params.append(_to_db(value))
    return " WHERE " + " AND ".join(parts), params


def _column_sql(spec: ColumnSpec, table: str) -> str:
    if isinstance(spec, str):
        return f"{_ident(spec, table)} TEXT"
    name = _ident(spec["name"], table)
    col_type = _TYPES.get(str(spec.get("type", "text")).lower())
    if col_type is None:
        raise DatabaseError(
            f"Unknown column type {spec.get('type')!r}", operation="add_table", table=table
        )
    sql = f"{name} {col_type}"
    if spec.get("primary"):
        sql += " PRIMARY KEY"
    elif spec.get("unique"):
        sql += " UNIQUE"
    if "default" in spec:
        default = _to_db(spec["default"])
        if isinstance(default, str):
            sql += " DEFAULT '" + default.replace("'", "''") + "'"
        elif default is None:
            sql += " DEFAULT NULL"
        else:
            sql += f" DEFAULT {default}"
    return sql


class Store:
    """Async facade over a single SQLite connection.

    Args:
        db_path: Database file path, or ``":memory:"``.
    """

    def __init__(self, db_path: Union[Path, str]):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def initialize(self) -> None:
        """Open the connection."""
        await asyncio.to_thread(self._initialize_sync)

    def _initialize_sync(self) -> None:
        if self._conn is not None:
            return
        if str(self.db_path) != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        logger.info("store_initialized", path=str(self.db_path))

    async def close(self) -> None:
        """Close the connection."""
        if self._conn:
            await asyncio.to_thread(self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
        logger.info("store_closed")

    def _run(self, operation: str, table: str, fn):
        """Execute ``fn(conn)`` under the lock, translating sqlite errors."""
        if self._conn is None:
            raise DatabaseError("Store is not initialized", operation=operation, table=table)
        with self._lock:
            try:
                result = fn(self._conn)
                self._conn.commit()
                return result
            except sqlite3.Error as e:
                self._conn.rollback()
                raise DatabaseError(str(e), operation=operation, table=table) from e

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def add_table(
        self,
        name: str,
        columns: Sequence[ColumnSpec],
        options: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Create a table unless it already exists.

        Args:
            name: Table name.
            columns: Column names (TEXT) or dicts with ``name`` and
                optional ``type``, ``primary``, ``unique``, ``default``.
            options: ``{"composite_key": [...]}`` adds a multi-column
                UNIQUE constraint.
        """
        table = _ident(name)
        defs = [_column_sql(c, table) for c in columns]
        composite = (options or {}).get("composite_key")
        if composite:
            cols = ", ".join(_ident(c, table) for c in composite)
            defs.append(f"UNIQUE ({cols})")
        sql = f"CREATE TABLE IF NOT EXISTS {table} ({', '.join(defs)})"
        await asyncio.to_thread(self._run, "add_table", table, lambda c: c.execute(sql))
        logger.debug("table_ready", table=table)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(
        self,
        table: str,
        column: str,
        where: Mapping[str, Any],
        default: Any = None,
    ) -> Any:
        """Return one column of the first matching row, or ``default``."""
        row = await self.get_row(table, where)
        if row is None:
            return default
        value = row.get(column)
        return default if value is None else value

    async def get_row(self, table: str, where: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """Return the first matching row as a dict, or None."""
        rows = await self.get_rows(table, where, limit=1)
        return rows[0] if rows else None

    async def get_rows(
        self,
        table: str,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return all matching rows as dicts."""
        _ident(table)
        clause, params = _where_clause(where, table)
        sql = f"SELECT * FROM {table}{clause}"
        if order_by:
            sql += f" ORDER BY {_ident(order_by, table)}" + (" DESC" if desc else "")
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        def _query(conn):
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

        return await asyncio.to_thread(self._run, "get", table, _query)

    async def count(self, table: str, where: Optional[Mapping[str, Any]] = None) -> int:
        _ident(table)
        clause, params = _where_clause(where, table)
        sql = f"SELECT COUNT(*) FROM {table}{clause}"
        return await asyncio.to_thread(
            self._run, "count", table, lambda c: c.execute(sql, params).fetchone()[0]
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set(
        self,
        table: str,
        values: Mapping[str, Any],
        where: Mapping[str, Any],
    ) -> None:
        """Update the rows matching ``where``, or insert ``values`` + ``where``."""
        _ident(table)
        if not values:
            return
        clause, where_params = _where_clause(where, table)
        assignments = ", ".join(f"{_ident(k, table)} = ?" for k in values)
        update_sql = f"UPDATE {table} SET {assignments}{clause}"
        update_params = [_to_db(v) for v in values.values()] + where_params

        merged = {**where, **values}
        insert_sql = (
            f"INSERT INTO {table} ({', '.join(_ident(k, table) for k in merged)}) "
            f"VALUES ({', '.join('?' for _ in merged)})"
        )
        insert_params = [_to_db(v) for v in merged.values()]

        def _upsert(conn):
            cursor = conn.execute(update_sql, update_params)
            if cursor.rowcount == 0:
                conn.execute(insert_sql, insert_params)

        await asyncio.to_thread(self._run, "set", table, _upsert)

    async def insert_ignore(self, table: str, values: Mapping[str, Any]) -> bool:
        """Insert a row unless it conflicts with a unique key.

        Returns:
            True if a row was inserted.
        """
        _ident(table)
        sql = (
            f"INSERT OR IGNORE INTO {table} ({', '.join(_ident(k, table) for k in values)}) "
            f"VALUES ({', '.join('?' for _ in values)})"
        )
        params = [_to_db(v) for v in values.values()]
        return await asyncio.to_thread(
            self._run, "insert", table, lambda c: c.execute(sql, params).rowcount > 0
        )

    async def incr(
        self,
        table: str,
        column: str,
        delta: int,
        where: Mapping[str, Any],
        floor: Optional[int] = None,
    ) -> int:
        """Atomically add ``delta`` to a column. Returns rows touched.

        With ``floor`` set, rows where the result would drop below it
        are left unchanged and not counted.
        """
        _ident(table)
        col = _ident(column, table)
        clause, params = _where_clause(where, table)
        sql = f"UPDATE {table} SET {col} = COALESCE({col}, 0) + ?{clause}"
        params = [delta] + params
        if floor is not None:
            sql += (" AND " if clause else " WHERE ") + f"COALESCE({col}, 0) + ? >= ?"
            params += [delta, floor]
        return await asyncio.to_thread(
            self._run, "incr", table,
            lambda c: c.execute(sql, params).rowcount,
        )

    async def decr(
        self,
        table: str,
        column: str,
        delta: int,
        where: Mapping[str, Any],
        floor: Optional[int] = None,
    ) -> int:
        """Atomically subtract ``delta`` from a column. Returns rows touched."""
        return await self.incr(table, column, -delta, where, floor=floor)

    async def delete(self, table: str, where: Mapping[str, Any]) -> int:
        """Delete matching rows. Returns rows removed."""
        _ident(table)
        if not where:
            raise DatabaseError("Refusing to delete without a filter",
                                operation="delete", table=table)
        clause, params = _where_clause(where, table)
        sql = f"DELETE FROM {table}{clause}"
        return await asyncio.to_thread(
            self._run, "delete", table, lambda c: c.execute(sql, params).rowcount
        )
