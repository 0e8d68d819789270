"""SQLite-backed document store for static-engine.

Each collection (brands, products, generated_ads, ...) is a table of JSON
documents keyed by ``_id``. Uses aiosqlite for async database operations.
"""

import asyncio
import json
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import aiosqlite

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = ".static_engine/app.db"

TABLES = (
    "users",
    "brands",
    "products",
    "ad_concepts",
    "generated_ads",
    "credit_transactions",
    "prompt_templates",
)

# Columns stored outside the JSON document
_NATIVE_COLUMNS = ("_id", "created_at")

_FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_OPERATORS = {
    "ne": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "like": "LIKE",
}


class DatabaseError(Exception):
    """Error raised for invalid queries or an unavailable connection."""

    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _column(field: str) -> str:
    """SQL expression for a document field."""
    if not _FIELD_PATTERN.match(field):
        raise DatabaseError(f"Invalid field name: {field!r}")
    if field in _NATIVE_COLUMNS:
        return field
    return f"json_extract(data, '$.{field}')"


def _build_where(filters: dict[str, Any] | None) -> tuple[str, list[Any]]:
    """Translate ``{"field__op": value}`` filters into a WHERE clause.

    Supported suffixes: ``__in``, ``__ne``, ``__gt``, ``__gte``, ``__lt``,
    ``__lte``, ``__like``. No suffix means equality; ``None`` compares with
    ``IS NULL``.
    """
    if not filters:
        return "", []

    clauses: list[str] = []
    params: list[Any] = []

    for key, value in filters.items():
        field, _, op = key.partition("__")
        column = _column(field)

        if not op:
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(value)
        elif op == "in":
            values = list(value)
            if not values:
                clauses.append("0")
                continue
            placeholders = ", ".join("?" for _ in values)
            clauses.append(f"{column} IN ({placeholders})")
            params.extend(values)
        elif op in _OPERATORS:
            if op == "ne" and value is None:
                clauses.append(f"{column} IS NOT NULL")
            else:
                clauses.append(f"{column} {_OPERATORS[op]} ?")
                params.append(value)
        else:
            raise DatabaseError(f"Unsupported filter operator: {op!r}")

    return " WHERE " + " AND ".join(clauses), params


class Database:
    """Async SQLite document store.

    Provides table-scoped CRUD with equality/range filters, ordering,
    pagination, conditional updates and atomic counters.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize database with a file path.

        Args:
            db_path: Path to SQLite database file. Parent directory
                     will be created if it doesn't exist.
        """
        self.db_path = Path(db_path)
        self.db: aiosqlite.Connection | None = None
        # Serializes execute+commit pairs issued from concurrent coroutines
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open the connection and create all collection tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db = await aiosqlite.connect(str(self.db_path))
        self.db.row_factory = aiosqlite.Row

        # Enable WAL mode for better concurrent read performance
        await self.db.execute("PRAGMA journal_mode=WAL")

        for table in TABLES:
            await self.db.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    _id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    data JSON NOT NULL
                )
            """)
            await self.db.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table} (created_at DESC)
            """)

        # Hot lookups for the generation pipeline
        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_generated_ads_batch
            ON generated_ads (json_extract(data, '$.batch_id'))
        """)
        await self.db.execute("""
            CREATE INDEX IF NOT EXISTS idx_generated_ads_user
            ON generated_ads (json_extract(data, '$.user_id'))
        """)

        await self.db.commit()
        logger.info(f"Database connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self.db:
            await self.db.close()
            self.db = None
            logger.info("Database connection closed")

    def _conn(self, table: str) -> aiosqlite.Connection:
        if self.db is None:
            raise DatabaseError("Database not connected. Call connect() first.")
        if table not in TABLES:
            raise DatabaseError(f"Unknown table: {table}")
        return self.db

    @staticmethod
    def _row_to_dict(row: aiosqlite.Row) -> dict[str, Any]:
        """Merge native columns and the JSON document into one dict."""
        try:
            data = json.loads(row["data"]) if row["data"] else {}
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse JSON data for row {row['_id']}")
            data = {}
        data["_id"] = row["_id"]
        data["created_at"] = row["created_at"]
        return data

    @staticmethod
    def _split(values: dict[str, Any]) -> tuple[str, str, str]:
        document = dict(values)
        record_id = document.pop("_id", None) or str(uuid.uuid4())
        created_at = document.pop("created_at", None) or _now()
        return record_id, created_at, json.dumps(document, default=str)

    async def insert(self, table: str, values: dict[str, Any]) -> dict[str, Any]:
        """Insert one document.

        Args:
            table: Collection name
            values: Document fields (``_id`` is generated when missing)

        Returns:
            The stored document including ``_id`` and ``created_at``
        """
        db = self._conn(table)
        record_id, created_at, data = self._split(values)

        async with self._write_lock:
            await db.execute(
                f"INSERT INTO {table} (_id, created_at, data) VALUES (?, ?, ?)",
                (record_id, created_at, data),
            )
            await db.commit()

        logger.debug(f"Inserted {table}/{record_id}")
        return {**json.loads(data), "_id": record_id, "created_at": created_at}

    async def insert_many(
        self, table: str, rows: Iterable[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Insert several documents in a single transaction (all or nothing)."""
        db = self._conn(table)
        prepared = [self._split(values) for values in rows]

        async with self._write_lock:
            try:
                await db.executemany(
                    f"INSERT INTO {table} (_id, created_at, data) VALUES (?, ?, ?)",
                    prepared,
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.debug(f"Inserted {len(prepared)} rows into {table}")
        return [
            {**json.loads(data), "_id": record_id, "created_at": created_at}
            for record_id, created_at, data in prepared
        ]

    async def get(
        self, table: str, record_id: str, filters: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Get a document by ID, optionally requiring extra filters to match."""
        return await self.find_one(table, {"_id": record_id, **(filters or {})})

    async def find_one(
        self, table: str, filters: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        rows = await self.find(table, filters, limit=1)
        return rows[0] if rows else None

    async def find(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        order_by: str = "created_at",
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """List documents matching filters.

        Args:
            table: Collection name
            filters: Field filters (see module docs for operators)
            order_by: Field to sort by
            descending: Sort direction
            limit: Max results (optional)
            offset: Rows to skip (pagination)

        Returns:
            Matching documents
        """
        db = self._conn(table)
        where, params = _build_where(filters)
        direction = "DESC" if descending else "ASC"

        query = (
            f"SELECT _id, created_at, data FROM {table}{where} "
            f"ORDER BY {_column(order_by)} {direction}, rowid {direction}"
        )
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_dict(row) for row in rows]

    async def count(self, table: str, filters: dict[str, Any] | None = None) -> int:
        """Count documents matching filters."""
        db = self._conn(table)
        where, params = _build_where(filters)

        async with db.execute(f"SELECT COUNT(*) FROM {table}{where}", params) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def update(
        self, table: str, filters: dict[str, Any], values: dict[str, Any]
    ) -> int:
        """Set fields on every document matching ``filters``.

        The filter is evaluated inside the UPDATE statement, so
        ``update(t, {"_id": x, "status": "pending"}, {...})`` is an atomic
        compare-and-set.

        Returns:
            Number of documents updated
        """
        db = self._conn(table)
        if not filters:
            raise DatabaseError("update() requires at least one filter")
        if not values:
            return 0

        assignments: list[str] = []
        set_params: list[Any] = []
        for field, value in values.items():
            if field in _NATIVE_COLUMNS:
                raise DatabaseError(f"Field {field} cannot be updated")
            _column(field)
            assignments.append(f"'$.{field}', json(?)")
            set_params.append(json.dumps(value, default=str))

        where, where_params = _build_where(filters)

        async with self._write_lock:
            cursor = await db.execute(
                f"UPDATE {table} SET data = json_set(data, {', '.join(assignments)}){where}",
                set_params + where_params,
            )
            await db.commit()
            return cursor.rowcount

    async def delete(self, table: str, filters: dict[str, Any]) -> int:
        """Delete documents matching filters.

        Returns:
            Number of documents deleted
        """
        db = self._conn(table)
        if not filters:
            raise DatabaseError("delete() requires at least one filter")
        where, params = _build_where(filters)

        async with self._write_lock:
            cursor = await db.execute(f"DELETE FROM {table}{where}", params)
            await db.commit()
            deleted = cursor.rowcount

        if deleted:
            logger.info(f"Deleted {deleted} rows from {table}")
        return deleted

    async def increment(
        self, table: str, record_id: str, field: str, amount: int = 1
    ) -> int | None:
        """Atomically add ``amount`` to a numeric field.

        Returns:
            New value, or None if the document does not exist
        """
        db = self._conn(table)
        column = _column(field)

        async with self._write_lock:
            async with db.execute(
                f"UPDATE {table} SET data = json_set(data, '$.{field}', "
                f"COALESCE({column}, 0) + ?) WHERE _id = ? RETURNING {column}",
                (amount, record_id),
            ) as cursor:
                row = await cursor.fetchone()
            await db.commit()

        return row[0] if row else None
